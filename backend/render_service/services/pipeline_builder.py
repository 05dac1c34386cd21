"""
Render pipeline construction.

Turns effect parameters into a two-track processing graph: an ordered list
of video stages and an ordered list of audio stages, connected by named
pads. Construction is pure: no I/O, same input gives the same graph, so the
scheduler can rebuild in fallback mode without touching the request.

Input streams are addressed as "<input index>:<v|a>"; every other pad is
produced by exactly one stage.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from render_service.config import settings
from render_service.models.schemas import EffectParameters

AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNEL_LAYOUT = "stereo"

PRIMARY_RESAMPLER = "lanczos"
FALLBACK_RESAMPLER = "fast_bilinear"
FALLBACK_PRESET = "ultrafast"

# Input roles; subtitles are read by the burn-in stage, not as an input stream
ROLE_VIDEO = "video"
ROLE_NARRATION = "narration"
ROLE_BGM = "bgm"
ROLE_SUBTITLES = "subtitles"


class PipelineMode(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class FallbackPolicy:
    """Cost reductions applied in fallback mode."""

    canvas_scale: float = settings.FALLBACK_CANVAS_SCALE
    burn_subtitles: bool = settings.FALLBACK_SUBTITLES
    resampler: str = FALLBACK_RESAMPLER
    preset: str = FALLBACK_PRESET


# =============================================================================
# Stages
# =============================================================================


@dataclass(frozen=True)
class Stage:
    """A node of the graph consuming and producing named pads."""

    inputs: tuple
    outputs: tuple


@dataclass(frozen=True)
class Mirror(Stage):
    pass


@dataclass(frozen=True)
class Zoom(Stage):
    factor: float = 1.0
    # "scale_crop": upscale then crop back to the source canvas
    # "crop": crop the centre 1/factor of the frame directly
    method: str = "scale_crop"


@dataclass(frozen=True)
class Rotate(Stage):
    degrees: float = 0.0


@dataclass(frozen=True)
class ColorAdjust(Stage):
    contrast: float = 1.0
    brightness: float = 0.0
    saturation: float = 1.0
    gamma: float = 1.0
    grayscale: bool = False


@dataclass(frozen=True)
class Detail(Stage):
    sharpen: float = 0.0
    blur: float = 0.0


@dataclass(frozen=True)
class CoverFit(Stage):
    width: int = 0
    height: int = 0
    resampler: str = PRIMARY_RESAMPLER


@dataclass(frozen=True)
class BurnSubtitles(Stage):
    source: str = ROLE_SUBTITLES
    font: str = "DejaVu Sans"
    font_size: int = 36
    margin_v: int = 48
    margin_l: int = 0
    margin_r: int = 0
    alignment: int = 2


@dataclass(frozen=True)
class Resample(Stage):
    sample_rate: int = AUDIO_SAMPLE_RATE
    channel_layout: str = AUDIO_CHANNEL_LAYOUT


@dataclass(frozen=True)
class Gain(Stage):
    db: float = 0.0


@dataclass(frozen=True)
class Volume(Stage):
    factor: float = 1.0


@dataclass(frozen=True)
class Delay(Stage):
    milliseconds: int = 0


@dataclass(frozen=True)
class Split(Stage):
    pass


@dataclass(frozen=True)
class SidechainDuck(Stage):
    """Compress inputs[0] (music) keyed by inputs[1] (narration envelope)."""

    threshold: float = 0.03
    ratio: float = 8.0
    attack_ms: float = 20.0
    release_ms: float = 250.0


@dataclass(frozen=True)
class Mix(Stage):
    """Mix all inputs; the first input governs the duration."""

    pass


# =============================================================================
# Graph
# =============================================================================


@dataclass(frozen=True)
class GraphInput:
    role: str
    loop: bool = False


@dataclass(frozen=True)
class EncoderSettings:
    crf: int
    preset: str
    video_bitrate: Optional[str]
    audio_bitrate: str
    sample_rate: int = AUDIO_SAMPLE_RATE


@dataclass(frozen=True)
class PipelineGraph:
    mode: PipelineMode
    inputs: tuple
    video_stages: tuple
    audio_stages: tuple
    video_out: str
    audio_out: str
    width: int
    height: int
    encoder: EncoderSettings
    # Output ends with the shortest mapped stream (looped video stops with narration)
    shortest: bool = True

    @property
    def pads(self) -> list:
        """Every pad produced by a stage, in production order."""
        return [pad for stage in self.video_stages + self.audio_stages for pad in stage.outputs]

    def stage_types(self, track: str = "video") -> list:
        stages = self.video_stages if track == "video" else self.audio_stages
        return [type(stage) for stage in stages]

    def find(self, stage_type: type) -> Optional[Stage]:
        for stage in self.video_stages + self.audio_stages:
            if isinstance(stage, stage_type):
                return stage
        return None

    def validate(self) -> None:
        """Check every stage input exists before it is consumed exactly once."""
        available = set()
        for index, graph_input in enumerate(self.inputs):
            available.add(f"{index}:v" if graph_input.role == ROLE_VIDEO else f"{index}:a")
        consumed = set()
        for stage in self.video_stages + self.audio_stages:
            for pad in stage.inputs:
                if pad not in available:
                    raise ValueError(f"pad {pad} consumed before it is produced")
                if pad in consumed:
                    raise ValueError(f"pad {pad} consumed twice")
                consumed.add(pad)
            for pad in stage.outputs:
                if pad in available:
                    raise ValueError(f"pad {pad} produced twice")
                available.add(pad)
        for final in (self.video_out, self.audio_out):
            if final not in available or final in consumed:
                raise ValueError(f"final pad {final} is not a free output")


class _PadNamer:
    def __init__(self, prefix: str):
        self.prefix = prefix
        self.count = 0

    def next(self, label: str) -> str:
        self.count += 1
        return f"{self.prefix}{self.count}_{label}"


def _even(value: float) -> int:
    return max(2, int(round(value / 2.0)) * 2)


def canvas_for(parameters: EffectParameters, mode: PipelineMode, policy: FallbackPolicy) -> tuple:
    width = _even(parameters.target_width)
    height = _even(parameters.target_height)
    if mode == PipelineMode.FALLBACK:
        scale = min(1.0, max(0.1, policy.canvas_scale))
        width, height = min(width, _even(width * scale)), min(height, _even(height * scale))
    return width, height


def _color_is_identity(parameters: EffectParameters) -> bool:
    return (
        parameters.contrast == 1.0
        and parameters.brightness == 0.0
        and parameters.saturation == 1.0
        and parameters.gamma == 1.0
        and not parameters.grayscale
    )


def _build_video(
    parameters: EffectParameters,
    mode: PipelineMode,
    policy: FallbackPolicy,
    width: int,
    height: int,
    has_subtitles: bool,
) -> tuple:
    names = _PadNamer("v")
    stages = []
    current = "0:v"

    def add(stage_type, label, **kwargs):
        nonlocal current
        output = names.next(label)
        stages.append(stage_type(inputs=(current,), outputs=(output,), **kwargs))
        current = output

    if parameters.mirror:
        add(Mirror, "mirror")

    if parameters.zoom_factor > 1.0:
        method = "crop" if mode == PipelineMode.FALLBACK else "scale_crop"
        add(Zoom, "zoom", factor=parameters.zoom_factor, method=method)

    if parameters.rotate_deg != 0:
        add(Rotate, "rotate", degrees=parameters.rotate_deg)

    if not _color_is_identity(parameters):
        add(
            ColorAdjust,
            "color",
            contrast=parameters.contrast,
            brightness=parameters.brightness,
            saturation=parameters.saturation,
            gamma=parameters.gamma,
            grayscale=parameters.grayscale,
        )

    if parameters.sharpen > 0 or parameters.blur > 0:
        add(Detail, "detail", sharpen=parameters.sharpen, blur=parameters.blur)

    resampler = policy.resampler if mode == PipelineMode.FALLBACK else PRIMARY_RESAMPLER
    add(CoverFit, "fit", width=width, height=height, resampler=resampler)

    burn = parameters.subtitles_enabled and (mode == PipelineMode.PRIMARY or policy.burn_subtitles)
    if has_subtitles and burn:
        # Proportional to the canvas so subtitles look the same at any resolution
        add(
            BurnSubtitles,
            "subs",
            font=parameters.subtitle_font,
            font_size=max(8, int(round(height * parameters.subtitle_size_ratio))),
            margin_v=int(round(height * parameters.subtitle_margin_ratio)),
            margin_l=int(round(width * parameters.subtitle_margin_h_ratio)),
            margin_r=int(round(width * parameters.subtitle_margin_h_ratio)),
            alignment=parameters.subtitle_alignment,
        )

    return tuple(stages), current


def _build_audio(parameters: EffectParameters, bgm_index: Optional[int]) -> tuple:
    names = _PadNamer("a")
    stages = []

    narration = names.next("narration")
    stages.append(Resample(inputs=("1:a",), outputs=(narration,)))
    if parameters.narration_gain_db:
        gained = names.next("gain")
        stages.append(Gain(inputs=(narration,), outputs=(gained,), db=parameters.narration_gain_db))
        narration = gained

    if bgm_index is None:
        return tuple(stages), narration

    music = names.next("bgm")
    stages.append(Resample(inputs=(f"{bgm_index}:a",), outputs=(music,)))
    leveled = names.next("bgm_volume")
    stages.append(Volume(inputs=(music,), outputs=(leveled,), factor=parameters.bgm_volume))
    music = leveled
    if parameters.bgm_delay_ms > 0:
        delayed = names.next("bgm_delay")
        stages.append(Delay(inputs=(music,), outputs=(delayed,), milliseconds=parameters.bgm_delay_ms))
        music = delayed

    mixed = names.next("mix")
    if parameters.ducking:
        narration_mix = names.next("narration_mix")
        narration_key = names.next("narration_key")
        stages.append(Split(inputs=(narration,), outputs=(narration_mix, narration_key)))
        ducked = names.next("ducked")
        stages.append(
            SidechainDuck(
                inputs=(music, narration_key),
                outputs=(ducked,),
                threshold=parameters.duck_threshold,
                ratio=parameters.duck_ratio,
                attack_ms=parameters.duck_attack_ms,
                release_ms=parameters.duck_release_ms,
            )
        )
        stages.append(Mix(inputs=(narration_mix, ducked), outputs=(mixed,)))
    else:
        stages.append(Mix(inputs=(narration, music), outputs=(mixed,)))
    return tuple(stages), mixed


def build(
    parameters: EffectParameters,
    mode: PipelineMode = PipelineMode.PRIMARY,
    *,
    has_subtitles: Optional[bool] = None,
    has_bgm: Optional[bool] = None,
    policy: Optional[FallbackPolicy] = None,
) -> PipelineGraph:
    """
    Build the processing graph for one render attempt.

    Args:
        parameters: Effect settings (a RenderParameters also carries sources)
        mode: PRIMARY, or FALLBACK for the reduced-cost variant
        has_subtitles: Whether a subtitle file is available; defaults to
            whether parameters names a subtitle URL
        has_bgm: Whether a background music input exists; defaults to
            whether parameters names a music URL
        policy: Fallback cost reductions

    Returns:
        PipelineGraph
    """
    mode = PipelineMode(mode)
    policy = policy or FallbackPolicy()
    if has_subtitles is None:
        has_subtitles = bool(getattr(parameters, "srt_url", None))
    if has_bgm is None:
        has_bgm = bool(getattr(parameters, "bgm_url", None))

    inputs = [GraphInput(ROLE_VIDEO, loop=parameters.loop_video), GraphInput(ROLE_NARRATION)]
    bgm_index = None
    if has_bgm:
        bgm_index = len(inputs)
        # Music loops; the mix ends with the narration
        inputs.append(GraphInput(ROLE_BGM, loop=True))

    width, height = canvas_for(parameters, mode, policy)
    video_stages, video_out = _build_video(parameters, mode, policy, width, height, has_subtitles)
    audio_stages, audio_out = _build_audio(parameters, bgm_index)

    encoder = EncoderSettings(
        crf=parameters.crf,
        preset=policy.preset if mode == PipelineMode.FALLBACK else parameters.preset,
        video_bitrate=parameters.video_bitrate,
        audio_bitrate=parameters.audio_bitrate,
    )

    return PipelineGraph(
        mode=mode,
        inputs=tuple(inputs),
        video_stages=video_stages,
        audio_stages=audio_stages,
        video_out=video_out,
        audio_out=audio_out,
        width=width,
        height=height,
        encoder=encoder,
    )

"""Serialize a PipelineGraph into ffmpeg filter and argument syntax."""

from dataclasses import dataclass
from typing import Mapping

from render_service.config import settings
from render_service.services.pipeline_builder import (
    BurnSubtitles,
    ColorAdjust,
    CoverFit,
    Delay,
    Detail,
    Gain,
    Mirror,
    Mix,
    PipelineGraph,
    Resample,
    Rotate,
    SidechainDuck,
    Split,
    Stage,
    Volume,
    Zoom,
)

SUBTITLE_STYLE = (
    "BorderStyle=3,Outline=2,Shadow=0,"
    "PrimaryColour=&H00FFFFFF&,OutlineColour=&H80000000&"
)

# Errors only: no banner, no progress updates on stderr
QUIET_ARGS = ["-hide_banner", "-nostats", "-loglevel", "error", "-nostdin", "-y"]


@dataclass(frozen=True)
class TranscodeLimits:
    """Resource limits of one engine run."""

    threads: int = 2
    keyframe_interval: int = 60
    timeout: float = settings.TRANSCODE_TIMEOUT


def num(value: float) -> str:
    """Compact decimal formatting for filter arguments."""
    return format(float(value), ".6g")


def escape_filter_path(path: str) -> str:
    """Escape a file path for use inside a quoted filter option."""
    return path.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def _mirror(stage: Mirror, inputs: Mapping[str, str]) -> str:
    return "hflip"


def _zoom(stage: Zoom, inputs: Mapping[str, str]) -> str:
    f = num(stage.factor)
    crop = f"crop=trunc(iw/{f}/2)*2:trunc(ih/{f}/2)*2"
    if stage.method == "crop":
        return crop
    return f"scale=trunc(iw*{f}/2)*2:trunc(ih*{f}/2)*2:flags=bicubic,{crop}"


def _rotate(stage: Rotate, inputs: Mapping[str, str]) -> str:
    return f"rotate={num(stage.degrees)}*PI/180:fillcolor=black"


def _color(stage: ColorAdjust, inputs: Mapping[str, str]) -> str:
    filters = []
    if (stage.contrast, stage.brightness, stage.saturation, stage.gamma) != (1.0, 0.0, 1.0, 1.0):
        filters.append(
            f"eq=contrast={num(stage.contrast)}:brightness={num(stage.brightness)}"
            f":saturation={num(stage.saturation)}:gamma={num(stage.gamma)}"
        )
    if stage.grayscale:
        filters.append("hue=s=0")
    return ",".join(filters)


def _detail(stage: Detail, inputs: Mapping[str, str]) -> str:
    filters = []
    if stage.sharpen > 0:
        filters.append(f"unsharp=5:5:{num(stage.sharpen)}:5:5:0")
    if stage.blur > 0:
        filters.append(f"gblur=sigma={num(stage.blur)}")
    return ",".join(filters)


def _cover_fit(stage: CoverFit, inputs: Mapping[str, str]) -> str:
    return (
        f"scale={stage.width}:{stage.height}:force_original_aspect_ratio=increase"
        f":flags={stage.resampler},crop={stage.width}:{stage.height},setsar=1"
    )


def _subtitles(stage: BurnSubtitles, inputs: Mapping[str, str]) -> str:
    if stage.source not in inputs:
        raise ValueError(f"no local file for input role '{stage.source}'")
    style = (
        f"FontName={stage.font},Fontsize={stage.font_size},{SUBTITLE_STYLE},"
        f"MarginV={stage.margin_v},MarginL={stage.margin_l},MarginR={stage.margin_r},"
        f"Alignment={stage.alignment}"
    )
    return f"subtitles=filename='{escape_filter_path(inputs[stage.source])}':force_style='{style}'"


def _resample(stage: Resample, inputs: Mapping[str, str]) -> str:
    return (
        f"aresample={stage.sample_rate}:async=1,"
        f"aformat=sample_rates={stage.sample_rate}:channel_layouts={stage.channel_layout}"
    )


def _gain(stage: Gain, inputs: Mapping[str, str]) -> str:
    return f"volume={num(stage.db)}dB"


def _volume(stage: Volume, inputs: Mapping[str, str]) -> str:
    return f"volume={num(stage.factor)}"


def _delay(stage: Delay, inputs: Mapping[str, str]) -> str:
    return f"adelay={stage.milliseconds}:all=1"


def _split(stage: Split, inputs: Mapping[str, str]) -> str:
    return f"asplit={len(stage.outputs)}"


def _duck(stage: SidechainDuck, inputs: Mapping[str, str]) -> str:
    return (
        f"sidechaincompress=threshold={num(stage.threshold)}:ratio={num(stage.ratio)}"
        f":attack={num(stage.attack_ms)}:release={num(stage.release_ms)}"
    )


def _mix(stage: Mix, inputs: Mapping[str, str]) -> str:
    return f"amix=inputs={len(stage.inputs)}:duration=first:dropout_transition=2:normalize=0"


FILTERS = {
    Mirror: _mirror,
    Zoom: _zoom,
    Rotate: _rotate,
    ColorAdjust: _color,
    Detail: _detail,
    CoverFit: _cover_fit,
    BurnSubtitles: _subtitles,
    Resample: _resample,
    Gain: _gain,
    Volume: _volume,
    Delay: _delay,
    Split: _split,
    SidechainDuck: _duck,
    Mix: _mix,
}


def stage_filter(stage: Stage, inputs: Mapping[str, str]) -> str:
    """Render one stage as a labelled filtergraph segment."""
    render = FILTERS.get(type(stage))
    if render is None:
        raise TypeError(f"unsupported stage {type(stage).__name__}")
    labels_in = "".join(f"[{pad}]" for pad in stage.inputs)
    labels_out = "".join(f"[{pad}]" for pad in stage.outputs)
    return f"{labels_in}{render(stage, inputs)}{labels_out}"


def to_filter_complex(graph: PipelineGraph, inputs: Mapping[str, str]) -> str:
    return ";".join(stage_filter(stage, inputs) for stage in graph.video_stages + graph.audio_stages)


def build_command(
    graph: PipelineGraph,
    inputs: Mapping[str, str],
    output: str,
    limits: TranscodeLimits,
    ffmpeg_bin: str = settings.FFMPEG_BIN,
) -> list:
    """
    Build the full engine argument list.

    Args:
        graph: Pipeline to run
        inputs: Local file path per input role
        output: Destination file
        limits: Thread count, keyframe interval

    Returns:
        Argument list, executable first
    """
    cmd = [ffmpeg_bin, *QUIET_ARGS]
    for graph_input in graph.inputs:
        if graph_input.role not in inputs:
            raise ValueError(f"no local file for input role '{graph_input.role}'")
        if graph_input.loop:
            cmd += ["-stream_loop", "-1"]
        cmd += ["-i", inputs[graph_input.role]]

    cmd += [
        "-filter_complex", to_filter_complex(graph, inputs),
        "-map", f"[{graph.video_out}]",
        "-map", f"[{graph.audio_out}]",
    ]
    if graph.shortest:
        cmd.append("-shortest")

    encoder = graph.encoder
    cmd += ["-c:v", "libx264", "-preset", encoder.preset, "-crf", str(encoder.crf)]
    if encoder.video_bitrate:
        cmd += ["-maxrate", encoder.video_bitrate, "-bufsize", encoder.video_bitrate]
    cmd += [
        "-g", str(limits.keyframe_interval),
        "-keyint_min", str(limits.keyframe_interval),
        "-threads", str(limits.threads),
        "-filter_complex_threads", str(limits.threads),
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", encoder.audio_bitrate,
        "-ar", str(encoder.sample_rate),
        "-movflags", "+faststart",
        output,
    ]
    return cmd

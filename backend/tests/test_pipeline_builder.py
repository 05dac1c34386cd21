"""Tests for render pipeline construction.

Features:
- Fixed video stage order with optional stages
- Fallback mode cost reductions
- Audio mixing and ducking topology
"""

import itertools

import pytest

from render_service.models.schemas import RenderParameters
from render_service.services.pipeline_builder import (
    BurnSubtitles,
    ColorAdjust,
    CoverFit,
    Delay,
    Detail,
    FallbackPolicy,
    Gain,
    Mirror,
    Mix,
    PipelineMode,
    Resample,
    Rotate,
    SidechainDuck,
    Split,
    Volume,
    Zoom,
    build,
)

from conftest import AUDIO_URL, BGM_URL, SRT_URL, VIDEO_URL


def params(**overrides) -> RenderParameters:
    return RenderParameters(video_url=VIDEO_URL, audio_url=AUDIO_URL, **overrides)


POLICY = FallbackPolicy(canvas_scale=0.6667, burn_subtitles=False)


class TestVideoTrack:
    """Video stage selection and order."""

    def test_default_stage_order(self):
        graph = build(params(), PipelineMode.PRIMARY, policy=POLICY)

        assert graph.stage_types("video") == [Mirror, Zoom, Rotate, ColorAdjust, CoverFit]
        assert graph.video_out == graph.video_stages[-1].outputs[0]
        assert graph.video_stages[0].inputs == ("0:v",)

    def test_full_stage_order_with_subtitles(self):
        graph = build(params(srt_url=SRT_URL, sharpen=0.8), policy=POLICY)

        assert graph.stage_types("video") == [
            Mirror, Zoom, Rotate, ColorAdjust, Detail, CoverFit, BurnSubtitles,
        ]

    def test_identity_settings_emit_only_cover_fit(self):
        graph = build(
            params(mirror=False, zoom_factor=1.0, rotate_deg=0, contrast=1.0),
            policy=POLICY,
        )

        assert graph.stage_types("video") == [CoverFit]

    def test_color_stage_only_when_deviating(self):
        assert build(params(contrast=1.0), policy=POLICY).find(ColorAdjust) is None
        assert build(params(contrast=1.0, grayscale=True), policy=POLICY).find(ColorAdjust).grayscale
        assert build(params(contrast=1.0, gamma=1.4), policy=POLICY).find(ColorAdjust).gamma == 1.4

    def test_detail_stage_only_with_positive_intensity(self):
        assert build(params(), policy=POLICY).find(Detail) is None
        detail = build(params(blur=2.5), policy=POLICY).find(Detail)
        assert detail.blur == 2.5
        assert detail.sharpen == 0

    def test_primary_zoom_scales_then_crops(self):
        zoom = build(params(zoom_factor=1.25), PipelineMode.PRIMARY, policy=POLICY).find(Zoom)

        assert zoom.method == "scale_crop"
        assert zoom.factor == 1.25

    def test_cover_fit_targets_canvas_with_precise_resampler(self):
        graph = build(params(target_width=720, target_height=1280), policy=POLICY)
        fit = graph.find(CoverFit)

        assert (fit.width, fit.height) == (720, 1280)
        assert (graph.width, graph.height) == (720, 1280)
        assert fit.resampler == "lanczos"

    def test_odd_canvas_is_rounded_to_even(self):
        graph = build(params(target_width=721, target_height=1279), policy=POLICY)

        assert graph.width % 2 == 0
        assert graph.height % 2 == 0

    def test_subtitle_proportions_follow_canvas(self):
        small = build(params(srt_url=SRT_URL, target_width=540, target_height=960), policy=POLICY)
        large = build(params(srt_url=SRT_URL, target_width=1080, target_height=1920), policy=POLICY)

        small_subs = small.find(BurnSubtitles)
        large_subs = large.find(BurnSubtitles)
        assert large_subs.font_size == 36
        assert large_subs.margin_v == 48
        assert small_subs.font_size == 18
        assert small_subs.margin_v == 24
        assert large_subs.margin_l == 43
        assert small_subs.margin_l == 22

    def test_subtitles_need_a_source_and_the_toggle(self):
        assert build(params(), policy=POLICY).find(BurnSubtitles) is None
        assert build(params(srt_url=SRT_URL, subtitles_enabled=False), policy=POLICY).find(BurnSubtitles) is None
        assert build(params(), policy=POLICY, has_subtitles=True).find(BurnSubtitles) is not None


class TestFallbackMode:
    """Reduced-cost variant."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {},
            {"target_width": 1920, "target_height": 1080},
            {"target_width": 240, "target_height": 240},
            {"zoom_factor": 2.5, "srt_url": SRT_URL},
        ],
    )
    def test_fallback_never_exceeds_primary_resolution(self, overrides):
        primary = build(params(**overrides), PipelineMode.PRIMARY, policy=POLICY)
        fallback = build(params(**overrides), PipelineMode.FALLBACK, policy=POLICY)

        assert fallback.width <= primary.width
        assert fallback.height <= primary.height
        assert fallback.width * fallback.height < primary.width * primary.height

    def test_fallback_zoom_is_a_direct_crop(self):
        fallback = build(params(zoom_factor=1.3), PipelineMode.FALLBACK, policy=POLICY)

        assert fallback.find(Zoom).method == "crop"

    def test_fallback_uses_cheaper_resampler_and_preset(self):
        fallback = build(params(), PipelineMode.FALLBACK, policy=POLICY)

        assert fallback.find(CoverFit).resampler == "fast_bilinear"
        assert fallback.encoder.preset == "ultrafast"

    def test_fallback_drops_subtitles_unless_policy_keeps_them(self):
        request = params(srt_url=SRT_URL)

        assert build(request, PipelineMode.FALLBACK, policy=POLICY).find(BurnSubtitles) is None
        keep = FallbackPolicy(canvas_scale=0.5, burn_subtitles=True)
        subs = build(request, PipelineMode.FALLBACK, policy=keep).find(BurnSubtitles)
        assert subs is not None
        assert subs.font_size == round(960 * request.subtitle_size_ratio)

    def test_fallback_keeps_audio_track(self):
        request = params(bgm_url=BGM_URL)

        primary = build(request, PipelineMode.PRIMARY, policy=POLICY)
        fallback = build(request, PipelineMode.FALLBACK, policy=POLICY)

        assert primary.audio_stages == fallback.audio_stages


class TestAudioTrack:
    """Narration, music and ducking."""

    def test_narration_only(self):
        graph = build(params(), policy=POLICY)

        assert graph.stage_types("audio") == [Resample]
        assert graph.audio_stages[0].inputs == ("1:a",)
        assert graph.audio_out == graph.audio_stages[0].outputs[0]
        assert [i.role for i in graph.inputs] == ["video", "narration"]

    def test_narration_gain(self):
        graph = build(params(narration_gain_db=-3), policy=POLICY)

        assert graph.stage_types("audio") == [Resample, Gain]
        assert graph.find(Gain).db == -3
        assert graph.audio_out == graph.find(Gain).outputs[0]

    def test_music_with_ducking(self):
        graph = build(params(bgm_url=BGM_URL, bgm_delay_ms=1500, bgm_volume=0.5), policy=POLICY)

        assert graph.stage_types("audio") == [Resample, Resample, Volume, Delay, Split, SidechainDuck, Mix]
        split = graph.find(Split)
        duck = graph.find(SidechainDuck)
        mix = graph.find(Mix)
        narration_mix, narration_key = split.outputs
        # music is keyed by the narration copy, the other copy is mixed back in first
        assert duck.inputs == (graph.find(Delay).outputs[0], narration_key)
        assert mix.inputs == (narration_mix, duck.outputs[0])
        assert graph.audio_out == mix.outputs[0]
        assert graph.find(Volume).factor == 0.5
        assert graph.inputs[2].role == "bgm"
        assert graph.inputs[2].loop is True

    def test_music_without_ducking_mixes_directly(self):
        graph = build(params(bgm_url=BGM_URL, ducking=False), policy=POLICY)

        assert graph.stage_types("audio") == [Resample, Resample, Volume, Mix]
        narration_pad = graph.audio_stages[0].outputs[0]
        assert graph.find(Mix).inputs == (narration_pad, graph.find(Volume).outputs[0])

    def test_music_reads_third_input(self):
        graph = build(params(bgm_url=BGM_URL), policy=POLICY)

        assert graph.audio_stages[1].inputs == ("2:a",)


class TestGraphProperties:
    """Structural invariants for many parameter combinations."""

    COMBINATIONS = list(itertools.product(
        [True, False],  # subtitles
        [True, False],  # music
        [True, False],  # ducking
        [0, -6.0],  # gain
        [PipelineMode.PRIMARY, PipelineMode.FALLBACK],
    ))

    @pytest.mark.parametrize("subs, music, ducking, gain, mode", COMBINATIONS)
    def test_graph_is_well_formed(self, subs, music, ducking, gain, mode):
        request = params(
            srt_url=SRT_URL if subs else None,
            bgm_url=BGM_URL if music else None,
            ducking=ducking,
            narration_gain_db=gain,
        )

        graph = build(request, mode, policy=POLICY)

        graph.validate()
        assert len(graph.pads) == len(set(graph.pads))

    def test_build_is_deterministic(self):
        request = params(srt_url=SRT_URL, bgm_url=BGM_URL, sharpen=1)

        assert build(request, PipelineMode.FALLBACK, policy=POLICY) == build(
            request, PipelineMode.FALLBACK, policy=POLICY
        )

    def test_video_loops_when_requested(self):
        assert build(params(), policy=POLICY).inputs[0].loop is True
        assert build(params(loop_video=False), policy=POLICY).inputs[0].loop is False

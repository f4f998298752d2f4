import pytest

from video_combine.errors import GraphBuildError
from video_combine.graph import (
    RAW_INPUT_RE,
    AudioMixRequest,
    CaptionRequest,
    FilterGraphBuilder,
    FilterStage,
    InputLayout,
    OverlayRequest,
    build_graph,
    build_stitch_graph,
    caption_line_positions,
    overlay_position,
)
from video_combine.layout import EMPTY_LAYOUT, wrap_and_size
from video_combine.models import (
    AudioMixPlan,
    AudioTrack,
    CaptionRole,
    CaptionSpec,
    MixDurationPolicy,
    OverlayOptions,
    OverlayPosition,
)


def _caption(text, role, width=1280, height=720, max_chars=24):
    return CaptionRequest(
        caption=CaptionSpec(text=text, role=role),
        layout=wrap_and_size(text, width, height, max_chars),
    )


def _stage_ops(graph):
    return [stage.operation for stage in graph.stages]


def _assert_labels_well_formed(graph):
    produced = set()
    consumed = set()
    for stage in graph.stages:
        for label in stage.input_labels:
            if RAW_INPUT_RE.match(label):
                continue
            assert label in produced, f"{label} used before it was produced"
            assert label not in consumed, f"{label} consumed twice"
            consumed.add(label)
        assert stage.output_label not in produced
        produced.add(stage.output_label)
    for sink in graph.sink_labels:
        assert sink in produced
        assert sink not in consumed


def test_stage_render_format():
    stage = FilterStage(("0:v",), "v0", "scale", (("w", "150"), ("h", "-1")))
    assert stage.render() == "[0:v]scale=w=150:h=-1[v0]"


def test_full_graph_has_well_formed_labels():
    inputs = InputLayout.assign(has_dialogue=True, has_music=True, has_overlay=True, video_has_audio=True)
    plan = AudioMixPlan(
        tracks=(
            AudioTrack("1:a", volume_db=0.0, duration_seconds=10.0),
            AudioTrack("0:a", duration_seconds=15.0),
            AudioTrack("2:a", volume_db=-2.0, fade_out_sec=2.0, duration_seconds=60.0),
        ),
        mix_duration_policy=MixDurationPolicy.FIRST,
        max_duration_seconds=15.0,
    )
    graph = build_graph(
        [
            OverlayRequest(input_index=inputs.overlay, frame_width=1280, frame_height=720),
            _caption("a top caption that is long enough to wrap over lines", CaptionRole.TOP),
            _caption("bottom words", CaptionRole.BOTTOM),
            _caption("Brand", CaptionRole.BRANDING),
            AudioMixRequest(plan),
        ],
        inputs,
    )
    _assert_labels_well_formed(graph)
    assert graph.video_sink == [s for s in graph.stages if s.operation == "drawtext"][-1].output_label
    assert graph.audio_sink == graph.stages[-1].output_label
    assert graph.stages[-1].operation == "amix"
    # one graph per render: every stage is serialised exactly once
    assert graph.graph_text.count("[") == sum(len(s.input_labels) + 1 for s in graph.stages)


def test_input_layout_order():
    inputs = InputLayout.assign(has_dialogue=False, has_music=True, has_overlay=True)
    assert (inputs.video, inputs.dialogue, inputs.music, inputs.overlay) == (0, None, 1, 2)
    assert inputs.input_count() == 3


def test_empty_caption_emits_nothing():
    request = CaptionRequest(caption=CaptionSpec(text="", role=CaptionRole.BOTTOM), layout=EMPTY_LAYOUT)
    graph = build_graph([request])
    assert graph.stages == []
    assert "drawtext" not in graph.graph_text
    assert "text=''" not in graph.graph_text
    assert graph.video_sink is None


def test_captions_are_drawn_top_bottom_branding():
    graph = build_graph(
        [
            _caption("brand", CaptionRole.BRANDING),
            _caption("bottom", CaptionRole.BOTTOM),
            _caption("top", CaptionRole.TOP),
        ]
    )
    texts = [dict(stage.params)["text"] for stage in graph.stages]
    assert texts == ["top", "bottom", "brand"]
    _assert_labels_well_formed(graph)


def test_one_drawtext_per_wrapped_line():
    request = _caption("one two three four five six", CaptionRole.TOP, max_chars=14)
    graph = build_graph([request])
    assert _stage_ops(graph) == ["drawtext", "drawtext"]
    first, second = (dict(stage.params) for stage in graph.stages)
    assert first["fontsize"] == "51"
    assert first["y"] == "40"
    assert second["y"] == str(40 + 56)


def test_caption_text_is_escaped_and_expansion_disabled():
    graph = build_graph([_caption("it's: 100%", CaptionRole.TOP)])
    rendered = graph.graph_text
    assert "text='it\\'\\''s\\: 100%'" in rendered
    assert "expansion=none" in rendered


def test_font_file_is_quoted():
    layout = wrap_and_size("hi", 1280, 720, 24)
    request = CaptionRequest(
        caption=CaptionSpec(text="hi", role=CaptionRole.TOP),
        layout=layout,
        font_file="C:/fonts/a.ttf",
    )
    graph = build_graph([request])
    assert graph.graph_text.startswith("[0:v]drawtext=fontfile='C\\:/fonts/a.ttf':text='hi'")


def test_bottom_and_branding_positions():
    layout = wrap_and_size("a b", 1280, 720, 1)
    assert layout.line_height_px == 56
    assert caption_line_positions(CaptionRole.BOTTOM, layout, 40) == [
        ("(w-text_w)/2", "h-152"),
        ("(w-text_w)/2", "h-96"),
    ]
    assert caption_line_positions(CaptionRole.BRANDING, layout, 40) == [
        ("w-text_w-20", "h-132"),
        ("w-text_w-20", "h-76"),
    ]


@pytest.mark.parametrize(
    "position, expected",
    [
        (OverlayPosition.TOP_LEFT, ("20", "20")),
        (OverlayPosition.TOP_RIGHT, ("W-w-20", "20")),
        (OverlayPosition.BOTTOM_LEFT, ("20", "H-h-20")),
        (OverlayPosition.BOTTOM_RIGHT, ("W-w-20", "H-h-20")),
        (OverlayPosition.BOTTOM_BAR, ("0", "H-h")),
        (OverlayPosition.FULL_FRAME, ("0", "0")),
    ],
)
def test_overlay_positions(position, expected):
    assert overlay_position(OverlayOptions(position=position)) == expected


def test_overlay_scales_then_composites():
    graph = build_graph([OverlayRequest(input_index=1, options=OverlayOptions(size=200))])
    assert graph.graph_text == "[1:v]scale=w=200:h=-1[ovl0];[0:v][ovl0]overlay=x=W-w-20:y=H-h-20:format=auto[v1]"
    assert graph.video_sink == "v1"


def test_full_frame_overlay_matches_frame_size():
    request = OverlayRequest(
        input_index=1,
        options=OverlayOptions(position=OverlayPosition.FULL_FRAME),
        frame_width=1920,
        frame_height=1080,
    )
    graph = build_graph([request])
    assert "scale=w=1920:h=1080" in graph.graph_text


def test_single_track_skips_amix():
    plan = AudioMixPlan(tracks=(AudioTrack("1:a", volume_db=-2.0),))
    graph = build_graph([AudioMixRequest(plan)])
    assert _stage_ops(graph) == ["volume"]
    assert graph.graph_text == "[1:a]volume=volume=-2dB[a0]"
    assert graph.audio_sink == "a0"
    assert graph.video_sink is None


@pytest.mark.parametrize("policy", list(MixDurationPolicy))
def test_mix_policy_is_passed_through(policy):
    plan = AudioMixPlan(
        tracks=(AudioTrack("1:a"), AudioTrack("2:a")),
        mix_duration_policy=policy,
    )
    graph = build_graph([AudioMixRequest(plan)])
    assert f"amix=inputs=2:duration={policy.value}:dropout_transition=3" in graph.graph_text


def test_music_trimmed_to_video_and_faded_out():
    plan = AudioMixPlan(
        tracks=(AudioTrack("1:a", volume_db=-2.0, fade_out_sec=2.0, duration_seconds=60.0, max_duration_seconds=60),),
        max_duration_seconds=15.0,
    )
    graph = build_graph([AudioMixRequest(plan)])
    assert _stage_ops(graph) == ["atrim", "volume", "afade"]
    assert "atrim=duration=15" in graph.graph_text
    assert "afade=t=out:st=13:d=2" in graph.graph_text


def test_track_cap_applies_when_shorter_than_plan_cap():
    plan = AudioMixPlan(
        tracks=(AudioTrack("1:a", duration_seconds=120.0, max_duration_seconds=60),),
        max_duration_seconds=90.0,
    )
    graph = build_graph([AudioMixRequest(plan)])
    assert "atrim=duration=60" in graph.graph_text


def test_uncapped_plan_still_honours_track_cap():
    plan = AudioMixPlan(
        tracks=(AudioTrack("1:a", fade_out_sec=2.0, duration_seconds=90.0, max_duration_seconds=60),),
        mix_duration_policy=MixDurationPolicy.LONGEST,
    )
    text = build_graph([AudioMixRequest(plan)]).graph_text
    assert text.startswith("[1:a]atrim=duration=60[a0]")
    assert "afade=t=out:st=58:d=2" in text


def test_short_track_is_not_trimmed():
    plan = AudioMixPlan(tracks=(AudioTrack("1:a", duration_seconds=5.0),), max_duration_seconds=15.0)
    assert "atrim" not in build_graph([AudioMixRequest(plan)]).graph_text


def test_fade_out_start_clamped_at_zero():
    plan = AudioMixPlan(tracks=(AudioTrack("1:a", fade_out_sec=3.0, duration_seconds=1.0),))
    assert "afade=t=out:st=0:d=3" in build_graph([AudioMixRequest(plan)]).graph_text


def test_fade_in_starts_at_zero():
    plan = AudioMixPlan(tracks=(AudioTrack("1:a", fade_in_sec=1.5),))
    assert "afade=t=in:st=0:d=1.5" in build_graph([AudioMixRequest(plan)]).graph_text


def test_two_mix_requests_rejected():
    plan = AudioMixPlan(tracks=(AudioTrack("1:a"),))
    with pytest.raises(GraphBuildError):
        build_graph([AudioMixRequest(plan), AudioMixRequest(plan)])


def test_builder_rejects_unknown_label():
    builder = FilterGraphBuilder()
    with pytest.raises(GraphBuildError) as excinfo:
        builder.add("volume", ["nope"], [("volume", "0dB")])
    assert "nope" in str(excinfo.value)
    assert excinfo.value.stage == "building"


def test_builder_rejects_double_consumption():
    builder = FilterGraphBuilder()
    label = builder.add("volume", ["1:a"], [("volume", "0dB")], prefix="a")
    builder.add("afade", [label], [("t", "in")], prefix="a")
    with pytest.raises(GraphBuildError) as excinfo:
        builder.add("afade", [label], [("t", "out")], prefix="a")
    assert excinfo.value.graph_text == "[1:a]volume=volume=0dB[a0];[a0]afade=t=in[a1]"


def test_raw_inputs_may_be_reused():
    builder = FilterGraphBuilder()
    builder.add("volume", ["1:a"], prefix="a")
    builder.add("volume", ["1:a"], prefix="a")
    assert len(builder.stages) == 2


def test_output_args_copy_video_when_no_visual_stage():
    plan = AudioMixPlan(tracks=(AudioTrack("1:a"),))
    args = build_graph([AudioMixRequest(plan)]).output_args()
    assert args[:2] == ["-filter_complex", "[1:a]volume=volume=0dB[a0]"]
    assert "-c:v" in args and args[args.index("-c:v") + 1] == "copy"
    assert ["-map", "0:v:0"] == args[2:4]
    assert ["-map", "[a0]"] == args[6:8]
    assert "aac" in args


def test_output_args_encode_when_visual_stage():
    args = build_graph([_caption("hello", CaptionRole.TOP)]).output_args()
    assert ["-map", "[v0]"] == args[2:4]
    assert "libx264" in args
    assert "-c:a" not in args


def test_original_audio_copied_without_new_audio():
    graph = build_graph([], InputLayout(video_has_audio=True))
    assert graph.keep_original_audio
    args = graph.output_args()
    assert "-filter_complex" not in args
    assert args[:4] == ["-map", "0:v:0", "-c:v", "copy"]
    assert args[4:8] == ["-map", "0:a:0", "-c:a", "copy"]


def test_stitch_graph_with_audio():
    graph = build_stitch_graph(3, with_audio=True, width=1920, height=1080, fps=30)
    _assert_labels_well_formed(graph)
    text = graph.graph_text
    assert text.count("scale=w=1920:h=1080:force_original_aspect_ratio=decrease") == 3
    assert "pad=w=1920:h=1080:x=(ow-iw)/2:y=(oh-ih)/2" in text
    assert "concat=n=3:v=1:a=0" in text
    assert "concat=n=3:v=0:a=1" in text
    assert graph.video_sink and graph.audio_sink


def test_stitch_graph_without_audio():
    graph = build_stitch_graph(2, with_audio=False, width=640, height=360, fps=24)
    assert "aformat" not in graph.graph_text
    assert graph.audio_sink is None
    assert "fps=fps=24" in graph.graph_text


def test_stitch_graph_needs_two_clips():
    with pytest.raises(GraphBuildError):
        build_stitch_graph(1, with_audio=False, width=640, height=360, fps=24)


def test_still_output_takes_one_frame():
    graph = build_graph([OverlayRequest(input_index=1)])
    assert graph.still_output_args() == [
        "-filter_complex",
        "[1:v]scale=w=150:h=-1[ovl0];[0:v][ovl0]overlay=x=W-w-20:y=H-h-20:format=auto[v1]",
        "-map",
        "[v1]",
        "-frames:v",
        "1",
    ]


def test_still_output_needs_visual_stage():
    with pytest.raises(GraphBuildError):
        build_graph([]).still_output_args()

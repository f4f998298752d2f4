"""Filter-graph construction.

A render is described as a list of stage requests (overlay compositing,
captions, audio mix) which ``build_graph`` turns into an ordered list of
``FilterStage`` nodes and serialises once into ``-filter_complex`` syntax.
All label bookkeeping and literal escaping happens here.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Union

from .errors import GraphBuildError
from .escaping import quote_literal
from .models import (
    AudioMixPlan,
    AudioTrack,
    CaptionRole,
    CaptionSpec,
    LayoutResult,
    OverlayOptions,
    OverlayPosition,
)

logger = logging.getLogger("video-combine.graph")

RAW_INPUT_RE = re.compile(r"^\d+:[va](:\d+)?$")

CAPTION_ORDER = (CaptionRole.TOP, CaptionRole.BOTTOM, CaptionRole.BRANDING)

VIDEO_ENCODE_ARGS = ["-c:v", "libx264", "-preset", "fast", "-crf", "23", "-pix_fmt", "yuv420p"]
AUDIO_ENCODE_ARGS = ["-c:a", "aac", "-b:a", "192k", "-ar", "44100"]
MIX_DROPOUT_TRANSITION = 3


class Literal(str):
    """A parameter value that is user text and must be quoted and escaped."""


def _fmt(value: float) -> str:
    text = f"{float(value):.3f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


@dataclass(frozen=True)
class FilterStage:
    input_labels: tuple[str, ...]
    output_label: str
    operation: str
    params: tuple[tuple[str | None, str], ...] = ()

    def render(self) -> str:
        parts = []
        for key, value in self.params:
            rendered = quote_literal(value) if isinstance(value, Literal) else str(value)
            parts.append(rendered if key is None else f"{key}={rendered}")
        body = self.operation
        if parts:
            body += "=" + ":".join(parts)
        inputs = "".join(f"[{label}]" for label in self.input_labels)
        return f"{inputs}{body}[{self.output_label}]"


@dataclass
class FilterGraph:
    stages: list[FilterStage]
    video_sink: str | None = None
    audio_sink: str | None = None
    keep_original_audio: bool = False

    @property
    def graph_text(self) -> str:
        return ";".join(stage.render() for stage in self.stages)

    @property
    def sink_labels(self) -> list[str]:
        return [label for label in (self.video_sink, self.audio_sink) if label]

    @property
    def reencodes_video(self) -> bool:
        return self.video_sink is not None

    def output_args(self) -> list[str]:
        """``-filter_complex``, ``-map`` and codec directives for one output file."""
        args: list[str] = []
        if self.stages:
            args += ["-filter_complex", self.graph_text]
        if self.video_sink:
            args += ["-map", f"[{self.video_sink}]", *VIDEO_ENCODE_ARGS]
        else:
            args += ["-map", "0:v:0", "-c:v", "copy"]
        if self.audio_sink:
            args += ["-map", f"[{self.audio_sink}]", *AUDIO_ENCODE_ARGS]
        elif self.keep_original_audio:
            args += ["-map", "0:a:0", "-c:a", "copy"]
        args += ["-movflags", "+faststart"]
        return args

    def still_output_args(self) -> list[str]:
        """Directives for a single-frame image output."""
        if not self.video_sink:
            raise GraphBuildError("a still image needs at least one visual stage", graph_text=self.graph_text)
        return ["-filter_complex", self.graph_text, "-map", f"[{self.video_sink}]", "-frames:v", "1"]


class FilterGraphBuilder:
    """Allocates labels and collects stages for a single render."""

    def __init__(self):
        self._counter = 0
        self._stages: list[FilterStage] = []
        self._produced: set[str] = set()
        self._consumed: set[str] = set()

    @property
    def stages(self) -> list[FilterStage]:
        return list(self._stages)

    def allocate(self, prefix: str) -> str:
        label = f"{prefix}{self._counter}"
        self._counter += 1
        return label

    def add(
        self,
        operation: str,
        inputs: list[str] | tuple[str, ...],
        params: list[tuple[str | None, str]] | None = None,
        prefix: str = "s",
    ) -> str:
        for label in inputs:
            self._check_input(label, operation)
        output = self.allocate(prefix)
        self._stages.append(
            FilterStage(
                input_labels=tuple(inputs),
                output_label=output,
                operation=operation,
                params=tuple(params or ()),
            )
        )
        self._produced.add(output)
        return output

    def _check_input(self, label: str, operation: str) -> None:
        if RAW_INPUT_RE.match(label):
            return
        if label not in self._produced:
            self._fail(f"{operation} references unallocated label [{label}]")
        if label in self._consumed:
            self._fail(f"{operation} consumes label [{label}] a second time")
        self._consumed.add(label)

    def _fail(self, message: str) -> None:
        graph_text = self.graph_text()
        logger.error("Filter graph invariant violated: %s; graph: %s", message, graph_text)
        raise GraphBuildError(message, graph_text=graph_text)

    def graph_text(self) -> str:
        return ";".join(stage.render() for stage in self._stages)


# Stage requests -----------------------------------------------------------


@dataclass(frozen=True)
class InputLayout:
    """Raw input indices: video first, then dialogue, music and overlay when present."""

    video: int = 0
    dialogue: int | None = None
    music: int | None = None
    overlay: int | None = None
    video_has_audio: bool = False

    @classmethod
    def assign(cls, has_dialogue: bool, has_music: bool, has_overlay: bool, video_has_audio: bool = False):
        next_index = 1
        indices: dict[str, int | None] = {}
        for name, present in (("dialogue", has_dialogue), ("music", has_music), ("overlay", has_overlay)):
            if present:
                indices[name] = next_index
                next_index += 1
            else:
                indices[name] = None
        return cls(video=0, video_has_audio=video_has_audio, **indices)

    def input_count(self) -> int:
        return 1 + sum(1 for idx in (self.dialogue, self.music, self.overlay) if idx is not None)


@dataclass(frozen=True)
class OverlayRequest:
    input_index: int
    options: OverlayOptions = field(default_factory=OverlayOptions)
    frame_width: int | None = None
    frame_height: int | None = None


@dataclass(frozen=True)
class CaptionRequest:
    caption: CaptionSpec
    layout: LayoutResult
    margin: int = 40
    font_file: str | None = None
    font_color: str = "white"
    stroke_color: str = "black"


@dataclass(frozen=True)
class AudioMixRequest:
    plan: AudioMixPlan


FilterStageRequest = Union[OverlayRequest, CaptionRequest, AudioMixRequest]


def overlay_position(options: OverlayOptions) -> tuple[str, str]:
    m = int(options.margin)
    position = options.position
    if position == OverlayPosition.TOP_LEFT:
        return str(m), str(m)
    if position == OverlayPosition.TOP_RIGHT:
        return f"W-w-{m}", str(m)
    if position == OverlayPosition.BOTTOM_LEFT:
        return str(m), f"H-h-{m}"
    if position == OverlayPosition.BOTTOM_BAR:
        return "0", "H-h"
    if position == OverlayPosition.FULL_FRAME:
        return "0", "0"
    return f"W-w-{m}", f"H-h-{m}"


def _overlay_scale(request: OverlayRequest) -> list[tuple[str | None, str]]:
    position = request.options.position
    if position == OverlayPosition.FULL_FRAME and request.frame_width and request.frame_height:
        return [("w", str(request.frame_width)), ("h", str(request.frame_height))]
    if position == OverlayPosition.BOTTOM_BAR and request.frame_width:
        return [("w", str(request.frame_width)), ("h", "-1")]
    return [("w", str(int(request.options.size))), ("h", "-1")]


def _add_overlay(builder: FilterGraphBuilder, current: str, request: OverlayRequest) -> str:
    scaled = builder.add("scale", [f"{request.input_index}:v"], _overlay_scale(request), prefix="ovl")
    x, y = overlay_position(request.options)
    return builder.add(
        "overlay",
        [current, scaled],
        [("x", x), ("y", y), ("format", "auto")],
        prefix="v",
    )


def caption_line_positions(role: CaptionRole, layout: LayoutResult, margin: int) -> list[tuple[str, str]]:
    """(x, y) expressions for each wrapped line of one caption."""
    count = len(layout.lines)
    lh = layout.line_height_px
    positions = []
    for i in range(count):
        if role == CaptionRole.TOP:
            positions.append(("(w-text_w)/2", str(margin + i * lh)))
        elif role == CaptionRole.BOTTOM:
            positions.append(("(w-text_w)/2", f"h-{margin + (count - i) * lh}"))
        else:
            half = max(margin // 2, 0)
            positions.append((f"w-text_w-{half}", f"h-{half + (count - i) * lh}"))
    return positions


def _add_caption(builder: FilterGraphBuilder, current: str, request: CaptionRequest) -> str:
    layout = request.layout
    positions = caption_line_positions(request.caption.role, layout, request.margin)
    for line, (x, y) in zip(layout.lines, positions):
        if not line.strip():
            continue
        params: list[tuple[str | None, str]] = []
        if request.font_file:
            params.append(("fontfile", Literal(request.font_file)))
        params += [
            ("text", Literal(line)),
            ("expansion", "none"),
            ("fontsize", str(layout.font_size_px)),
            ("fontcolor", request.font_color),
            ("borderw", str(layout.stroke_width_px)),
            ("bordercolor", request.stroke_color),
            ("x", x),
            ("y", y),
        ]
        current = builder.add("drawtext", [current], params, prefix="v")
    return current


def _add_track(builder: FilterGraphBuilder, plan: AudioMixPlan, track: AudioTrack) -> str:
    current = track.source_label
    effective = track.duration_seconds
    caps = [c for c in (plan.max_duration_seconds, track.max_duration_seconds) if c is not None and c > 0]
    cap = min(caps) if caps else None
    if cap is not None and (effective is None or effective > cap):
        current = builder.add("atrim", [current], [("duration", _fmt(cap))], prefix="a")
        effective = cap

    current = builder.add("volume", [current], [("volume", f"{_fmt(track.volume_db)}dB")], prefix="a")

    if track.fade_in_sec:
        current = builder.add(
            "afade",
            [current],
            [("t", "in"), ("st", "0"), ("d", _fmt(track.fade_in_sec))],
            prefix="a",
        )
    if track.fade_out_sec and effective:
        start = max(0.0, effective - track.fade_out_sec)
        current = builder.add(
            "afade",
            [current],
            [("t", "out"), ("st", _fmt(start)), ("d", _fmt(track.fade_out_sec))],
            prefix="a",
        )
    return current


def _add_audio_mix(builder: FilterGraphBuilder, plan: AudioMixPlan) -> str | None:
    if not plan.tracks:
        return None
    labels = [_add_track(builder, plan, track) for track in plan.tracks]
    if len(labels) == 1:
        return labels[0]
    return builder.add(
        "amix",
        labels,
        [
            ("inputs", str(len(labels))),
            ("duration", plan.mix_duration_policy.value),
            ("dropout_transition", str(MIX_DROPOUT_TRANSITION)),
        ],
        prefix="a",
    )


def build_graph(requests: list[FilterStageRequest], inputs: InputLayout | None = None) -> FilterGraph:
    """Serialise stage requests into one filter graph.

    Overlay compositing runs first, then captions in the fixed order top,
    bottom, branding (so branding is drawn on top), then the audio mix.
    """
    inputs = inputs or InputLayout()
    builder = FilterGraphBuilder()

    overlays = [r for r in requests if isinstance(r, OverlayRequest)]
    captions = [r for r in requests if isinstance(r, CaptionRequest)]
    mixes = [r for r in requests if isinstance(r, AudioMixRequest)]
    if len(mixes) > 1:
        raise GraphBuildError("at most one audio mix may be requested per render")

    current = f"{inputs.video}:v"
    for request in overlays:
        current = _add_overlay(builder, current, request)

    for role in CAPTION_ORDER:
        for request in captions:
            if request.caption.role != role or request.layout.is_empty:
                continue
            current = _add_caption(builder, current, request)

    video_sink = None if RAW_INPUT_RE.match(current) else current
    audio_sink = _add_audio_mix(builder, mixes[0].plan) if mixes else None

    graph = FilterGraph(
        stages=builder.stages,
        video_sink=video_sink,
        audio_sink=audio_sink,
        keep_original_audio=audio_sink is None and inputs.video_has_audio,
    )
    logger.debug("Built filter graph: %s", graph.graph_text)
    return graph


def build_stitch_graph(
    clip_count: int,
    with_audio: bool,
    width: int,
    height: int,
    fps: int,
) -> FilterGraph:
    """Normalise ``clip_count`` raw inputs to a common size/rate and concatenate them."""
    if clip_count < 2:
        raise GraphBuildError("stitching requires at least two clips")
    builder = FilterGraphBuilder()
    video_labels = []
    audio_labels = []
    for i in range(clip_count):
        label = builder.add(
            "scale",
            [f"{i}:v"],
            [("w", str(width)), ("h", str(height)), ("force_original_aspect_ratio", "decrease")],
            prefix="n",
        )
        label = builder.add(
            "pad",
            [label],
            [("w", str(width)), ("h", str(height)), ("x", "(ow-iw)/2"), ("y", "(oh-ih)/2")],
            prefix="n",
        )
        label = builder.add("setsar", [label], [(None, "1")], prefix="n")
        video_labels.append(builder.add("fps", [label], [("fps", str(fps))], prefix="n"))
        if with_audio:
            audio_labels.append(
                builder.add(
                    "aformat",
                    [f"{i}:a"],
                    [("sample_rates", "44100"), ("channel_layouts", "stereo")],
                    prefix="na",
                )
            )

    video_sink = builder.add(
        "concat",
        video_labels,
        [("n", str(clip_count)), ("v", "1"), ("a", "0")],
        prefix="v",
    )
    audio_sink = None
    if with_audio:
        audio_sink = builder.add(
            "concat",
            audio_labels,
            [("n", str(clip_count)), ("v", "0"), ("a", "1")],
            prefix="a",
        )
    return FilterGraph(stages=builder.stages, video_sink=video_sink, audio_sink=audio_sink)

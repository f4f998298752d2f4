"""End-to-end combine job: download, probe, build, render, verify."""
import logging
import os
import shutil
import threading
import uuid
from pathlib import Path
from typing import Callable

from . import config
from .downloads import download_all, download_file
from .engine import EngineRunner
from .errors import CombineError, EngineError, GraphBuildError, JobCancelled, ProbeError
from .graph import (
    AudioMixRequest,
    CaptionRequest,
    FilterGraph,
    FilterStageRequest,
    InputLayout,
    OverlayRequest,
    build_graph,
    build_stitch_graph,
)
from .jobs import JobStore, default_store, save_job_status
from .layout import BRANDING_DIVISOR, BASE_DIVISOR, wants_cjk_wrap, wrap_and_size
from .models import (
    AudioMixPlan,
    AudioTrack,
    CaptionRole,
    ImageOverlayRequest,
    JobState,
    MediaAsset,
    MediaKind,
    MixDurationPolicy,
    RenderJob,
    RenderOutput,
    RenderRequest,
    variant_filename,
)
from .probe import probe_asset

logger = logging.getLogger("video-combine.orchestrator")

WITH_OVERLAY = "with_overlay"
WITHOUT_OVERLAY = "without_overlay"
IMAGE_WITH_OVERLAY = "image_with_overlay"

_cancel_events: dict[str, threading.Event] = {}
_cancel_lock = threading.Lock()


def _register(job_id: str) -> threading.Event:
    with _cancel_lock:
        event = _cancel_events.setdefault(job_id, threading.Event())
    return event


def _release(job_id: str) -> None:
    with _cancel_lock:
        _cancel_events.pop(job_id, None)


def cancel_job(job_id: str) -> bool:
    """Signal a running job to stop; its engine process is killed."""
    with _cancel_lock:
        event = _cancel_events.get(job_id)
    if event is None:
        return False
    event.set()
    return True


def new_job_id() -> str:
    return str(uuid.uuid4())[:8]


def output_dir(job_id: str) -> Path:
    return Path(config.MOUNT_PATH) / "output" / job_id


def build_captions(request: RenderRequest, frame_width: int, frame_height: int) -> list[CaptionRequest]:
    font_file = config.FONT_FILE if config.FONT_FILE and os.path.isfile(config.FONT_FILE) else None
    captions = []
    for caption in request.captions:
        divisor = BRANDING_DIVISOR if caption.role == CaptionRole.BRANDING else BASE_DIVISOR
        layout = wrap_and_size(
            caption.text,
            frame_width,
            frame_height,
            config.CAPTION_MAX_CHARS,
            cjk_aware=wants_cjk_wrap(caption.language, config.CJK_AWARE_WRAP),
            base_divisor=divisor,
        )
        if layout.is_empty:
            continue
        captions.append(
            CaptionRequest(
                caption=caption,
                layout=layout,
                margin=config.CAPTION_MARGIN,
                font_file=font_file,
                font_color=config.FONT_COLOR,
                stroke_color=config.STROKE_COLOR,
            )
        )
    return captions


def build_mix_plan(
    request: RenderRequest,
    inputs: InputLayout,
    video: MediaAsset,
    dialogue: MediaAsset | None,
    music: MediaAsset | None,
) -> AudioMixPlan:
    """Tracks in priority order: dialogue, the video's own audio, music."""
    tracks: list[AudioTrack] = []
    if dialogue is not None and inputs.dialogue is not None:
        tracks.append(
            AudioTrack(
                source_label=f"{inputs.dialogue}:a",
                volume_db=config.DIALOGUE_VOLUME_DB,
                duration_seconds=dialogue.duration_seconds,
            )
        )
    has_music = music is not None and inputs.music is not None
    # without new audio the original stream is copied, not mixed
    if (tracks or has_music) and video.has_audio_stream and config.PRESERVE_ORIGINAL_AUDIO:
        tracks.append(
            AudioTrack(
                source_label=f"{inputs.video}:a",
                volume_db=config.ORIGINAL_AUDIO_VOLUME_DB,
                duration_seconds=video.duration_seconds,
            )
        )
    if has_music:
        tracks.append(
            AudioTrack(
                source_label=f"{inputs.music}:a",
                volume_db=config.MUSIC_VOLUME_DB,
                fade_in_sec=config.MUSIC_FADE_IN_SECONDS or None,
                fade_out_sec=config.MUSIC_FADE_OUT_SECONDS or None,
                duration_seconds=music.duration_seconds,
                max_duration_seconds=config.MUSIC_MAX_SECONDS or None,
            )
        )
    # "longest" may outlast the video; per-track caps such as MUSIC_MAX_SECONDS still apply
    cap = None
    if video.duration_seconds and request.mix_policy != MixDurationPolicy.LONGEST:
        cap = video.duration_seconds
    return AudioMixPlan(
        tracks=tuple(tracks),
        mix_duration_policy=request.mix_policy,
        max_duration_seconds=cap,
    )


class RenderOrchestrator:
    def __init__(
        self,
        store: JobStore | None = None,
        runner: EngineRunner | None = None,
        downloader: Callable = download_file,
        uploader: Callable | None = None,
        ffprobe_path: str | None = None,
    ):
        self.store = store or default_store()
        self.runner = runner or EngineRunner()
        self.downloader = downloader
        self.uploader = uploader
        self.ffprobe_path = ffprobe_path

    def _enter(self, job: RenderJob, state: JobState, **metadata) -> None:
        job.state = state
        logger.info("Job %s: %s", job.job_id, state.value)
        save_job_status(self.store, job.job_id, state, metadata)

    def run(self, request: RenderRequest | ImageOverlayRequest) -> RenderJob:
        job_id = request.job_id or new_job_id()
        job = RenderJob(
            job_id=job_id,
            request=request,
            work_dir=Path(config.MOUNT_PATH) / f"combine_{job_id}",
        )
        cancel_event = _register(job_id)
        try:
            self._execute(job, cancel_event)
        except CombineError as exc:
            self._fail(job, exc.stage if exc.stage != "unknown" else job.state.value, str(exc))
            if isinstance(exc, EngineError) and exc.stderr_tail:
                logger.debug("Engine diagnostics for job %s:\n%s", job_id, exc.stderr_tail)
        except OSError as exc:
            self._fail(job, job.state.value, f"I/O error: {exc}")
        except Exception as exc:
            logger.exception("Job %s crashed during %s", job_id, job.state.value)
            self._fail(job, job.state.value, str(exc))
            raise
        finally:
            _release(job_id)
            shutil.rmtree(job.work_dir, ignore_errors=True)
        return job

    def _fail(self, job: RenderJob, stage: str, message: str) -> None:
        logger.error("Job %s failed during %s: %s", job.job_id, stage, message)
        # no partial output may remain downloadable
        shutil.rmtree(output_dir(job.job_id), ignore_errors=True)
        job.outputs.clear()
        job.state = JobState.FAILED
        job.error = message
        job.failed_stage = stage
        save_job_status(self.store, job.job_id, JobState.FAILED, {"error": message, "stage": stage})

    def _execute(self, job: RenderJob, cancel_event: threading.Event) -> None:
        request = job.request
        job.work_dir.mkdir(parents=True, exist_ok=True)
        if isinstance(request, ImageOverlayRequest):
            self._execute_image(job, cancel_event)
            return

        self._enter(job, JobState.DOWNLOADING, assets=sorted(request.remote_assets()))
        paths = download_all(
            request.remote_assets(),
            job.work_dir / "inputs",
            downloader=self.downloader,
        )

        self._enter(job, JobState.PROBING)
        if request.videos:
            video_path = self._stitch(job, paths, cancel_event)
        else:
            video_path = paths["video"]
        video = probe_asset(MediaAsset(video_path, MediaKind.VIDEO), ffprobe_path=self.ffprobe_path)
        if not video.width or not video.height:
            raise ProbeError("could not determine video dimensions")
        dialogue = self._optional_audio(paths.get("dialogue"))
        music = self._optional_audio(paths.get("music"))
        overlay = MediaAsset(paths["overlay_image"], MediaKind.IMAGE) if "overlay_image" in paths else None
        job.assets = {
            name: asset
            for name, asset in (("video", video), ("dialogue", dialogue), ("music", music), ("overlay_image", overlay))
            if asset is not None
        }

        self._enter(job, JobState.BUILDING, width=video.width, height=video.height, duration=video.duration_seconds)
        variants = self._build_variants(job, video, dialogue, music, overlay)

        self._enter(job, JobState.RENDERING, variants=[name for name, _, _ in variants])
        out_dir = output_dir(job.job_id)
        out_dir.mkdir(parents=True, exist_ok=True)
        rendered: list[tuple[str, Path]] = []
        for name, graph, input_args in variants:
            if cancel_event.is_set():
                raise JobCancelled("render cancelled")
            out_path = out_dir / variant_filename(name)
            self.runner.run(input_args, graph.output_args(), out_path, cancel_event)
            rendered.append((name, out_path))

        self._finish(job, rendered, out_dir)

    def _execute_image(self, job: RenderJob, cancel_event: threading.Event) -> None:
        request = job.request
        self._enter(job, JobState.DOWNLOADING, assets=sorted(request.remote_assets()))
        paths = download_all(
            request.remote_assets(),
            job.work_dir / "inputs",
            downloader=self.downloader,
        )

        self._enter(job, JobState.PROBING)
        # dimensions only matter for the full-frame and bottom-bar positions
        image = probe_asset(MediaAsset(paths["image"], MediaKind.IMAGE), optional=True, ffprobe_path=self.ffprobe_path)
        overlay = MediaAsset(paths["overlay_image"], MediaKind.IMAGE)
        job.assets = {"image": image, "overlay_image": overlay}

        self._enter(job, JobState.BUILDING, width=image.width, height=image.height)
        graph = build_graph(
            [
                OverlayRequest(
                    input_index=1,
                    options=request.overlay_options,
                    frame_width=image.width,
                    frame_height=image.height,
                )
            ]
        )
        logger.info("Job %s %s graph: %s", job.job_id, IMAGE_WITH_OVERLAY, graph.graph_text)

        self._enter(job, JobState.RENDERING, variants=[IMAGE_WITH_OVERLAY])
        out_dir = output_dir(job.job_id)
        out_dir.mkdir(parents=True, exist_ok=True)
        if cancel_event.is_set():
            raise JobCancelled("render cancelled")
        out_path = out_dir / variant_filename(IMAGE_WITH_OVERLAY)
        self.runner.run(
            [["-i", str(image.path)], ["-i", str(overlay.path)]],
            graph.still_output_args(),
            out_path,
            cancel_event,
        )
        self._finish(job, [(IMAGE_WITH_OVERLAY, out_path)], out_dir)

    def _finish(self, job: RenderJob, rendered: list[tuple[str, Path]], out_dir: Path) -> None:
        self._enter(job, JobState.VERIFYING)
        for name, out_path in rendered:
            job.outputs[name] = self._verify(job, name, out_path)

        job.state = JobState.COMPLETE
        self._enter(job, JobState.COMPLETE, result=job.to_result())
        if self.uploader is not None:
            shutil.rmtree(out_dir, ignore_errors=True)

    def _optional_audio(self, path: Path | None) -> MediaAsset | None:
        if path is None:
            return None
        asset = probe_asset(MediaAsset(path, MediaKind.AUDIO), optional=True, ffprobe_path=self.ffprobe_path)
        if asset.duration_seconds is None and not asset.has_audio_stream:
            logger.warning("%s has no readable audio; ignoring it", path.name)
            return None
        return asset

    def _build_variants(
        self,
        job: RenderJob,
        video: MediaAsset,
        dialogue: MediaAsset | None,
        music: MediaAsset | None,
        overlay: MediaAsset | None,
    ) -> list[tuple[str, FilterGraph, list[list[str]]]]:
        request = job.request
        variants = []

        plain_inputs = InputLayout.assign(dialogue is not None, music is not None, False, bool(video.has_audio_stream))
        plan = build_mix_plan(request, plain_inputs, video, dialogue, music)
        plain_graph = build_graph([AudioMixRequest(plan)], plain_inputs)
        variants.append((WITHOUT_OVERLAY, plain_graph, self._input_args(video, dialogue, music, None)))

        captions = build_captions(request, video.width, video.height)
        if request.wants_overlay_variant:
            inputs = InputLayout.assign(
                dialogue is not None, music is not None, overlay is not None, bool(video.has_audio_stream)
            )
            requests: list[FilterStageRequest] = []
            if overlay is not None:
                requests.append(
                    OverlayRequest(
                        input_index=inputs.overlay,
                        options=request.overlay_options,
                        frame_width=video.width,
                        frame_height=video.height,
                    )
                )
            requests.extend(captions)
            requests.append(AudioMixRequest(build_mix_plan(request, inputs, video, dialogue, music)))
            graph = build_graph(requests, inputs)
            if not graph.reencodes_video:
                raise GraphBuildError("overlay variant produced no visual stage", graph_text=graph.graph_text)
            variants.append((WITH_OVERLAY, graph, self._input_args(video, dialogue, music, overlay)))

        for name, graph, _ in variants:
            logger.info("Job %s %s graph: %s", job.job_id, name, graph.graph_text or "<none>")
        return variants

    @staticmethod
    def _input_args(
        video: MediaAsset,
        dialogue: MediaAsset | None,
        music: MediaAsset | None,
        overlay: MediaAsset | None,
    ) -> list[list[str]]:
        args = [["-i", str(video.path)]]
        for asset in (dialogue, music, overlay):
            if asset is not None:
                args.append(["-i", str(asset.path)])
        return args

    def _stitch(self, job: RenderJob, paths: dict[str, Path], cancel_event: threading.Event) -> Path:
        clip_paths = [paths[name] for name in sorted(paths) if name.startswith("scene_")]
        clips = [
            probe_asset(MediaAsset(p, MediaKind.VIDEO), ffprobe_path=self.ffprobe_path) for p in clip_paths
        ]
        with_audio = all(clip.has_audio_stream for clip in clips)
        graph = build_stitch_graph(
            len(clips),
            with_audio,
            config.STITCH_WIDTH,
            config.STITCH_HEIGHT,
            config.STITCH_FPS,
        )
        out_path = job.work_dir / "stitched.mp4"
        logger.info("Job %s stitching %d clips (audio=%s)", job.job_id, len(clips), with_audio)
        self.runner.run([["-i", str(p)] for p in clip_paths], graph.output_args(), out_path, cancel_event)
        if not out_path.exists() or out_path.stat().st_size == 0:
            raise EngineError("stitching produced no output")
        return out_path

    def _verify(self, job: RenderJob, variant: str, path: Path) -> RenderOutput:
        if not path.exists() or path.stat().st_size == 0:
            raise EngineError(f"{variant} output is missing or empty", stage="verifying")
        kind = MediaKind.IMAGE if variant == IMAGE_WITH_OVERLAY else MediaKind.VIDEO
        asset = probe_asset(MediaAsset(path, kind), optional=True, ffprobe_path=self.ffprobe_path)
        output = RenderOutput(variant=variant, asset=asset, file_size_bytes=path.stat().st_size)
        if self.uploader is not None:
            output.url = self.uploader(path, job.job_id, variant)
        else:
            output.url = f"/download/{job.job_id}/{variant}"
        return output

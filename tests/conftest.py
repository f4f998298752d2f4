from pathlib import Path

import pytest

from video_combine import config, jobs
from video_combine import probe as probe_module
from video_combine.errors import ProbeError
from video_combine.jobs import InMemoryJobStore
from video_combine.probe import ProbeResult

PROBES = {
    "video.mp4": ProbeResult(15.0, 1280, 720, True, False),
    "dialogue.mp3": ProbeResult(10.0, None, None, False, True),
    "music.mp3": ProbeResult(60.0, None, None, False, True),
    "scene_001.mp4": ProbeResult(10.0, 1280, 720, True, True),
    "scene_002.mp4": ProbeResult(12.0, 1920, 1080, True, True),
    "stitched.mp4": ProbeResult(22.0, 1920, 1080, True, True),
    "with_overlay.mp4": ProbeResult(15.0, 1280, 720, True, True),
    "without_overlay.mp4": ProbeResult(15.0, 1280, 720, True, True),
    "image.png": ProbeResult(0.04, 1920, 1080, True, False),
}


class FakeRunner:
    """Stands in for ffmpeg: records each invocation and writes a small file."""

    def __init__(self, write_output: bool = True, error: Exception | None = None):
        self.write_output = write_output
        self.error = error
        self.calls = []

    def run(self, inputs, output_args, output_path, cancel_event=None):
        self.calls.append({"inputs": inputs, "args": output_args, "output": Path(output_path)})
        if self.error is not None:
            raise self.error
        if self.write_output:
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            Path(output_path).write_bytes(b"rendered-video")
        return output_path

    def graph_for(self, output_name: str) -> str:
        for call in self.calls:
            if call["output"].name == output_name:
                args = call["args"]
                return args[args.index("-filter_complex") + 1] if "-filter_complex" in args else ""
        raise AssertionError(f"no render for {output_name}")

    def args_for(self, output_name: str) -> list:
        for call in self.calls:
            if call["output"].name == output_name:
                return call["args"]
        raise AssertionError(f"no render for {output_name}")


class FakeDownloader:
    def __init__(self):
        self.urls = []

    def __call__(self, url, output_path, timeout=None):
        self.urls.append(url)
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_bytes(b"media-bytes")
        return Path(output_path)


@pytest.fixture(autouse=True)
def mount_path(tmp_path, monkeypatch):
    mount = tmp_path / "mount"
    monkeypatch.setattr(config, "MOUNT_PATH", str(mount))
    monkeypatch.setattr(config, "FONT_FILE", "")
    monkeypatch.setattr(config, "OUTPUT_BUCKET", None)
    monkeypatch.setattr(config, "QUEUE_URL", "")
    return mount


@pytest.fixture
def store():
    store = InMemoryJobStore(ttl_seconds=3600)
    jobs.set_default_store(store)
    yield store
    jobs.set_default_store(None)


@pytest.fixture
def fake_probe(monkeypatch):
    def _probe(path, ffprobe_path=None):
        name = Path(path).name
        if name not in PROBES:
            raise ProbeError(f"cannot probe {name}")
        return PROBES[name]

    monkeypatch.setattr(probe_module, "probe", _probe)
    return _probe


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def downloader():
    return FakeDownloader()

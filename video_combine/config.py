import logging
import os

logger = logging.getLogger("video-combine.config")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


# Allow endpoint overrides for local testing (e.g., LocalStack)
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL")
SQS_ENDPOINT_URL = os.getenv("SQS_ENDPOINT_URL")

OUTPUT_BUCKET = os.getenv("OUTPUT_BUCKET")
MOUNT_PATH = os.getenv("MOUNT_PATH", "/tmp/video-combine")
QUEUE_URL = os.getenv("QUEUE_URL", "")
PRESIGNED_URL_EXPIRATION = _env_int("PRESIGNED_URL_EXPIRATION", 3600)

FFMPEG_PATH = os.getenv("FFMPEG_PATH")
FFPROBE_PATH = os.getenv("FFPROBE_PATH")
FFMPEG_TIMEOUT_SECONDS = max(60, _env_int("FFMPEG_TIMEOUT_SECONDS", 1800))
PROBE_TIMEOUT_SECONDS = _env_int("PROBE_TIMEOUT_SECONDS", 60)

DOWNLOAD_TIMEOUT_SECONDS = _env_int("DOWNLOAD_TIMEOUT_SECONDS", 60)
DOWNLOAD_WORKERS = max(1, _env_int("DOWNLOAD_WORKERS", 4))

# Ducking: dialogue near unity gain, music attenuated
DIALOGUE_VOLUME_DB = _env_float("DIALOGUE_VOLUME_DB", 0.0)
ORIGINAL_AUDIO_VOLUME_DB = _env_float("ORIGINAL_AUDIO_VOLUME_DB", 0.0)
MUSIC_VOLUME_DB = _env_float("MUSIC_VOLUME_DB", -2.0)
MUSIC_FADE_IN_SECONDS = _env_float("MUSIC_FADE_IN_SECONDS", 0.0)
MUSIC_FADE_OUT_SECONDS = _env_float("MUSIC_FADE_OUT_SECONDS", 2.0)
MUSIC_MAX_SECONDS = _env_float("MUSIC_MAX_SECONDS", 60.0)
PRESERVE_ORIGINAL_AUDIO = _env_bool("PRESERVE_ORIGINAL_AUDIO", True)
DEFAULT_MIX_POLICY = os.getenv("DEFAULT_MIX_POLICY", "first")
REQUIRE_AUDIO = _env_bool("REQUIRE_AUDIO", False)

CAPTION_MAX_CHARS = _env_int("CAPTION_MAX_CHARS", 24)
CAPTION_MARGIN = _env_int("CAPTION_MARGIN", 40)
CJK_AWARE_WRAP = _env_bool("CJK_AWARE_WRAP", False)
FONT_FILE = os.getenv("FONT_FILE", "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf")
FONT_COLOR = os.getenv("FONT_COLOR", "white")
STROKE_COLOR = os.getenv("STROKE_COLOR", "black")

OVERLAY_POSITION = os.getenv("OVERLAY_POSITION", "bottom-right")
OVERLAY_SIZE = _env_int("OVERLAY_SIZE", 150)
OVERLAY_MARGIN = _env_int("OVERLAY_MARGIN", 20)

# Normalization target for stitched clips
STITCH_WIDTH = _env_int("STITCH_WIDTH", 1920)
STITCH_HEIGHT = _env_int("STITCH_HEIGHT", 1080)
STITCH_FPS = _env_int("STITCH_FPS", 30)

JOB_TTL_SECONDS = _env_int("JOB_TTL_SECONDS", 24 * 3600)
LOCAL_WORKERS = max(1, _env_int("LOCAL_WORKERS", 2))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

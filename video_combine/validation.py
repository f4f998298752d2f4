import re
from typing import Any
from urllib.parse import urlparse

from . import config
from .errors import ValidationError
from .models import (
    CaptionRole,
    CaptionSpec,
    ImageOverlayRequest,
    MixDurationPolicy,
    OverlayOptions,
    OverlayPosition,
    RenderRequest,
    SceneClip,
)

JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
ALLOWED_SCHEMES = ("http", "https", "s3")

# Field names accepted from earlier versions of the API
LEGACY_ALIASES = {
    "video": ("final_stitch_video", "final_stitched_video"),
    "dialogue": ("final_dialogue",),
    "music": ("final_music_url", "mv_audio"),
    "overlay_image": ("overlay_image_url",),
    "image": ("final_image_url",),
}


def _pick(data: dict[str, Any], name: str) -> Any:
    if data.get(name):
        return data[name]
    for alias in LEGACY_ALIASES.get(name, ()):
        if data.get(alias):
            return data[alias]
    return None


def _url(value: Any, field: str) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a URL string")
    parsed = urlparse(value.strip())
    if parsed.scheme not in ALLOWED_SCHEMES or not parsed.netloc:
        raise ValidationError(f"{field} must be an http(s) or s3 URL")
    return value.strip()


def _int(value: Any, field: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if number < 0:
        raise ValidationError(f"{field} must not be negative")
    return number


def parse_overlay_options(raw: Any) -> OverlayOptions:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError("overlay_options must be an object")
    position = raw.get("position") or config.OVERLAY_POSITION
    try:
        position = OverlayPosition(str(position))
    except ValueError:
        allowed = ", ".join(p.value for p in OverlayPosition)
        raise ValidationError(f"overlay_options.position must be one of: {allowed}")
    return OverlayOptions(
        position=position,
        size=_int(raw.get("size"), "overlay_options.size", config.OVERLAY_SIZE),
        margin=_int(raw.get("margin"), "overlay_options.margin", config.OVERLAY_MARGIN),
    )


def parse_captions(raw: Any) -> list[CaptionSpec]:
    if raw is None:
        return []
    if not isinstance(raw, dict):
        raise ValidationError("captions must be an object")
    language = raw.get("language")
    if language is not None and not isinstance(language, str):
        raise ValidationError("captions.language must be a string")
    captions = []
    for field, role in (("top", CaptionRole.TOP), ("bottom", CaptionRole.BOTTOM), ("project_name", CaptionRole.BRANDING)):
        text = raw.get(field)
        if text is None:
            continue
        if not isinstance(text, str):
            raise ValidationError(f"captions.{field} must be a string")
        captions.append(CaptionSpec(text=text, role=role, language=language))
    return captions


def parse_scenes(raw: Any) -> list[SceneClip]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("videos must be a list")
    clips = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"videos[{i}] must be an object")
        url = _url(item.get("url") or item.get("final_video_url"), f"videos[{i}].url")
        if not url:
            raise ValidationError(f"videos[{i}].url is required")
        clips.append(SceneClip(url=url, scene_number=_int(item.get("scene_number"), f"videos[{i}].scene_number", i)))
    return sorted(clips, key=lambda c: c.scene_number)


def parse_request(data: Any) -> RenderRequest:
    """Validate a combine request. Raises ValidationError before any I/O happens."""
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")

    scenes = parse_scenes(data.get("videos"))
    video = _url(_pick(data, "video"), "video")
    if len(scenes) == 1 and not video:
        video, scenes = scenes[0].url, []
    if not video and not scenes:
        raise ValidationError("Combine operation requires video")

    dialogue = _url(_pick(data, "dialogue"), "dialogue")
    music = _url(_pick(data, "music"), "music")
    if config.REQUIRE_AUDIO and not (dialogue or music):
        raise ValidationError("Combine operation requires dialogue or music")

    policy_raw = data.get("audio_mix_duration_policy") or config.DEFAULT_MIX_POLICY
    try:
        policy = MixDurationPolicy(str(policy_raw))
    except ValueError:
        raise ValidationError("audio_mix_duration_policy must be one of: shortest, longest, first")

    return RenderRequest(
        video=video,
        dialogue=dialogue,
        music=music,
        overlay_image=_url(_pick(data, "overlay_image"), "overlay_image"),
        overlay_options=parse_overlay_options(data.get("overlay_options")),
        captions=parse_captions(data.get("captions")),
        mix_policy=policy,
        videos=scenes,
        job_id=_job_id(data),
    )


def _job_id(data: dict[str, Any]) -> str | None:
    job_id = data.get("job_id")
    if job_id is not None and not (isinstance(job_id, str) and JOB_ID_RE.match(job_id)):
        raise ValidationError("job_id may only contain letters, digits, '-' and '_'")
    return job_id


def parse_image_overlay_request(data: Any) -> ImageOverlayRequest:
    """Validate an image_overlay request: a base image plus the logo to place on it."""
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    image = _url(_pick(data, "image"), "image")
    overlay = _url(_pick(data, "overlay_image"), "overlay_image")
    if not image or not overlay:
        raise ValidationError("Image overlay operation requires image and overlay_image")
    return ImageOverlayRequest(
        image=image,
        overlay_image=overlay,
        overlay_options=parse_overlay_options(data.get("overlay_options")),
        job_id=_job_id(data),
    )


def parse_job_request(data: Any) -> RenderRequest | ImageOverlayRequest:
    if isinstance(data, dict) and data.get("operation") == "image_overlay":
        return parse_image_overlay_request(data)
    return parse_request(data)

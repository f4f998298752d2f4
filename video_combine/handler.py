import base64
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .aws import sqs_client, upload_output
from .engine import find_ffmpeg
from .errors import ValidationError
from .jobs import default_store, save_job_status
from .models import ImageOverlayRequest, JobState, RenderRequest
from .orchestrator import RenderOrchestrator, cancel_job, new_job_id
from .validation import parse_job_request

logger = logging.getLogger("video-combine.handler")

OPERATIONS = ("combine", "stitch", "image_overlay")

_local_pool: ThreadPoolExecutor | None = None


def _response(status_code: int, body: dict) -> dict:
    return {
        "statusCode": status_code,
        "headers": {"content-type": "application/json"},
        "body": json.dumps(body),
    }


def make_orchestrator() -> RenderOrchestrator:
    uploader = upload_output if config.OUTPUT_BUCKET else None
    return RenderOrchestrator(store=default_store(), uploader=uploader)


def _local_executor() -> ThreadPoolExecutor:
    global _local_pool
    if _local_pool is None:
        _local_pool = ThreadPoolExecutor(max_workers=config.LOCAL_WORKERS, thread_name_prefix="combine")
    return _local_pool


def _run_job(request: RenderRequest | ImageOverlayRequest) -> dict:
    job = make_orchestrator().run(request)
    return job.to_result()


def _handle_combine_operation(data: dict, worker_mode: bool = False) -> dict:
    """Validate, then run the job synchronously."""
    try:
        request = parse_job_request(data)
    except ValidationError as exc:
        if worker_mode:
            raise
        return _response(400, {"success": False, "error": str(exc), "stage": exc.stage})

    if not find_ffmpeg():
        error_msg = f"FFmpeg not available - {data.get('operation', 'combine')} operation requires FFmpeg"
        if worker_mode:
            raise RuntimeError(error_msg)
        return _response(503, {"success": False, "error": error_msg})

    result = _run_job(request)
    if worker_mode:
        return result
    return _response(200 if result["success"] else 500, result)


def _status_url(event: dict, job_id: str) -> str:
    domain = event.get("requestContext", {}).get("domainName", "")
    return f"https://{domain}/status/{job_id}" if domain else f"/status/{job_id}"


def _accept_async(event: dict, data: dict) -> dict:
    """Queue the job (SQS when configured, local worker pool otherwise) and return 202."""
    try:
        request = parse_job_request(data)
    except ValidationError as exc:
        return _response(400, {"success": False, "error": str(exc), "stage": exc.stage})

    job_id = request.job_id or new_job_id()
    request.job_id = job_id
    data["job_id"] = job_id
    save_job_status(
        default_store(),
        job_id,
        JobState.QUEUED,
        {"operation": data.get("operation", "combine"), "enqueued_at": time.time()},
    )

    if config.QUEUE_URL:
        try:
            sqs_client().send_message(QueueUrl=config.QUEUE_URL, MessageBody=json.dumps(data))
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to enqueue job %s: %s", job_id, exc)
            save_job_status(default_store(), job_id, JobState.FAILED, {"error": str(exc), "stage": "queued"})
            return _response(502, {"success": False, "job_id": job_id, "error": "Could not enqueue job"})
    else:
        _local_executor().submit(_run_job, request)

    return _response(202, {"accepted": True, "job_id": job_id, "status_url": _status_url(event, job_id)})


def _handle_status(job_id: str) -> dict:
    status_data = default_store().get(job_id)
    if status_data:
        return _response(200, status_data)
    return _response(404, {"error": "Job not found"})


def _handle_cancel(job_id: str) -> dict:
    if cancel_job(job_id):
        return _response(202, {"job_id": job_id, "cancelling": True})
    return _response(404, {"error": "Job not running"})


def _health() -> dict:
    return {
        "status": "ok",
        "message": "Video Combine API - combine a video with dialogue, music, overlay and captions",
        "has_ffmpeg": find_ffmpeg() is not None,
        "mount_path_exists": Path(config.MOUNT_PATH).exists(),
        "queue_configured": bool(config.QUEUE_URL),
        "usage": {
            "endpoint": "POST /process",
            "example": {
                "operation": "combine",
                "video": "https://example.com/video.mp4",
                "music": "https://example.com/music.mp3",
                "overlay_image": "https://example.com/logo.png",
                "captions": {"top": "HELLO WORLD", "bottom": "", "project_name": "My Project"},
                "audio_mix_duration_policy": "first",
            },
            "image_overlay_example": {
                "operation": "image_overlay",
                "image": "https://example.com/poster.png",
                "overlay_image": "https://example.com/logo.png",
                "overlay_options": {"position": "bottom-right", "size": 150, "margin": 20},
            },
            "response": "Returns downloads.with_overlay / downloads.without_overlay (downloads.image_with_overlay for images)",
            "stream": "GET /stream/{job_id} plays the finished video inline",
        },
    }


def _parse_body(event: dict) -> dict:
    body = event.get("body")
    if event.get("isBase64Encoded") and body:
        body = base64.b64decode(body)
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8")
    try:
        data = json.loads(body or "{}")
    except json.JSONDecodeError:
        raise ValidationError("request body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def _handle_records(records: list) -> dict:
    for record in records:
        if record.get("eventSource") != "aws:sqs":
            continue
        payload = json.loads(record.get("body", "{}"))
        operation = payload.get("operation", "combine")
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        result = _handle_combine_operation(payload, worker_mode=True)
        logger.info("Queued job %s finished: success=%s", result.get("job_id"), result.get("success"))
    return _response(200, {"status": "ok"})


def handler(event, context):
    # SQS trigger; unexpected errors propagate so the message is retried
    if isinstance(event, dict) and isinstance(event.get("Records"), list):
        return _handle_records(event["Records"])

    method = event.get("requestContext", {}).get("http", {}).get("method", "GET")
    raw_path = event.get("rawPath", "") or event.get("path", "") or "/"

    if method == "GET":
        if raw_path.startswith("/status/"):
            job_id = raw_path.split("/status/")[-1]
            if job_id:
                return _handle_status(job_id)
        if raw_path == "/health":
            return _response(200, {"status": "ok"})
        return _response(200, _health())

    if method == "DELETE" and raw_path.startswith("/jobs/"):
        return _handle_cancel(raw_path.split("/jobs/")[-1])

    if method == "POST":
        try:
            data = _parse_body(event)
        except ValidationError as exc:
            return _response(400, {"success": False, "error": str(exc), "stage": exc.stage})

        operation = data.get("operation", "combine")
        if operation not in OPERATIONS:
            return _response(400, {"success": False, "error": f"Unknown operation: {operation}"})
        if config.QUEUE_URL or data.get("async"):
            return _accept_async(event, data)
        return _handle_combine_operation(data)

    return _response(405, {"error": f"method {method} not allowed"})

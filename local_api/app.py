import json
import logging
import os

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse
from starlette.concurrency import run_in_threadpool

from video_combine import config
from video_combine.aws import sqs_client
from video_combine.handler import handler
from video_combine.models import VARIANT_FORMATS, variant_filename
from video_combine.orchestrator import WITH_OVERLAY, WITHOUT_OVERLAY, output_dir

config.configure_logging()
logger = logging.getLogger("video-combine.local-api")

app = FastAPI(title="Local Video Combine API")


def _discover_queue_url() -> None:
    """Resolve QUEUE_URL from QUEUE_NAME when only the name is provided."""
    qname = os.getenv("QUEUE_NAME")
    if config.QUEUE_URL or not qname:
        return
    try:
        qurl = sqs_client().get_queue_url(QueueName=qname)["QueueUrl"]
    except (BotoCoreError, ClientError) as exc:
        logger.warning("Could not resolve queue %s: %s; processing jobs locally", qname, exc)
        return
    # Rewrite host to localstack for in-container access
    qurl = qurl.replace("localhost:4566", "localstack:4566").replace("127.0.0.1:4566", "localstack:4566")
    config.QUEUE_URL = qurl


_discover_queue_url()

STREAM_VARIANTS = (WITH_OVERLAY, WITHOUT_OVERLAY)


def _event_for_get(path: str) -> dict:
    return {
        "requestContext": {"http": {"method": "GET"}},
        "rawPath": path,
    }


def _event_for_delete(path: str) -> dict:
    return {
        "requestContext": {"http": {"method": "DELETE"}},
        "rawPath": path,
    }


def _event_for_post(body: bytes) -> dict:
    return {
        "requestContext": {
            "http": {"method": "POST"},
            "domainName": os.getenv("PUBLIC_DOMAIN", "localhost:8000"),
        },
        "rawPath": "/process",
        "isBase64Encoded": False,
        "body": body.decode("utf-8") if body else "{}",
    }


def _to_response(resp) -> JSONResponse:
    if isinstance(resp, dict) and "statusCode" in resp:
        content = resp.get("body")
        data = json.loads(content) if isinstance(content, str) else content
        return JSONResponse(status_code=resp.get("statusCode", 200), content=data)
    return JSONResponse(content=resp)


@app.get("/")
async def root():
    return _to_response(handler(_event_for_get("/"), None))


@app.get("/health")
async def health():
    return _to_response(handler(_event_for_get("/health"), None))


@app.get("/status/{job_id}")
async def status(job_id: str):
    return _to_response(handler(_event_for_get(f"/status/{job_id}"), None))


@app.delete("/jobs/{job_id}")
async def cancel(job_id: str):
    return _to_response(handler(_event_for_delete(f"/jobs/{job_id}"), None))


def _safe_job_id(job_id: str) -> bool:
    return "/" not in job_id and job_id not in (".", "..")


@app.get("/download/{job_id}/{variant}")
async def download(job_id: str, variant: str):
    if variant not in VARIANT_FORMATS or not _safe_job_id(job_id):
        raise HTTPException(status_code=404, detail="File not found")
    path = output_dir(job_id) / variant_filename(variant)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    suffix, media_type = VARIANT_FORMATS[variant]
    return FileResponse(path, media_type=media_type, filename=f"{variant}_{job_id}{suffix}")


@app.get("/stream/{job_id}")
async def stream(job_id: str):
    """Inline playback of the finished video; Range requests get 206 partial content."""
    if _safe_job_id(job_id):
        for variant in STREAM_VARIANTS:
            path = output_dir(job_id) / variant_filename(variant)
            if path.is_file():
                return FileResponse(path, media_type="video/mp4")
    raise HTTPException(status_code=404, detail="Video file not found")


@app.post("/process")
async def process(request: Request):
    body = await request.body()
    # combine jobs block on ffmpeg; keep them off the event loop
    resp = await run_in_threadpool(handler, _event_for_post(body), None)
    return _to_response(resp)

import logging
import os
import shutil
import subprocess
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from urllib.parse import urlparse

from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .aws import parse_s3_url, s3_client
from .errors import DownloadError

logger = logging.getLogger("video-combine.downloads")

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0 Safari/537.36"
CHUNK_SIZE = 1024 * 1024

DEFAULT_SUFFIXES = {
    "video": ".mp4",
    "dialogue": ".mp3",
    "music": ".mp3",
    "overlay_image": ".png",
    "image": ".png",
}


def download_file(url: str, output_path: Path, timeout: int | None = None) -> Path:
    """Download ``url`` to ``output_path``.

    - S3 URLs go through boto3.
    - Otherwise the body is streamed via urllib with a browser-like User-Agent;
      on failure, fall back to `curl -L --fail --retry 3` if available.
    """
    timeout = timeout or config.DOWNLOAD_TIMEOUT_SECONDS
    output_path.parent.mkdir(parents=True, exist_ok=True)

    s3_location = parse_s3_url(url)
    if s3_location:
        bucket, key = s3_location
        try:
            s3_client().download_file(bucket, key, str(output_path))
        except (BotoCoreError, ClientError) as exc:
            raise DownloadError(f"Failed to download s3://{bucket}/{key}: {exc}") from exc
        return output_path

    if urlparse(url).scheme not in ("http", "https"):
        raise DownloadError(f"Unsupported URL scheme: {url}")

    req = urllib.request.Request(
        url,
        headers={"User-Agent": USER_AGENT, "Accept": "*/*"},
        method="GET",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp, open(output_path, "wb") as f:
            while True:
                chunk = resp.read(CHUNK_SIZE)
                if not chunk:
                    break
                f.write(chunk)
        return output_path
    except (urllib.error.URLError, OSError) as exc:
        logger.warning("urllib download of %s failed (%s); trying curl", url, exc)
        _curl_download(url, output_path, timeout, exc)
        return output_path


def _curl_download(url: str, output_path: Path, timeout: int, original: Exception) -> None:
    # Handles redirects and some TLS peculiarities urllib trips over
    curl_bin = shutil.which("curl")
    if not curl_bin:
        raise DownloadError(f"Failed to download {url}: {original}") from original
    try:
        subprocess.run(
            [curl_bin, "-L", "--fail", "--retry", "3", "--max-time", str(timeout),
             "-sS", url, "-o", str(output_path)],
            check=True,
            capture_output=True,
            timeout=timeout * 4,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        raise DownloadError(f"Failed to download {url}: curl: {exc}") from exc


def target_path(dest_dir: Path, name: str, url: str) -> Path:
    suffix = Path(urlparse(url).path).suffix or DEFAULT_SUFFIXES.get(name, ".mp4")
    if len(suffix) > 6:
        suffix = DEFAULT_SUFFIXES.get(name, ".mp4")
    return dest_dir / f"{name}{suffix}"


def download_all(
    assets: dict[str, str],
    dest_dir: Path,
    timeout: int | None = None,
    workers: int | None = None,
    downloader=download_file,
) -> dict[str, Path]:
    """Fetch every named URL concurrently; the first failure fails the whole set."""
    if not assets:
        return {}
    dest_dir.mkdir(parents=True, exist_ok=True)
    workers = min(workers or config.DOWNLOAD_WORKERS, len(assets))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="download") as pool:
        futures = {
            name: pool.submit(downloader, url, target_path(dest_dir, name, url), timeout)
            for name, url in assets.items()
        }
        paths: dict[str, Path] = {}
        for name, future in futures.items():
            try:
                paths[name] = future.result()
            except DownloadError:
                for other in futures.values():
                    other.cancel()
                raise
            except Exception as exc:
                for other in futures.values():
                    other.cancel()
                raise DownloadError(f"Failed to download {name}: {exc}") from exc
    for name, path in paths.items():
        if not os.path.exists(path) or os.path.getsize(path) == 0:
            raise DownloadError(f"Downloaded {name} is empty")
    logger.info("Downloaded %d assets into %s", len(paths), dest_dir)
    return paths

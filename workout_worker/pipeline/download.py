import os
import time
import uuid
import socket
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

import requests
from urllib3.exceptions import ReadTimeoutError

from ..errors import DownloadFailed, DownloadTimeout
from ..models import VideoReference

logger = logging.getLogger("workout_worker")

MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15"
)
TIKTOK_ORIGIN = "https://www.tiktok.com"
CHUNK_SIZE = 64 * 1024


def is_tiktok(url: str, source: Optional[str] = None) -> bool:
    """True when the URL or the declared source points at TikTok"""
    if source and source.strip().lower() == "tiktok":
        return True
    return "tiktok.com" in (url or "").lower()


def build_download_headers(url: str, source: Optional[str] = None) -> Dict[str, str]:
    """Request headers for a video download, shaped for hosts that block plain clients"""
    headers = {"User-Agent": MOBILE_USER_AGENT}

    if is_tiktok(url, source):
        headers["Referer"] = f"{TIKTOK_ORIGIN}/"
        headers["Origin"] = TIKTOK_ORIGIN
        headers["Accept"] = "video/mp4,video/*,*/*"
        headers["Range"] = "bytes=0-"

    return headers


def temp_video_path(temp_dir: str) -> str:
    """Uniquely named path for a downloaded video"""
    os.makedirs(temp_dir, exist_ok=True)
    return os.path.join(temp_dir, f"video_{uuid.uuid4().hex}.mp4")


def _abort_transfer(response: requests.Response) -> None:
    """Unblock a read in progress on another thread by shutting the socket down"""
    connection = getattr(response.raw, "connection", None)
    sock = getattr(connection, "sock", None)
    try:
        if sock is not None:
            sock.shutdown(socket.SHUT_RDWR)
        else:
            response.close()
    except OSError as e:
        logger.debug(f"Error aborting transfer: {e}")


class TransferWatchdog:
    """
    Hard wall-clock limit for a streaming download.

    Socket timeouts only bound a single read, and a read waits for a whole
    chunk; a host trickling bytes never trips either. When the timer fires
    the watched response is aborted and ``expired`` is set.
    """

    def __init__(self, timeout_sec: float):
        self.timeout_sec = timeout_sec
        self.expired = threading.Event()
        self._lock = threading.Lock()
        self._response: Optional[requests.Response] = None
        self._timer = threading.Timer(timeout_sec, self._expire)
        self._timer.daemon = True

    def __enter__(self) -> "TransferWatchdog":
        self._timer.start()
        return self

    def __exit__(self, *exc_info) -> bool:
        self._timer.cancel()
        return False

    def watch(self, response: requests.Response) -> None:
        with self._lock:
            self._response = response
            fired = self.expired.is_set()
        if fired:
            _abort_transfer(response)

    def _expire(self) -> None:
        with self._lock:
            self.expired.set()
            response = self._response
        if response is not None:
            logger.warning(f"Download exceeded {self.timeout_sec}s, aborting transfer")
            _abort_transfer(response)


def _is_read_timeout(error: requests.RequestException) -> bool:
    # iter_content re-raises urllib3 read timeouts as ConnectionError
    if isinstance(error, requests.Timeout):
        return True
    reason = error.args[0] if error.args else None
    return isinstance(reason, (ReadTimeoutError, socket.timeout))


def download_video(url: str, source: Optional[str], timeout_sec: float, temp_dir: str) -> str:
    """
    Download a remote video into a temporary file.

    The whole transfer is bounded by ``timeout_sec``, however slowly the
    host sends: a watchdog aborts the socket once the deadline passes.

    Returns:
        Path of the downloaded file; the caller owns it.
    """
    headers = build_download_headers(url, source)
    deadline = time.monotonic() + timeout_sec
    video_path = temp_video_path(temp_dir)
    watchdog = TransferWatchdog(timeout_sec)

    logger.info(f"Downloading video from {url}")

    try:
        with watchdog, requests.get(url, headers=headers, stream=True, timeout=timeout_sec) as response:
            watchdog.watch(response)
            if not response.ok:
                raise DownloadFailed(url, response.status_code)

            size = 0
            with open(video_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if watchdog.expired.is_set() or time.monotonic() > deadline:
                        raise DownloadTimeout(url, timeout_sec)
                    if chunk:
                        f.write(chunk)
                        size += len(chunk)

            # An aborted body without Content-Length ends like a complete one
            if watchdog.expired.is_set():
                raise DownloadTimeout(url, timeout_sec)

    except requests.RequestException as e:
        _remove_quietly(video_path)
        if watchdog.expired.is_set() or _is_read_timeout(e):
            raise DownloadTimeout(url, timeout_sec, cause=e) from e
        status = e.response.status_code if e.response is not None else None
        raise DownloadFailed(url, status, cause=e) from e
    except Exception:
        _remove_quietly(video_path)
        raise

    logger.info(f"Video downloaded: {size / 1024 / 1024:.2f} MB -> {video_path}")
    return video_path


@contextmanager
def acquire_video(reference: VideoReference, source: Optional[str], timeout_sec: float,
                  temp_dir: str) -> Iterator[str]:
    """
    Yield a local path holding the video bytes and delete it on exit.

    Uploaded files are passed through untouched; the job owns them, so they
    are removed on release just like downloads.
    """
    if reference.is_local:
        logger.info(f"Using uploaded video file {reference.file_path}")
        video_path = reference.file_path
    else:
        video_path = download_video(reference.url, source, timeout_sec, temp_dir)

    try:
        yield video_path
    finally:
        _remove_quietly(video_path)


def release_uploads(references: List[VideoReference]) -> None:
    """Delete uploaded files a job still owns, e.g. after it aborted early"""
    for reference in references:
        if reference.is_local:
            _remove_quietly(reference.file_path)


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
        logger.debug(f"Removed temporary video {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary video {path}: {e}")

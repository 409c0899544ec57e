import io
import base64
import logging
import zipfile
from typing import List

import requests

from ..errors import ExtractionFailed, NoFramesFound
from ..models import Frame, FrameBundle

logger = logging.getLogger("workout_worker")

# The service emits one frame per second; every third one approximates a
# frame every three seconds.
FRAME_STRIDE = 3
FRAME_EXTENSION = ".png"


def to_data_uri(image_bytes: bytes, mime_type: str = "image/png") -> str:
    """Encode raw image bytes as an inline data URI"""
    return f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('utf-8')}"


def request_frame_archive(video_path: str, service_url: str, timeout_sec: float) -> bytes:
    """Upload a video to the frame-extraction service and return the zip payload"""
    logger.info(f"Uploading {video_path} to frame extraction service")

    with open(video_path, "rb") as video_file:
        response = requests.post(
            service_url,
            params={"compress": "zip", "fps": 1},
            files={"file": ("video.mp4", video_file, "video/mp4")},
            timeout=timeout_sec,
        )

    if not response.ok:
        raise ExtractionFailed(response.status_code, response.text)

    return response.content


def list_frame_names(archive: zipfile.ZipFile) -> List[str]:
    """PNG entries of the archive, sorted so that name order is capture order"""
    return sorted(
        info.filename for info in archive.infolist()
        if not info.is_dir() and info.filename.lower().endswith(FRAME_EXTENSION)
    )


def sample_frames(archive_bytes: bytes) -> FrameBundle:
    """
    Decode a frame archive into a thumbnail and a fixed-stride frame sample.

    Returns:
        FrameBundle with frames at indices 0, 3, 6, ... and the first image
        as thumbnail
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(archive_bytes))
    except zipfile.BadZipFile as e:
        raise ExtractionFailed(None, f"Invalid frame archive: {e}", cause=e) from e

    with archive:
        names = list_frame_names(archive)
        if not names:
            raise NoFramesFound("No frames found in ZIP")

        logger.info(f"Found {len(names)} frames in ZIP")

        thumbnail = to_data_uri(archive.read(names[0]))
        frames = [
            Frame(index=i, name=names[i], data_uri=to_data_uri(archive.read(names[i])))
            for i in range(0, len(names), FRAME_STRIDE)
        ]

    logger.info(f"Extracted {len(frames)} frames (every {FRAME_STRIDE} seconds)")
    return FrameBundle(frames=frames, thumbnail=thumbnail, total_images=len(names))


def extract_frames(video_path: str, service_url: str, timeout_sec: float = 300) -> FrameBundle:
    """Extract sampled frames and a thumbnail from a local video file"""
    try:
        archive_bytes = request_frame_archive(video_path, service_url, timeout_sec)
    except requests.RequestException as e:
        status = e.response.status_code if e.response is not None else None
        raise ExtractionFailed(status, str(e), cause=e) from e

    return sample_frames(archive_bytes)

import time
import asyncio
import logging
from typing import List, Optional

from openai import AsyncOpenAI

from ..models import Frame

logger = logging.getLogger("workout_worker")

FRAME_TEXT_PROMPT = (
    "Extract all visible text from this workout video frame. Include exercise names, "
    "rep counts, set counts, durations, and any other text visible on screen. "
    "Return only the extracted text, nothing else."
)
FRAGMENT_SEPARATOR = "\n\n"


async def extract_frame_text_async(
    client: AsyncOpenAI,
    frame: Frame,
    position: int,
    total: int,
    model: str,
    semaphore: asyncio.Semaphore
) -> Optional[str]:
    """
    Transcribe the on-screen text of one frame.

    Returns:
        Trimmed text, or None when the call failed or the frame had no text
    """
    async with semaphore:
        logger.debug(f"Processing frame {position + 1}/{total} ({frame.name})")
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": FRAME_TEXT_PROMPT},
                            {
                                "type": "image_url",
                                "image_url": {
                                    "url": frame.data_uri,
                                    "detail": "low"
                                }
                            }
                        ]
                    }
                ],
                max_tokens=500
            )
            content = response.choices[0].message.content or ""
        except Exception as e:
            logger.warning(f"Error processing frame {position + 1}/{total}: {str(e)}")
            return None

        text = content.strip()
        return text or None


async def extract_text_parallel(
    frames: List[Frame],
    api_key: str,
    model: str = "gpt-4o-mini",
    max_concurrent: int = 5,
    timeout_sec: Optional[float] = None
) -> List[Optional[str]]:
    """
    Run per-frame text extraction with at most ``max_concurrent`` calls in flight.

    Frames still pending when ``timeout_sec`` elapses are cancelled and count
    as failed; fragments already collected are kept.

    Returns:
        One entry per frame, in frame order (None for failed or empty frames)
    """
    if not frames:
        return []

    semaphore = asyncio.Semaphore(max(1, max_concurrent))
    client = AsyncOpenAI(api_key=api_key)

    try:
        tasks = [
            asyncio.create_task(
                extract_frame_text_async(client, frame, i, len(frames), model, semaphore)
            )
            for i, frame in enumerate(frames)
        ]
        done, pending = await asyncio.wait(tasks, timeout=timeout_sec)

        if pending:
            logger.warning(
                f"Text extraction time limit of {timeout_sec}s reached, "
                f"skipping {len(pending)}/{len(frames)} frames"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for task in tasks:
            if task in done and not task.cancelled() and task.exception() is None:
                results.append(task.result())
            else:
                results.append(None)
        return results
    finally:
        await client.close()


def extract_text_from_frames(
    frames: List[Frame],
    api_key: str,
    model: str = "gpt-4o-mini",
    max_concurrent: int = 5,
    timeout_sec: Optional[float] = None
) -> str:
    """
    Extract visible text from all frames and join it in frame order.

    A failing frame is skipped rather than failing the whole stage.

    Returns:
        Non-empty fragments joined by a blank line; empty string if none
    """
    if not frames:
        return ""

    start_time = time.time()
    logger.info(f"Extracting text from {len(frames)} frames with {max_concurrent} concurrent requests")

    fragments = asyncio.run(
        extract_text_parallel(frames, api_key, model, max_concurrent, timeout_sec)
    )
    texts = [fragment for fragment in fragments if fragment]

    elapsed = time.time() - start_time
    logger.info(f"Extracted text from {len(texts)}/{len(frames)} frames in {elapsed:.2f}s")

    return FRAGMENT_SEPARATOR.join(texts)

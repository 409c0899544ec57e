"""
Workout video processing pipeline.

Runs the stages of one job attempt in order: acquire each video, extract
its frames, then extract text from the pooled frames and synthesize a
workout. Persistence and failure handling live in the orchestrator.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import WorkerConfig
from .errors import NoTextExtracted
from .models import Frame, Job, Stage, WorkoutRecord
from .pipeline.download import acquire_video, release_uploads
from .pipeline.frames import extract_frames
from .pipeline.vision import extract_text_from_frames
from .pipeline.synthesize import synthesize_workout

logger = logging.getLogger("workout_worker")

# Progress high-water marks (percent)
PROGRESS_STARTED = 10
PROGRESS_FRAMES_DONE = 50
PROGRESS_TEXT_DONE = 75
PROGRESS_SYNTHESIS_DONE = 90
PROGRESS_PERSISTED = 100

# Share of a video's progress slot credited once the video is acquired
ACQUIRE_SHARE = 0.375


class ProgressTracker:
    """Reports integer progress for a job, never moving backwards"""

    def __init__(self, job_id: str, reporter: Optional[Callable[[str, int], None]] = None):
        self.job_id = job_id
        self.reporter = reporter
        self.value = 0

    def update(self, progress: float) -> int:
        value = min(PROGRESS_PERSISTED, int(round(progress)))
        if value <= self.value:
            return self.value

        self.value = value
        logger.debug(f"Job {self.job_id} progress: {value}%")
        if self.reporter:
            try:
                self.reporter(self.job_id, value)
            except Exception as e:
                logger.warning(f"Error tracking progress for job {self.job_id}: {e}")
        return value


def video_progress(index: int, total: int, acquired_only: bool = False) -> float:
    """Progress after acquiring (or fully extracting) video ``index`` of ``total``"""
    slot = (PROGRESS_FRAMES_DONE - PROGRESS_STARTED) / total
    completed = index + (ACQUIRE_SHARE if acquired_only else 1.0)
    return PROGRESS_STARTED + slot * completed


@dataclass
class JobRun:
    """Mutable state of a single job attempt"""
    job: Job
    progress: ProgressTracker
    stage: Stage = Stage.ACQUIRING
    metrics: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineOutput:
    """What a successful pipeline run hands to persistence"""
    workout: WorkoutRecord
    display_url: Optional[str]
    thumbnail: Optional[str] = None


def resolve_display_url(job: Job, thumbnail: Optional[str], thumbnail_source: str) -> Optional[str]:
    """
    Pick the display image to persist.

    Preview links from the thumbnail-substitution platform are often broken,
    so its jobs use the captured first frame when there is one.
    """
    if thumbnail and job.source and job.source.strip().lower() == thumbnail_source.strip().lower():
        return thumbnail
    return job.display_url


class VideoProcessor:
    """Handles video processing pipeline execution"""

    def __init__(self, config: WorkerConfig):
        self.config = config

    def process_job(self, run: JobRun) -> PipelineOutput:
        """
        Process all videos of a job through the complete pipeline.

        Raises:
            WorkoutPipelineError subclasses for stage failures
        """
        job = run.job
        videos = job.ordered_videos()
        run.progress.update(PROGRESS_STARTED)

        logger.info(f"Processing job {job.id} for workout {job.workout_id}: {len(videos)} video(s)")

        try:
            frames, thumbnail = self._collect_frames(run, videos)
        finally:
            release_uploads(videos)

        run.stage = Stage.EXTRACTING_TEXT
        logger.info(f"VISION: Extracting text from {len(frames)} frames for job {job.id}")
        extracted_text = extract_text_from_frames(
            frames,
            job.api_key,
            model=self.config.VISION_MODEL,
            max_concurrent=self.config.VISION_MAX_CONCURRENT,
            timeout_sec=self.config.TEXT_EXTRACTION_TIMEOUT_SEC
        )
        run.metrics['text_chars'] = len(extracted_text)

        if not extracted_text:
            raise NoTextExtracted()
        run.progress.update(PROGRESS_TEXT_DONE)

        run.stage = Stage.SYNTHESIZING
        logger.info(f"SYNTHESIZE: Parsing workout with AI for job {job.id}")
        workout = synthesize_workout(
            job.caption,
            extracted_text,
            job.api_key,
            model=self.config.SYNTHESIS_MODEL
        )
        run.progress.update(PROGRESS_SYNTHESIS_DONE)
        run.metrics['exercises'] = len(workout.exercises)

        return PipelineOutput(
            workout=workout,
            display_url=resolve_display_url(job, thumbnail, self.config.THUMBNAIL_SOURCE),
            thumbnail=thumbnail
        )

    def _collect_frames(self, run: JobRun, videos) -> tuple[List[Frame], Optional[str]]:
        """Acquire and extract every video in order, pooling their frames"""
        job = run.job
        pooled: List[Frame] = []
        thumbnail = None

        for i, video in enumerate(videos):
            video_start = time.time()

            run.stage = Stage.ACQUIRING
            logger.info(f"ACQUIRE: Video {i + 1}/{len(videos)} for job {job.id}: {video.describe()}")

            # The temporary file is gone as soon as this block exits
            with acquire_video(video, job.source, self.config.DOWNLOAD_TIMEOUT_SEC,
                               self.config.TEMP_DIR) as video_path:
                run.progress.update(video_progress(i, len(videos), acquired_only=True))

                run.stage = Stage.EXTRACTING_FRAMES
                logger.info(f"FRAMES: Extracting frames for video {i + 1}/{len(videos)} of job {job.id}")
                bundle = extract_frames(
                    video_path,
                    self.config.FRAME_EXTRACTOR_URL,
                    self.config.FRAME_EXTRACTOR_TIMEOUT_SEC
                )

            pooled.extend(bundle.frames)
            if thumbnail is None and bundle.thumbnail:
                thumbnail = bundle.thumbnail

            run.progress.update(video_progress(i, len(videos)))
            logger.info(
                f"Video {i + 1}/{len(videos)} yielded {len(bundle.frames)} frames "
                f"in {time.time() - video_start:.2f}s"
            )

        run.metrics['videos'] = len(videos)
        run.metrics['frames_sampled'] = len(pooled)
        return pooled, thumbnail

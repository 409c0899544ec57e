"""
Pipeline orchestration and execution management.

Handles pipeline execution flow, failure classification, persistence of the
terminal outcome, notifications and statistics. Coordinates between
VideoProcessor and adapters.
"""

import time
import logging
import threading
from typing import Optional, Dict, Any
from datetime import datetime

from .models import Job, JobOutcome, ProcessingResult, Stage
from .adapters.base import JobSourceAdapter, StorageAdapter
from .errors import RateLimited, is_rate_limit_error
from .notifications import ExpoPushNotifier
from .processor import JobRun, PipelineOutput, ProgressTracker, VideoProcessor, PROGRESS_PERSISTED
from .config import WorkerConfig
from .logging_setup import log_exception

logger = logging.getLogger("workout_worker")

ENHANCED_NOTES_MARKER = "\n\n[Enhanced with video frame analysis]"
FALLBACK_WORKOUT_NAME = "Your workout"


class JobAlreadyRunning(RuntimeError):
    """Raised when a job id is already executing in this process"""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is already running")


def build_completed_update(output: PipelineOutput) -> Dict[str, Any]:
    """Partial workout update for a successfully processed job"""
    workout = output.workout
    fields: Dict[str, Any] = {
        'exercises': [exercise.model_dump() for exercise in workout.exercises],
        'notes': f"{workout.notes}{ENHANCED_NOTES_MARKER}",
        'status': 'completed',
    }
    if workout.name:
        fields['name'] = workout.name
    if workout.duration:
        fields['duration'] = workout.duration
    if workout.difficulty:
        fields['difficulty'] = workout.difficulty
    if output.display_url:
        fields['display_url'] = output.display_url
    return fields


class PipelineOrchestrator:
    """Manages pipeline execution flow and coordination"""

    def __init__(self, config: WorkerConfig, job_source: JobSourceAdapter, storage: StorageAdapter,
                 notifier: Optional[ExpoPushNotifier] = None, processor: Optional[VideoProcessor] = None):
        self.config = config
        self.job_source = job_source
        self.storage = storage
        self.notifier = notifier
        self.processor = processor or VideoProcessor(config)
        self._active_jobs = set()
        self._active_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.reset_stats()

    def execute_pipeline(self, job: Job) -> ProcessingResult:
        """
        Execute the complete workout pipeline for one job attempt.

        Exactly one outcome is committed: completed, retry scheduled, or
        permanently failed.

        Args:
            job: Job to process

        Returns:
            ProcessingResult with execution details

        Raises:
            JobAlreadyRunning: the same job id is executing in another thread
        """
        self._claim(job.id)
        start_time = time.time()
        run = JobRun(job=job, progress=ProgressTracker(job.id, self.job_source.report_progress))

        try:
            logger.info(f"Executing pipeline for job {job.id}, workout {job.workout_id}")

            try:
                output = self.processor.process_job(run)
                run.stage = Stage.PERSISTING
                logger.info(f"PERSIST: Updating workout {job.workout_id} in database")
                self.storage.update_workout(job.workout_id, build_completed_update(output))
            except Exception as e:
                log_exception(logger, f"Pipeline failed for job {job.id} at stage {run.stage.value}: {e}")
                result = self._handle_failure(run, e)
            else:
                result = self._handle_success(run, output)

            result.metrics.update(run.metrics)
            result.metrics['processing_time_sec'] = time.time() - start_time
            self._record(result)
            return result

        finally:
            self._release(job.id)

    def _handle_success(self, run: JobRun, output: PipelineOutput) -> ProcessingResult:
        job = run.job
        run.progress.update(PROGRESS_PERSISTED)
        run.stage = Stage.COMPLETED
        self._safely(self.job_source.complete_job, job.id)
        logger.info(
            f"Workout {job.workout_id} processed successfully "
            f"({len(output.workout.exercises)} exercises)"
        )

        self._notify(job, output.workout.name or FALLBACK_WORKOUT_NAME, success=True)

        return ProcessingResult(
            outcome=JobOutcome.COMPLETED,
            stage=Stage.COMPLETED,
            workout=output.workout,
            display_url=output.display_url
        )

    def _handle_failure(self, run: JobRun, error: Exception) -> ProcessingResult:
        """
        Classify a stage failure and commit the matching outcome.

        Rate limits are handed back to the queue with backoff while attempts
        remain; the workout stays in its processing state and the user is not
        notified. Everything else marks the workout failed.
        """
        job = run.job
        failed_stage = run.stage
        rate_limited = is_rate_limit_error(error)

        if rate_limited and job.attempts < self.config.MAX_ATTEMPTS:
            delay = self.config.rate_limit_delay(job.attempts)
            message = str(error if isinstance(error, RateLimited) else RateLimited(error))
            logger.warning(
                f"Rate limit hit for workout {job.workout_id} "
                f"(attempt {job.attempts}/{self.config.MAX_ATTEMPTS}), will retry in {delay:.0f}s"
            )
            run.stage = Stage.RETRYABLE_FAILURE
            self._safely(self.job_source.retry_job, job.id, delay, message)
            return ProcessingResult(
                outcome=JobOutcome.RETRYABLE_FAILURE,
                stage=failed_stage,
                error=message,
                retry_delay_sec=delay
            )

        message = str(error)
        if rate_limited:
            message = f"Rate limit retries exhausted after {job.attempts} attempts: {error}"

        logger.error(f"Marking workout {job.workout_id} as failed: {message}")
        run.stage = Stage.PERMANENT_FAILURE
        try:
            self.storage.update_workout(job.workout_id, {
                'status': 'failed',
                'processing_error': message,
            })
        except Exception as e:
            log_exception(logger, f"Error marking workout {job.workout_id} as failed: {e}")

        self._safely(self.job_source.fail_job, job.id, message)
        self._notify(job, FALLBACK_WORKOUT_NAME, success=False)

        return ProcessingResult(
            outcome=JobOutcome.PERMANENT_FAILURE,
            stage=failed_stage,
            error=message
        )

    def _notify(self, job: Job, workout_name: str, success: bool) -> None:
        """Best-effort notification; failures never reach the caller"""
        if not self.notifier:
            return
        try:
            self.notifier.send_workout_notification(job.user_id, workout_name, success)
        except Exception as e:
            logger.warning(f"Notification for job {job.id} failed: {e}")

    def _safely(self, action, *args) -> None:
        try:
            action(*args)
        except Exception as e:
            log_exception(logger, f"Job source call {getattr(action, '__name__', action)} failed: {e}")

    def _claim(self, job_id: str) -> None:
        with self._active_lock:
            if job_id in self._active_jobs:
                raise JobAlreadyRunning(job_id)
            self._active_jobs.add(job_id)

    def _release(self, job_id: str) -> None:
        with self._active_lock:
            self._active_jobs.discard(job_id)

    def is_running(self, job_id: str) -> bool:
        with self._active_lock:
            return job_id in self._active_jobs

    def _record(self, result: ProcessingResult) -> None:
        with self._stats_lock:
            self.stats['total_processing_time'] += result.metrics.get('processing_time_sec', 0.0)
            if result.outcome == JobOutcome.COMPLETED:
                self.stats['jobs_processed'] += 1
            elif result.outcome == JobOutcome.RETRYABLE_FAILURE:
                self.stats['jobs_retried'] += 1
            else:
                self.stats['jobs_failed'] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics"""
        with self._stats_lock:
            stats = dict(self.stats)

        uptime = (datetime.now() - stats['start_time']).total_seconds()
        attempts = stats['jobs_processed'] + stats['jobs_failed'] + stats['jobs_retried']
        finished = stats['jobs_processed'] + stats['jobs_failed']

        return {
            'jobs_processed': stats['jobs_processed'],
            'jobs_failed': stats['jobs_failed'],
            'jobs_retried': stats['jobs_retried'],
            'total_processing_time': stats['total_processing_time'],
            'average_processing_time': stats['total_processing_time'] / attempts if attempts else 0,
            'uptime_seconds': uptime,
            'success_rate': stats['jobs_processed'] / finished if finished else 0
        }

    def reset_stats(self) -> None:
        """Reset orchestrator statistics"""
        with self._stats_lock:
            self.stats = {
                'jobs_processed': 0,
                'jobs_failed': 0,
                'jobs_retried': 0,
                'total_processing_time': 0.0,
                'start_time': datetime.now()
            }
        logger.info("Orchestrator statistics reset")

"""
Abstract base classes for job sources and storage adapters.

Defines the interface that all adapters must implement, enabling
easy swapping between different job sources (Postgres, SQS)
and the workout store.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List

from ..models import Job

# Fields the workout store accepts in a partial update
WORKOUT_FIELDS = (
    "exercises",
    "name",
    "duration",
    "difficulty",
    "notes",
    "display_url",
    "status",
    "processing_error",
)


class JobSourceAdapter(ABC):
    """Abstract base class for job source adapters"""

    def connect(self) -> None:
        """Open connections needed by the adapter"""

    def close(self) -> None:
        """Release adapter resources"""

    @abstractmethod
    def claim_job(self) -> Optional[Job]:
        """
        Atomically claim a pending job.

        Returns:
            Job object if available, None if no jobs pending
        """
        pass

    @abstractmethod
    def complete_job(self, job_id: str) -> None:
        """
        Mark a job as completed.

        Args:
            job_id: ID of the job to complete
        """
        pass

    @abstractmethod
    def fail_job(self, job_id: str, error: str) -> None:
        """
        Mark a job as permanently failed. The job is not retried.

        Args:
            job_id: ID of the failed job
            error: Error message describing the failure
        """
        pass

    @abstractmethod
    def retry_job(self, job_id: str, delay_sec: float, error: str) -> None:
        """
        Hand a job back to the queue so it is re-run from scratch later.

        Args:
            job_id: ID of the job to retry
            delay_sec: Seconds to wait before the job becomes claimable
            error: Error that caused the retry
        """
        pass

    @abstractmethod
    def report_progress(self, job_id: str, progress: int) -> None:
        """
        Record job progress as an integer percentage 0-100.

        Args:
            job_id: ID of the job
            progress: Percentage complete
        """
        pass

    @abstractmethod
    def get_progress(self, job_id: str) -> Optional[int]:
        """Return the last reported progress for a job, None if unknown"""
        pass

    @abstractmethod
    def get_job_info(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get status information about a specific job.

        Returns:
            Dictionary with job_id, status, progress, workout_id; None if not found
        """
        pass

    @abstractmethod
    def get_pending_jobs(self) -> List[Job]:
        """
        Get list of pending jobs (for monitoring/debugging).

        Returns:
            List of pending job objects
        """
        pass

    def get_stats(self) -> Dict[str, Any]:
        """Queue statistics for monitoring"""
        return {}


class StorageAdapter(ABC):
    """Abstract base class for the workout store"""

    def connect(self) -> None:
        """Open connections needed by the adapter"""

    def close(self) -> None:
        """Release adapter resources"""

    @abstractmethod
    def update_workout(self, workout_id: str, fields: Dict[str, Any]) -> None:
        """
        Update a workout by id with a partial field set.

        Fields not present in ``fields`` are left untouched.

        Args:
            workout_id: ID of the workout record
            fields: Subset of WORKOUT_FIELDS to write
        """
        pass

    @abstractmethod
    def get_push_token(self, user_id: str) -> Optional[str]:
        """
        Look up the push notification token of a user.

        Returns:
            Push token if the user registered one, None otherwise
        """
        pass

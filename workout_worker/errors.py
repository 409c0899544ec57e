"""
Exception taxonomy for the workout pipeline.

Every stage failure is raised as a subclass of WorkoutPipelineError so the
orchestrator can classify it as retryable (upstream rate limit) or permanent.
"""

import re
from typing import Optional

RATE_LIMIT_STATUS = 429
_RATE_LIMIT_MARKER = re.compile(r"\b429\b|RATE_LIMIT")


class WorkoutPipelineError(Exception):
    """Base class for all pipeline stage failures."""

    status: Optional[int] = None

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class DownloadTimeout(WorkoutPipelineError):
    """Raised when a remote video download exceeds its time budget."""

    def __init__(self, url: str, timeout_sec: float, cause: Optional[Exception] = None):
        self.url = url
        self.timeout_sec = timeout_sec
        super().__init__("Video download timeout", cause=cause)


class DownloadFailed(WorkoutPipelineError):
    """Raised when the video host answers with a non-success status."""

    def __init__(self, url: str, status: Optional[int], cause: Optional[Exception] = None):
        self.url = url
        self.status = status
        super().__init__(f"Failed to download video: {status}", cause=cause)


class ExtractionFailed(WorkoutPipelineError):
    """Raised when the frame-extraction service rejects the upload."""

    def __init__(self, status: Optional[int], body: str, cause: Optional[Exception] = None):
        self.status = status
        self.body = body
        super().__init__(f"Frame extraction error: {status} - {body}", cause=cause)


class NoFramesFound(WorkoutPipelineError):
    """Raised when no usable frames came back for a job."""

    def __init__(self, message: str = "No frames extracted from video"):
        super().__init__(message)


class NoTextExtracted(WorkoutPipelineError):
    """Raised when every frame produced empty or failed text extraction."""

    def __init__(self, message: str = "No text extracted from video frames"):
        super().__init__(message)


class SynthesisCallFailed(WorkoutPipelineError):
    """Raised when the language-model call does not succeed."""

    def __init__(self, status: Optional[int], message: str, cause: Optional[Exception] = None):
        self.status = status
        self.message = message
        super().__init__(f"OpenAI API error: {status} - {message}", cause=cause)


class SynthesisParseFailed(WorkoutPipelineError):
    """Raised when no JSON object can be recovered from the model response."""

    def __init__(self, content: str, cause: Optional[Exception] = None):
        self.content = content
        super().__init__("Failed to parse workout data from AI response", cause=cause)


class InvalidWorkoutShape(WorkoutPipelineError):
    """Raised when the parsed workout does not match the record shape."""

    def __init__(self, reason: str, cause: Optional[Exception] = None):
        self.reason = reason
        super().__init__(f"Invalid workout structure from AI: {reason}", cause=cause)


class RateLimited(WorkoutPipelineError):
    """Wraps a stage failure caused by an upstream rate limit."""

    status = RATE_LIMIT_STATUS

    def __init__(self, cause: Exception):
        super().__init__(f"RATE_LIMIT: upstream rate limit exceeded ({cause})", cause=cause)


class InvalidJobPayload(WorkoutPipelineError):
    """Raised when a queue payload cannot be turned into a job."""

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Invalid payload for job '{job_id}': {reason}")


class PersistenceError(WorkoutPipelineError):
    """Raised when writing a workout update fails."""

    def __init__(self, workout_id: str, cause: Optional[Exception] = None):
        self.workout_id = workout_id
        super().__init__(f"Failed to update workout '{workout_id}': {cause}", cause=cause)


def is_rate_limit_error(error: BaseException) -> bool:
    """Detect an upstream rate-limit condition from any stage error."""
    for candidate in (error, getattr(error, "cause", None)):
        if candidate is None:
            continue
        status = getattr(candidate, "status", None) or getattr(candidate, "status_code", None)
        if status == RATE_LIMIT_STATUS:
            return True
    return bool(_RATE_LIMIT_MARKER.search(str(error)))

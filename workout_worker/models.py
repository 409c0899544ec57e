"""
Domain models for the workout worker.

Defines the core data structures used throughout the system,
providing type safety and clear interfaces between components.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field, field_validator

from .errors import InvalidJobPayload


class Stage(str, Enum):
    """Pipeline states for a single job attempt"""
    ACQUIRING = "acquiring"
    EXTRACTING_FRAMES = "extracting_frames"
    EXTRACTING_TEXT = "extracting_text"
    SYNTHESIZING = "synthesizing"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


class JobOutcome(str, Enum):
    """Terminal outcome committed for a job attempt"""
    COMPLETED = "completed"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass
class VideoReference:
    """A video to process: either an uploaded local file or a remote URL"""
    file_path: Optional[str] = None
    url: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.file_path is not None

    def describe(self) -> str:
        return self.file_path if self.is_local else self.url


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [item for item in value if item]


@dataclass
class Job:
    """Represents a workout video processing job"""
    id: str
    workout_id: str
    user_id: str
    videos: List[VideoReference]
    api_key: Optional[str] = None
    caption: str = ""
    source: str = ""
    display_url: Optional[str] = None
    attempts: int = 0
    status: str = "pending"
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, job_id: str, payload: Dict[str, Any],
                     default_api_key: Optional[str] = None, attempts: int = 0) -> 'Job':
        """Build a job from a queue payload (snake_case or camelCase keys)"""
        workout_id = _first(payload, "workout_id", "workoutId")
        user_id = _first(payload, "user_id", "userId")
        if not workout_id or not user_id:
            raise InvalidJobPayload(str(job_id), "workout_id and user_id are required")

        videos = [VideoReference(file_path=path) for path in _as_list(
            _first(payload, "file_paths", "filePaths", "file_path", "filePath"))]
        videos += [VideoReference(url=url) for url in _as_list(
            _first(payload, "video_urls", "videoUrls", "video_url", "videoUrl"))]
        if not videos:
            raise InvalidJobPayload(str(job_id), "at least one video file or URL is required")

        return cls(
            id=str(job_id),
            workout_id=str(workout_id),
            user_id=str(user_id),
            videos=videos,
            api_key=_first(payload, "openai_key", "openAIKey", "api_key") or default_api_key,
            caption=_first(payload, "caption") or "",
            source=_first(payload, "source") or "",
            display_url=_first(payload, "display_url", "displayUrl"),
            attempts=attempts,
        )

    def ordered_videos(self) -> List[VideoReference]:
        """Local uploads first, then remote URLs, each group in submission order"""
        return [v for v in self.videos if v.is_local] + [v for v in self.videos if not v.is_local]


@dataclass
class Frame:
    """A sampled frame, held inline as a data URI"""
    index: int
    name: str
    data_uri: str


@dataclass
class FrameBundle:
    """Sampled frames for one video plus the thumbnail candidate"""
    frames: List[Frame]
    thumbnail: Optional[str] = None
    total_images: int = 0


class Exercise(BaseModel):
    """One exercise entry of a workout"""
    name: str = Field(default="", description="Exercise name")
    reps: str = Field(default="", description="Rep count or range")
    sets: str = Field(default="", description="Set count")
    notes: str = Field(default="", description="Free-text notes")

    @field_validator("name", "reps", "sets", "notes", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)


class WorkoutRecord(BaseModel):
    """Structured workout synthesized from a video"""
    name: str = Field(default="", description="Workout name")
    exercises: List[Exercise] = Field(description="Ordered exercises")
    duration: str = Field(default="", description="Overall duration")
    difficulty: str = Field(default="", description="Difficulty label")
    notes: str = Field(default="", description="Additional notes")

    @field_validator("name", "duration", "difficulty", "notes", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)


@dataclass
class ProcessingResult:
    """Represents the result of one job attempt"""
    outcome: JobOutcome
    stage: Stage
    workout: Optional[WorkoutRecord] = None
    display_url: Optional[str] = None
    error: Optional[str] = None
    retry_delay_sec: Optional[float] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.outcome == JobOutcome.COMPLETED

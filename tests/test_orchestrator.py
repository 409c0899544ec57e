"""
End-to-end tests for job execution with every external stage mocked.

Run with: pytest tests/test_orchestrator.py -v
"""

import threading
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import chat_response, make_frame_zip, recording_acquire
from workout_worker.errors import (
    DownloadTimeout,
    ExtractionFailed,
    NoFramesFound,
    NoTextExtracted,
    SynthesisCallFailed,
)
from workout_worker.models import (
    Exercise,
    Frame,
    FrameBundle,
    JobOutcome,
    Stage,
    VideoReference,
    WorkoutRecord,
)
from workout_worker.orchestrator import (
    ENHANCED_NOTES_MARKER,
    JobAlreadyRunning,
    PipelineOrchestrator,
    build_completed_update,
)
from workout_worker.processor import PipelineOutput, ProgressTracker, resolve_display_url

THUMBNAIL = "data:image/png;base64,dGh1bWI="


def bundle(count=2, thumbnail=THUMBNAIL, video="a"):
    frames = [Frame(index=i * 3, name=f"{video}_frame_{i}.png", data_uri=f"data:image/png;base64,{video}{i}")
              for i in range(count)]
    return FrameBundle(frames=frames, thumbnail=thumbnail, total_images=count * 3)


def leg_day():
    return WorkoutRecord(
        name="Leg Day",
        exercises=[Exercise(name="Squat", reps="10", sets="3")],
        duration="30 min",
        difficulty="Intermediate",
        notes="Rest 60s",
    )


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def orchestrator(config, job_source, store, notifier):
    return PipelineOrchestrator(config, job_source, store, notifier)


@pytest.fixture
def stages():
    """Patch every external stage with a happy-path default"""
    acquired = []
    with patch("workout_worker.processor.acquire_video", recording_acquire(acquired)), \
            patch("workout_worker.processor.release_uploads") as release, \
            patch("workout_worker.processor.extract_frames", return_value=bundle()) as frames, \
            patch("workout_worker.processor.extract_text_from_frames",
                  return_value="SQUATS 3x10") as text, \
            patch("workout_worker.processor.synthesize_workout", return_value=leg_day()) as synth:
        yield MagicMock(acquired=acquired, release=release, frames=frames, text=text, synth=synth)


class TestSuccessfulJob:
    """A job that reaches every stage and completes"""

    def test_persists_workout_and_notifies(self, orchestrator, stages, job_source, store, notifier, make_job):
        result = orchestrator.execute_pipeline(make_job())

        assert result.outcome == JobOutcome.COMPLETED
        assert result.success
        assert store.updates == [("w-1", {
            "exercises": [{"name": "Squat", "reps": "10", "sets": "3", "notes": ""}],
            "notes": "Rest 60s" + ENHANCED_NOTES_MARKER,
            "status": "completed",
            "name": "Leg Day",
            "duration": "30 min",
            "difficulty": "Intermediate",
            "display_url": "https://cdn.example.com/preview.jpg",
        })]
        assert job_source.completed == ["job-1"]
        assert job_source.failed == []
        notifier.send_workout_notification.assert_called_once_with("u-1", "Leg Day", True)

    def test_uses_job_api_key_and_caption(self, orchestrator, stages, make_job):
        orchestrator.execute_pipeline(make_job())

        assert stages.text.call_args.args[1] == "sk-job"
        stages.synth.assert_called_once()
        caption, text, api_key = stages.synth.call_args.args
        assert (caption, text, api_key) == ("Leg day burner", "SQUATS 3x10", "sk-job")

    def test_progress_is_monotonic_for_two_videos(self, orchestrator, stages, job_source, make_job):
        videos = [VideoReference(url="https://a/1.mp4"), VideoReference(url="https://a/2.mp4")]
        orchestrator.execute_pipeline(make_job(videos=videos))

        assert job_source.progress_history["job-1"] == [10, 18, 30, 38, 50, 75, 90, 100]

    def test_frames_from_all_videos_are_pooled(self, orchestrator, stages, make_job):
        first, second = bundle(2, video="a"), bundle(3, thumbnail=None, video="b")
        stages.frames.side_effect = [first, second]
        videos = [VideoReference(url="https://a/1.mp4"), VideoReference(url="https://a/2.mp4")]

        result = orchestrator.execute_pipeline(make_job(videos=videos))

        assert stages.text.call_args.args[0] == first.frames + second.frames
        assert result.metrics["frames_sampled"] == 5
        assert result.metrics["videos"] == 2

    def test_thumbnail_comes_from_first_processed_video(self, orchestrator, stages, make_job):
        later_thumbnail = "data:image/png;base64,bGF0ZXI="
        stages.frames.side_effect = [bundle(1, video="a"), bundle(1, thumbnail=later_thumbnail, video="b")]
        videos = [VideoReference(url="https://a/1.mp4"), VideoReference(file_path="/uploads/a.mp4")]

        result = orchestrator.execute_pipeline(make_job(videos=videos, source="TikTok"))

        # The upload is processed first, so its bundle supplies the thumbnail
        assert stages.acquired[0].is_local
        assert result.display_url == THUMBNAIL

    def test_local_files_processed_before_urls(self, orchestrator, stages, make_job):
        videos = [
            VideoReference(url="https://a/1.mp4"),
            VideoReference(file_path="/uploads/a.mp4"),
            VideoReference(url="https://a/2.mp4"),
        ]
        orchestrator.execute_pipeline(make_job(videos=videos))

        assert [v.describe() for v in stages.acquired] == [
            "/uploads/a.mp4", "https://a/1.mp4", "https://a/2.mp4",
        ]

    def test_thumbnail_replaces_display_url_for_tiktok(self, orchestrator, stages, store, make_job):
        result = orchestrator.execute_pipeline(make_job(source="TikTok"))

        assert result.display_url == THUMBNAIL
        assert store.workouts["w-1"]["display_url"] == THUMBNAIL

    def test_notification_failure_does_not_change_outcome(self, orchestrator, stages, job_source, notifier,
                                                          make_job):
        notifier.send_workout_notification.side_effect = RuntimeError("push service down")

        result = orchestrator.execute_pipeline(make_job())

        assert result.outcome == JobOutcome.COMPLETED
        assert job_source.completed == ["job-1"]

    def test_unnamed_workout_notifies_with_fallback_name(self, orchestrator, stages, notifier, store, make_job):
        stages.synth.return_value = WorkoutRecord(exercises=[])

        orchestrator.execute_pipeline(make_job())

        assert "name" not in store.updates[0][1]
        notifier.send_workout_notification.assert_called_once_with("u-1", "Your workout", True)


class TestPermanentFailures:
    """Failures that mark the workout failed"""

    def test_download_timeout(self, orchestrator, stages, job_source, store, notifier, make_job):
        with patch("workout_worker.processor.acquire_video",
                   side_effect=DownloadTimeout("https://cdn.example.com/v.mp4", 30)):
            result = orchestrator.execute_pipeline(make_job())

        assert result.outcome == JobOutcome.PERMANENT_FAILURE
        assert result.stage == Stage.ACQUIRING
        assert store.updates == [("w-1", {"status": "failed", "processing_error": "Video download timeout"})]
        assert job_source.failed == [("job-1", "Video download timeout")]
        notifier.send_workout_notification.assert_called_once_with("u-1", "Your workout", False)
        stages.text.assert_not_called()

    def test_zero_frames(self, orchestrator, stages, store, make_job):
        stages.frames.side_effect = NoFramesFound("No frames found in ZIP")

        result = orchestrator.execute_pipeline(make_job())

        assert result.outcome == JobOutcome.PERMANENT_FAILURE
        assert result.stage == Stage.EXTRACTING_FRAMES
        assert store.workouts["w-1"] == {"status": "failed", "processing_error": "No frames found in ZIP"}
        stages.text.assert_not_called()
        stages.synth.assert_not_called()

    def test_empty_archive_from_second_video(self, orchestrator, stages, store, make_job):
        stages.frames.side_effect = [bundle(2), NoFramesFound("No frames found in ZIP")]
        videos = [VideoReference(url="https://a/1.mp4"), VideoReference(url="https://a/2.mp4")]

        result = orchestrator.execute_pipeline(make_job(videos=videos))

        assert result.outcome == JobOutcome.PERMANENT_FAILURE
        assert store.workouts["w-1"]["status"] == "failed"
        stages.synth.assert_not_called()

    def test_all_frames_without_text(self, orchestrator, stages, store, make_job):
        stages.text.return_value = ""

        result = orchestrator.execute_pipeline(make_job())

        assert result.outcome == JobOutcome.PERMANENT_FAILURE
        assert result.stage == Stage.EXTRACTING_TEXT
        assert store.workouts["w-1"]["processing_error"] == str(NoTextExtracted())
        stages.synth.assert_not_called()

    def test_persistence_failure_marks_failed(self, orchestrator, stages, store, job_source, make_job):
        calls = []

        def flaky_update(workout_id, fields):
            calls.append(fields)
            if fields.get("status") == "completed":
                raise RuntimeError("connection reset")
        store.update_workout = flaky_update

        result = orchestrator.execute_pipeline(make_job())

        assert result.outcome == JobOutcome.PERMANENT_FAILURE
        assert result.stage == Stage.PERSISTING
        assert calls[-1] == {"status": "failed", "processing_error": "connection reset"}
        assert job_source.completed == []

    def test_rate_limit_retries_exhausted(self, orchestrator, stages, store, job_source, notifier, make_job):
        stages.synth.side_effect = SynthesisCallFailed(429, "Rate limit reached")

        result = orchestrator.execute_pipeline(make_job(attempts=3))

        assert result.outcome == JobOutcome.PERMANENT_FAILURE
        assert result.error.startswith("Rate limit retries exhausted after 3 attempts")
        assert job_source.retried == []
        assert store.workouts["w-1"]["status"] == "failed"
        notifier.send_workout_notification.assert_called_once_with("u-1", "Your workout", False)


class TestRetryableFailures:
    """Upstream rate limits go back to the queue"""

    def test_rate_limit_schedules_retry(self, orchestrator, stages, store, job_source, notifier, make_job):
        stages.synth.side_effect = SynthesisCallFailed(429, "Rate limit reached")

        result = orchestrator.execute_pipeline(make_job(attempts=1))

        assert result.outcome == JobOutcome.RETRYABLE_FAILURE
        assert result.stage == Stage.SYNTHESIZING
        assert result.retry_delay_sec == 30
        assert len(job_source.retried) == 1
        job_id, delay, error = job_source.retried[0]
        assert (job_id, delay) == ("job-1", 30)
        assert error.startswith("RATE_LIMIT")
        assert store.updates == []
        assert job_source.failed == []
        notifier.send_workout_notification.assert_not_called()

    def test_backoff_grows_with_attempts(self, orchestrator, stages, job_source, make_job):
        stages.synth.side_effect = SynthesisCallFailed(429, "Rate limit reached")

        result = orchestrator.execute_pipeline(make_job(attempts=2))

        assert result.retry_delay_sec == pytest.approx(45.0)

    def test_stats_count_retries(self, orchestrator, stages, make_job):
        stages.synth.side_effect = SynthesisCallFailed(429, "Rate limit reached")
        orchestrator.execute_pipeline(make_job())

        stats = orchestrator.get_stats()
        assert stats["jobs_retried"] == 1
        assert stats["jobs_failed"] == 0


class TestUploadCleanup:
    def test_uploads_removed_when_extraction_aborts(self, config, job_source, store, make_job, tmp_path):
        first = tmp_path / "first.mp4"
        second = tmp_path / "second.mp4"
        first.write_bytes(b"video-1")
        second.write_bytes(b"video-2")
        videos = [VideoReference(file_path=str(first)), VideoReference(file_path=str(second))]

        orchestrator = PipelineOrchestrator(config, job_source, store)
        with patch("workout_worker.processor.extract_frames", side_effect=ExtractionFailed(500, "boom")) as frames:
            result = orchestrator.execute_pipeline(make_job(videos=videos))

        assert result.outcome == JobOutcome.PERMANENT_FAILURE
        assert frames.call_count == 1
        assert not first.exists()
        assert not second.exists()

    def test_release_called_after_success(self, orchestrator, stages, make_job):
        orchestrator.execute_pipeline(make_job())
        stages.release.assert_called_once()


class TestSingleWriter:
    def test_duplicate_job_rejected_while_running(self, orchestrator, stages, make_job):
        started = threading.Event()
        proceed = threading.Event()

        def slow_synthesis(*args, **kwargs):
            started.set()
            proceed.wait(5)
            return leg_day()
        stages.synth.side_effect = slow_synthesis

        worker = threading.Thread(target=orchestrator.execute_pipeline, args=(make_job(),))
        worker.start()
        assert started.wait(5)

        try:
            assert orchestrator.is_running("job-1")
            with pytest.raises(JobAlreadyRunning):
                orchestrator.execute_pipeline(make_job())
        finally:
            proceed.set()
            worker.join(5)

        assert not orchestrator.is_running("job-1")

    def test_workout_persisted_once_per_attempt(self, orchestrator, stages, store, make_job):
        orchestrator.execute_pipeline(make_job())
        assert len(store.updates) == 1


class TestHelpers:
    def test_completed_update_omits_empty_fields(self):
        output = PipelineOutput(workout=WorkoutRecord(exercises=[]), display_url=None)
        assert build_completed_update(output) == {
            "exercises": [],
            "notes": ENHANCED_NOTES_MARKER,
            "status": "completed",
        }

    def test_progress_tracker_ignores_regressions(self):
        reported = []
        tracker = ProgressTracker("j", lambda job_id, value: reported.append(value))
        for value in (10, 25, 20, 25, 50.4):
            tracker.update(value)
        assert reported == [10, 25, 50]

    def test_progress_reporter_errors_are_swallowed(self):
        def broken(job_id, value):
            raise RuntimeError("db down")
        assert ProgressTracker("j", broken).update(10) == 10

    def test_display_url_kept_for_other_sources(self, make_job):
        assert resolve_display_url(make_job(), THUMBNAIL, "TikTok") == "https://cdn.example.com/preview.jpg"
        assert resolve_display_url(make_job(source=" tiktok "), THUMBNAIL, "TikTok") == THUMBNAIL
        assert resolve_display_url(make_job(source="TikTok"), None, "TikTok") == "https://cdn.example.com/preview.jpg"


class TestUploadedVideoEndToEnd:
    """Only the HTTP and OpenAI boundaries are replaced"""

    LEG_DAY_JSON = (
        '{"name": "Leg Day", "exercises": [{"name": "Squat", "reps": "10", "sets": "3", "notes": ""}], '
        '"duration": "30 min", "difficulty": "Intermediate", "notes": "Rest 60s"}'
    )

    def test_nine_sampled_frames_to_completed_workout(self, config, job_source, store, make_job, tmp_path):
        upload = tmp_path / "upload.mp4"
        upload.write_bytes(b"uploaded-video")

        frame_service = MagicMock(ok=True, status_code=200, content=make_frame_zip(25))

        vision_client = MagicMock()
        vision_client.chat.completions.create = AsyncMock(return_value=chat_response("SQUATS 3x10"))
        vision_client.close = AsyncMock()

        synthesis_client = MagicMock()
        synthesis_client.chat.completions.create.return_value = chat_response(self.LEG_DAY_JSON)

        orchestrator = PipelineOrchestrator(config, job_source, store)
        with patch("workout_worker.pipeline.frames.requests.post", return_value=frame_service), \
                patch("workout_worker.pipeline.vision.AsyncOpenAI", return_value=vision_client), \
                patch("workout_worker.pipeline.synthesize.OpenAI", return_value=synthesis_client):
            result = orchestrator.execute_pipeline(make_job(videos=[VideoReference(file_path=str(upload))]))

        assert result.outcome == JobOutcome.COMPLETED
        assert result.metrics["frames_sampled"] == 9
        assert vision_client.chat.completions.create.await_count == 9
        saved = store.workouts["w-1"]
        assert saved["status"] == "completed"
        assert len(saved["exercises"]) == 1
        assert saved["notes"] == "Rest 60s" + ENHANCED_NOTES_MARKER
        assert job_source.progress_history["job-1"] == [10, 25, 50, 75, 90, 100]
        assert not upload.exists()

"""
Main worker service.

Builds the job source, workout store and notifier from configuration and
runs one or more polling loops that feed claimed jobs to the orchestrator.
A shutdown request lets the job in flight finish before the loops exit.
"""

import signal
import logging
import threading
from typing import Optional, Dict, Any, List

from .config import WorkerConfig
from .adapters.base import JobSourceAdapter, StorageAdapter
from .adapters.postgres_adapter import PostgresJobSourceAdapter, PostgresStorageAdapter
from .adapters.sqs_adapter import SQSJobSourceAdapter
from .notifications import ExpoPushNotifier
from .orchestrator import PipelineOrchestrator, JobAlreadyRunning
from .logging_setup import setup_logging, log_exception
from .http_server import HealthServer, start_health_server

logger = logging.getLogger("workout_worker")


class WorkerService:
    """Polls a job source and runs workout jobs through the pipeline"""

    def __init__(self, config: Optional[WorkerConfig] = None):
        self.config = config or WorkerConfig.from_env()
        self.job_source: Optional[JobSourceAdapter] = None
        self.storage: Optional[StorageAdapter] = None
        self.notifier: Optional[ExpoPushNotifier] = None
        self.orchestrator: Optional[PipelineOrchestrator] = None
        self.health_server: Optional[HealthServer] = None
        self.threads: List[threading.Thread] = []
        self.running = False
        self._stop_event = threading.Event()

    def initialize(self):
        """Set up logging, validate configuration and connect adapters"""
        setup_logging(self.config.LOG_LEVEL, self.config.LOG_DIR)

        try:
            self.config.validate()

            self.job_source = self._create_job_source_adapter()
            self.job_source.connect()
            self.storage = self._create_storage_adapter()
            self.storage.connect()
            logger.info(f"Initialized adapters: {self.config.JOB_SOURCE_TYPE} job source, postgres workout store")

            if self.config.ENABLE_NOTIFICATIONS:
                self.notifier = ExpoPushNotifier(self.storage, self.config.EXPO_PUSH_URL)
            else:
                logger.info("Push notifications disabled")

            self.orchestrator = PipelineOrchestrator(self.config, self.job_source, self.storage, self.notifier)
            self.health_server = start_health_server(self)

            logger.info("Worker service initialized successfully")

        except Exception as e:
            log_exception(logger, f"Failed to initialize worker service: {e}")
            raise

    def _create_job_source_adapter(self) -> JobSourceAdapter:
        """Create job source adapter based on configuration"""
        source_config = self.config.JOB_SOURCE_CONFIG or {}

        if self.config.JOB_SOURCE_TYPE == "postgres":
            return PostgresJobSourceAdapter(
                database_url=source_config.get("database_url") or self.config.DATABASE_URL,
                pool_size=source_config.get("connection_pool_size", self.config.POSTGRES_POOL_SIZE),
                timeout=source_config.get("connection_timeout", self.config.POSTGRES_TIMEOUT),
                default_api_key=self.config.OPENAI_API_KEY
            )

        if self.config.JOB_SOURCE_TYPE == "sqs":
            return SQSJobSourceAdapter(
                queue_url=source_config["queue_url"],
                region=source_config.get("region", "us-east-1"),
                wait_time=source_config.get("wait_time_seconds", 20),
                default_api_key=self.config.OPENAI_API_KEY
            )

        raise ValueError(f"Unsupported job source type: {self.config.JOB_SOURCE_TYPE}")

    def _create_storage_adapter(self) -> StorageAdapter:
        return PostgresStorageAdapter(
            database_url=self.config.DATABASE_URL,
            pool_size=self.config.POSTGRES_POOL_SIZE,
            timeout=self.config.POSTGRES_TIMEOUT
        )

    def start(self):
        """Run the polling loops and block until shutdown is requested"""
        if self.running:
            logger.warning("Worker service is already running")
            return

        self._stop_event.clear()
        self.running = True
        concurrency = max(1, self.config.WORKER_CONCURRENCY)
        logger.info(f"Worker service started with {concurrency} polling loop(s)")

        if concurrency == 1:
            self._polling_loop()
            return

        self.threads = [
            threading.Thread(target=self._polling_loop, name=f"workout-worker-{i}", daemon=True)
            for i in range(concurrency)
        ]
        for thread in self.threads:
            thread.start()
        for thread in self.threads:
            thread.join()

    def _next_backoff(self, interval_ms: float) -> float:
        return min(interval_ms * self.config.BACKOFF_MULTIPLIER, self.config.MAX_BACKOFF_MS)

    def _polling_loop(self):
        """Claim and run jobs, backing off exponentially while the queue is idle"""
        logger.info("Polling for jobs...")
        interval_ms = self.config.POLL_INTERVAL_MS

        while not self._stop_event.is_set():
            try:
                claimed = self.run_once()
            except Exception as e:
                log_exception(logger, f"Unexpected error in worker loop: {str(e)}")
                claimed = False

            if claimed:
                interval_ms = self.config.POLL_INTERVAL_MS
                continue

            # Returns early when stop() is called
            self._stop_event.wait(interval_ms / 1000.0)
            interval_ms = self._next_backoff(interval_ms)

        logger.info("Worker polling loop stopped")

    def run_once(self) -> bool:
        """
        Run one iteration of the worker loop.

        Returns:
            True if a job was claimed, False if no job was available or the
            job source could not be read
        """
        try:
            job = self.job_source.claim_job()
        except Exception as e:
            log_exception(logger, f"Error claiming job: {str(e)}")
            return False

        if not job:
            return False

        try:
            result = self.orchestrator.execute_pipeline(job)
        except JobAlreadyRunning as e:
            logger.warning(str(e))
            return True

        logger.info(f"Job {job.id} finished with outcome {result.outcome.value}")
        return True

    def request_stop(self):
        """Let in-flight jobs finish, then leave the polling loops"""
        self.running = False
        self._stop_event.set()

    def stop(self):
        """Stop polling and release adapters"""
        self.request_stop()

        if self.health_server:
            self.health_server.stop()

        if self.job_source:
            self.job_source.close()
        if self.storage:
            self.storage.close()

        logger.info("Worker service stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        stats = {
            'running': self.running,
            'config': {
                'job_source_type': self.config.JOB_SOURCE_TYPE,
                'worker_concurrency': self.config.WORKER_CONCURRENCY,
                'vision_max_concurrent': self.config.VISION_MAX_CONCURRENT,
                'max_attempts': self.config.MAX_ATTEMPTS,
                'poll_interval_ms': self.config.POLL_INTERVAL_MS
            }
        }

        if self.orchestrator:
            stats['orchestrator'] = self.orchestrator.get_stats()
        if self.job_source:
            stats['queue'] = self.job_source.get_stats()

        return stats

    def reset_stats(self):
        if self.orchestrator:
            self.orchestrator.reset_stats()
        logger.info("Worker statistics reset")


def main():
    """Console entry point"""
    worker = WorkerService()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, finishing current job before shutdown...")
        worker.request_stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        worker.initialize()
        worker.start()
    except Exception as e:
        log_exception(logger, f"Worker failed: {str(e)}")
        raise SystemExit(1)
    finally:
        worker.stop()


if __name__ == "__main__":
    main()

"""
Postgres adapter implementations for job source and workout storage.

Jobs live in a ``workout_jobs`` table used as a queue; workouts and user
push tokens live in the application's ``workouts`` and ``users`` tables.
"""

import logging
from typing import Optional, Dict, Any, List

from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .base import JobSourceAdapter, StorageAdapter, WORKOUT_FIELDS
from ..errors import InvalidJobPayload, PersistenceError
from ..models import Job
from ..logging_setup import log_exception

logger = logging.getLogger("workout_worker")

JOBS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS workout_jobs (
        id BIGSERIAL PRIMARY KEY,
        payload JSONB NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        progress INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        available_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS workout_jobs_pending_idx
        ON workout_jobs (status, available_at, created_at);
"""


def _create_pool(database_url: str, pool_size: int, timeout: int, application_name: str) -> ConnectionPool:
    return ConnectionPool(
        database_url,
        min_size=1,
        max_size=pool_size,
        kwargs={
            "connect_timeout": timeout,
            "application_name": application_name
        }
    )


class PostgresJobSourceAdapter(JobSourceAdapter):
    """Postgres implementation of job source adapter"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10,
                 default_api_key: Optional[str] = None):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.default_api_key = default_api_key
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = _create_pool(self.database_url, self.pool_size, self.timeout, "workout_worker")
            logger.info("Postgres job source connection pool initialized")
            self._bootstrap_schema()
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres job source: {e}")
            raise

    def _bootstrap_schema(self):
        """Create the jobs table if it does not exist yet"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(JOBS_SCHEMA)
                conn.commit()
                logger.info("Postgres job source schema validated")

    def claim_job(self) -> Optional[Job]:
        """Atomically claim the oldest available pending job"""
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    WITH j AS (
                        SELECT id
                        FROM workout_jobs
                        WHERE status = 'pending' AND available_at <= now()
                        ORDER BY created_at
                        FOR UPDATE SKIP LOCKED
                        LIMIT 1
                    )
                    UPDATE workout_jobs
                    SET status = 'processing', attempts = attempts + 1,
                        progress = 0, updated_at = now()
                    FROM j
                    WHERE workout_jobs.id = j.id
                    RETURNING workout_jobs.id, workout_jobs.payload,
                              workout_jobs.attempts, workout_jobs.created_at;
                """)
                result = cur.fetchone()
                conn.commit()

        if not result:
            return None

        try:
            job = Job.from_payload(
                result['id'], result['payload'] or {},
                default_api_key=self.default_api_key,
                attempts=result['attempts']
            )
        except InvalidJobPayload as e:
            self.fail_job(str(result['id']), str(e))
            return None

        job.status = 'processing'
        job.created_at = result['created_at']
        logger.info(f"Claimed job {job.id} for workout {job.workout_id} (attempt {job.attempts})")
        return job

    def complete_job(self, job_id: str) -> None:
        """Mark job as completed"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE workout_jobs
                    SET status = 'completed', progress = 100, error = NULL, updated_at = now()
                    WHERE id = %s
                """, (job_id,))
                conn.commit()
                logger.info(f"Job {job_id} completed")

    def fail_job(self, job_id: str, error: str) -> None:
        """Mark job as failed"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE workout_jobs
                    SET status = 'failed', error = %s, updated_at = now()
                    WHERE id = %s
                """, (error, job_id))
                conn.commit()
                logger.error(f"Job {job_id} failed: {error}")

    def retry_job(self, job_id: str, delay_sec: float, error: str) -> None:
        """Put the job back in the queue, claimable after the delay"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE workout_jobs
                    SET status = 'pending', error = %s, progress = 0,
                        available_at = now() + make_interval(secs => %s), updated_at = now()
                    WHERE id = %s
                """, (error, delay_sec, job_id))
                conn.commit()
                logger.warning(f"Job {job_id} scheduled for retry in {delay_sec:.0f}s: {error}")

    def report_progress(self, job_id: str, progress: int) -> None:
        """Store progress, never moving it backwards"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE workout_jobs
                    SET progress = GREATEST(progress, %s), updated_at = now()
                    WHERE id = %s
                """, (progress, job_id))
                conn.commit()

    def get_progress(self, job_id: str) -> Optional[int]:
        info = self.get_job_info(job_id)
        return info['progress'] if info else None

    def get_job_info(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get information about a specific job"""
        # ids are BIGSERIAL; anything else cannot name a row
        if not str(job_id).isdigit():
            return None
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id, payload, status, progress, attempts, error, created_at
                    FROM workout_jobs WHERE id = %s
                """, (job_id,))
                result = cur.fetchone()
                if not result:
                    return None
                payload = result['payload'] or {}
                return {
                    'job_id': str(result['id']),
                    'status': result['status'],
                    'progress': result['progress'],
                    'attempts': result['attempts'],
                    'error': result['error'],
                    'workout_id': payload.get('workout_id') or payload.get('workoutId'),
                    'created_at': result['created_at'],
                }

    def get_pending_jobs(self) -> List[Job]:
        """Get pending jobs for monitoring"""
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id, payload, attempts, created_at
                    FROM workout_jobs
                    WHERE status = 'pending'
                    ORDER BY created_at
                    LIMIT 10
                """)
                results = cur.fetchall()

        jobs = []
        for row in results:
            try:
                job = Job.from_payload(row['id'], row['payload'] or {}, attempts=row['attempts'])
            except InvalidJobPayload as e:
                logger.warning(f"Skipping malformed pending job {row['id']}: {e}")
                continue
            job.created_at = row['created_at']
            jobs.append(job)
        return jobs

    def get_stats(self) -> Dict[str, Any]:
        """Job counts by status"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT status, COUNT(*) as count
                    FROM workout_jobs
                    GROUP BY status
                """)
                return {"jobs": {row[0]: row[1] for row in cur.fetchall()}}

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres job source connection pool closed")


class PostgresStorageAdapter(StorageAdapter):
    """Postgres implementation of the workout store"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = _create_pool(self.database_url, self.pool_size, self.timeout, "workout_worker_storage")
            logger.info("Postgres storage connection pool initialized")
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres storage: {e}")
            raise

    @staticmethod
    def build_update(workout_id: str, fields: Dict[str, Any]):
        """Build the UPDATE statement and parameters for a partial workout update"""
        unknown = set(fields) - set(WORKOUT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown workout fields: {', '.join(sorted(unknown))}")

        columns = [name for name in WORKOUT_FIELDS if name in fields]
        if not columns:
            raise ValueError("No workout fields to update")

        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in columns
        )
        query = sql.SQL("UPDATE workouts SET {} WHERE id = %s").format(assignments)
        params = [
            Jsonb(fields[name]) if name == "exercises" else fields[name]
            for name in columns
        ]
        params.append(workout_id)
        return query, params

    def update_workout(self, workout_id: str, fields: Dict[str, Any]) -> None:
        """Write the given fields of a workout, leaving the others untouched"""
        query, params = self.build_update(workout_id, fields)
        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    conn.commit()
        except Exception as e:
            raise PersistenceError(workout_id, cause=e) from e

        logger.info(f"Workout {workout_id} updated in database ({', '.join(sorted(fields))})")

    def get_push_token(self, user_id: str) -> Optional[str]:
        """Get the push token registered for a user"""
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT push_token FROM users WHERE id = %s", (user_id,))
                result = cur.fetchone()
                return result['push_token'] if result and result.get('push_token') else None

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres storage connection pool closed")

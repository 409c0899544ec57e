"""
AWS SQS adapter for job source.

Provides pull-based job polling from SQS queues. Retries use the message
visibility timeout; progress is tracked in-process because SQS has no
place to keep it.
"""

import boto3
import json
import logging
import threading
from collections import OrderedDict
from typing import Optional, Dict, Any, List
from botocore.exceptions import ClientError

from .base import JobSourceAdapter
from ..errors import InvalidJobPayload
from ..models import Job

logger = logging.getLogger("workout_worker")

# SQS caps visibility timeouts at 12 hours
MAX_VISIBILITY_TIMEOUT_SEC = 12 * 60 * 60

# Finished jobs kept queryable for progress lookups
MAX_TRACKED_JOBS = 1000


class SQSJobSourceAdapter(JobSourceAdapter):
    """AWS SQS implementation of job source adapter"""

    def __init__(self, queue_url: str, region: str = "us-east-1", wait_time: int = 20,
                 default_api_key: Optional[str] = None, max_tracked_jobs: int = MAX_TRACKED_JOBS):
        self.queue_url = queue_url
        self.region = region
        self.wait_time = wait_time
        self.default_api_key = default_api_key
        self.sqs = None
        self._lock = threading.Lock()
        self._receipts: Dict[str, str] = {}
        self.max_tracked_jobs = max_tracked_jobs
        self._jobs: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    def connect(self):
        """Initialize SQS client"""
        try:
            self.sqs = boto3.client('sqs', region_name=self.region)
            logger.info(f"SQS job source connected to queue: {self.queue_url}")
        except Exception as e:
            logger.error(f"Failed to connect to SQS: {e}")
            raise

    def _require_client(self):
        if not self.sqs:
            raise RuntimeError("SQS client not initialized. Call connect() first.")

    def claim_job(self) -> Optional[Job]:
        """Poll SQS for one message and claim it as a job"""
        self._require_client()

        try:
            response = self.sqs.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=1,
                WaitTimeSeconds=self.wait_time,
                AttributeNames=['ApproximateReceiveCount'],
                MessageAttributeNames=['All']
            )
        except ClientError as e:
            logger.error(f"SQS error claiming job: {e}")
            return None

        messages = response.get('Messages', [])
        if not messages:
            return None

        message = messages[0]
        receipt_handle = message['ReceiptHandle']
        attempts = int(message.get('Attributes', {}).get('ApproximateReceiveCount', 1))

        try:
            body = json.loads(message['Body'])
            job = Job.from_payload(
                body.get('job_id') or message['MessageId'],
                body.get('job', body),
                default_api_key=self.default_api_key,
                attempts=attempts
            )
        except (json.JSONDecodeError, InvalidJobPayload, AttributeError) as e:
            logger.error(f"Discarding malformed SQS message {message['MessageId']}: {e}")
            self._delete(receipt_handle)
            return None

        job.status = 'processing'
        with self._lock:
            self._receipts[job.id] = receipt_handle
            self._jobs.pop(job.id, None)
            self._jobs[job.id] = {
                'job_id': job.id,
                'status': 'processing',
                'progress': 0,
                'attempts': attempts,
                'error': None,
                'workout_id': job.workout_id,
            }

        logger.info(f"Claimed SQS job {job.id} for workout {job.workout_id} (attempt {attempts})")
        return job

    def _delete(self, receipt_handle: str) -> None:
        try:
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
        except ClientError as e:
            logger.error(f"SQS error deleting message: {e}")

    def _finish(self, job_id: str, status: str, error: Optional[str]) -> Optional[str]:
        with self._lock:
            receipt_handle = self._receipts.pop(job_id, None)
            info = self._jobs.get(job_id)
            if info:
                info['status'] = status
                info['error'] = error
                if status == 'completed':
                    info['progress'] = 100
                self._jobs.move_to_end(job_id)
            self._prune()
        return receipt_handle

    def _prune(self) -> None:
        """Forget the oldest finished jobs beyond max_tracked_jobs; caller holds the lock"""
        excess = len(self._jobs) - self.max_tracked_jobs
        if excess <= 0:
            return
        finished = [job_id for job_id in self._jobs if job_id not in self._receipts]
        for job_id in finished[:excess]:
            del self._jobs[job_id]

    def complete_job(self, job_id: str) -> None:
        """Delete the message from the queue"""
        self._require_client()
        receipt_handle = self._finish(job_id, 'completed', None)
        if receipt_handle:
            self._delete(receipt_handle)
        logger.info(f"Job {job_id} completed")

    def fail_job(self, job_id: str, error: str) -> None:
        """Delete the message so a permanent failure is not redelivered"""
        self._require_client()
        receipt_handle = self._finish(job_id, 'failed', error)
        if receipt_handle:
            self._delete(receipt_handle)
        logger.error(f"Job {job_id} failed: {error}")

    def retry_job(self, job_id: str, delay_sec: float, error: str) -> None:
        """Make the message visible again after the delay"""
        self._require_client()
        receipt_handle = self._finish(job_id, 'pending', error)
        if not receipt_handle:
            logger.warning(f"No receipt handle for job {job_id}; relying on visibility timeout")
            return

        try:
            self.sqs.change_message_visibility(
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt_handle,
                VisibilityTimeout=min(int(delay_sec), MAX_VISIBILITY_TIMEOUT_SEC)
            )
            logger.warning(f"Job {job_id} scheduled for retry in {delay_sec:.0f}s: {error}")
        except ClientError as e:
            logger.error(f"SQS error rescheduling job {job_id}: {e}")

    def report_progress(self, job_id: str, progress: int) -> None:
        with self._lock:
            info = self._jobs.get(job_id)
            if info:
                info['progress'] = max(info['progress'], progress)

    def get_progress(self, job_id: str) -> Optional[int]:
        with self._lock:
            info = self._jobs.get(job_id)
            return info['progress'] if info else None

    def get_job_info(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Job info for jobs seen by this process"""
        with self._lock:
            info = self._jobs.get(job_id)
            return dict(info) if info else None

    def get_pending_jobs(self) -> List[Job]:
        """Get pending jobs (SQS doesn't support this directly)"""
        logger.warning("SQS doesn't support pending jobs retrieval")
        return []

    def close(self):
        """Close SQS connection"""
        self.sqs = None
        logger.info("SQS job source connection closed")

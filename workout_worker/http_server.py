"""
Development HTTP surface of the worker: liveness, per-job progress, stats.

Enabled with WORKER_DEV_HTTP=true; served by uvicorn on a daemon thread so
it never blocks the polling loops.
"""

import logging
from threading import Thread
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
import uvicorn

logger = logging.getLogger("workout_worker")


class JobStatusResponse(BaseModel):
    job_id: str
    status: Optional[str] = None
    progress: int = 0
    workout_id: Optional[str] = None
    error: Optional[str] = None


def create_app(service) -> FastAPI:
    """Build the FastAPI app bound to a running WorkerService"""
    app = FastAPI(title="Workout Worker API")

    @app.get("/healthz")
    async def health_check():
        if not service.running:
            raise HTTPException(status_code=503, detail="Worker is not running")
        return {"ok": True, "status": "healthy"}

    @app.get("/jobs/{job_id}", response_model=JobStatusResponse)
    async def job_status(job_id: str):
        """Status and progress (0-100) of a job"""
        try:
            info = service.job_source.get_job_info(job_id)
        except Exception as e:
            logger.error(f"Error getting job status for {job_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=f"Error fetching job: {str(e)}")

        if not info:
            raise HTTPException(status_code=404, detail="Job not found")

        return JobStatusResponse(
            job_id=str(info.get("job_id", job_id)),
            status=info.get("status"),
            progress=info.get("progress") or 0,
            workout_id=info.get("workout_id"),
            error=info.get("error"),
        )

    @app.get("/stats")
    async def get_stats() -> Dict[str, Any]:
        try:
            return service.get_stats()
        except Exception as e:
            logger.error(f"Error getting stats: {str(e)}")
            raise HTTPException(status_code=500, detail=f"Error fetching stats: {str(e)}")

    return app


class HealthServer:
    """Runs the worker API next to the polling loops"""

    def __init__(self, service, port: int = 8000):
        self.service = service
        self.port = port
        self.app = create_app(service)
        self.server: Optional[uvicorn.Server] = None
        self.server_thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self.server_thread is not None and self.server_thread.is_alive()

    def start(self):
        """Start the HTTP server in a background thread"""
        if self.running:
            return

        self.server = uvicorn.Server(uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.port,
            log_level="warning",
            access_log=False
        ))
        self.server_thread = Thread(target=self.server.run, name="workout-worker-http", daemon=True)
        self.server_thread.start()

        logger.info(f"Worker HTTP server started on port {self.port}")

    def stop(self):
        """Ask uvicorn to exit and wait briefly for it"""
        if self.server:
            self.server.should_exit = True
        if self.server_thread:
            self.server_thread.join(timeout=5)
        logger.info("Worker HTTP server stopped")


def start_health_server(service) -> Optional[HealthServer]:
    """Start the HTTP server if enabled"""
    if not service.config.ENABLE_HTTP_SERVER:
        return None
    server = HealthServer(service, service.config.HTTP_PORT)
    server.start()
    return server

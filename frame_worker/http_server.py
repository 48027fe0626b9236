import logging
from typing import Optional, Dict, Any, Callable
from threading import Thread

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from .adapters.base import JobLedger
from .archive import ArchiveStreamer
from .exceptions import (
    ConflictError,
    FrameWorkerError,
    JobStateError,
    NotFoundError,
    SourceMediaError,
    StorageError,
    TransientQueueError,
    ValidationError,
)
from .orchestrator import JobOrchestrator

logger = logging.getLogger("frame_worker")

ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    JobStateError: 409,
    SourceMediaError: 422,
    StorageError: 502,
    TransientQueueError: 503,
}


def status_code_for(error: FrameWorkerError) -> int:
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return 500


class ExtractRequest(BaseModel):
    """Body of POST /extract"""
    model_config = ConfigDict(populate_by_name=True)

    video_id: str = Field(alias="videoId")
    options: Optional[Dict[str, Any]] = None


def create_app(orchestrator: JobOrchestrator, archive: ArchiveStreamer, ledger: JobLedger,
               stats_provider: Optional[Callable[[], Dict[str, Any]]] = None,
               storage_dir: Optional[str] = None) -> FastAPI:
    """
    Build the API around already-constructed service objects.

    When storage_dir is given, frames kept by the local object store are
    served from it under /storage, the route their URLs point at.
    """
    app = FastAPI(title="Frame Extraction API")

    @app.exception_handler(FrameWorkerError)
    async def handle_frame_worker_error(request: Request, exc: FrameWorkerError):
        code = status_code_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"message": str(exc)})

    @app.get("/healthz")
    def health_check():
        """Health check endpoint"""
        try:
            ledger.get_stats()
            return {"ok": True, "status": "healthy"}
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}")
            raise HTTPException(status_code=503, detail=f"Ledger unavailable: {str(e)}")

    @app.get("/stats")
    def get_stats():
        """Get worker and ledger statistics"""
        if stats_provider:
            return stats_provider()
        return ledger.get_stats()

    @app.post("/extract")
    def start_extraction(body: ExtractRequest):
        view = orchestrator.start_extraction(body.video_id, body.options)
        return view.to_response()

    @app.get("/extract/{job_id}")
    def get_job_status(job_id: str):
        return orchestrator.get_job_status(job_id).to_response()

    @app.delete("/extract/{job_id}")
    def cancel_job(job_id: str):
        orchestrator.cancel_job(job_id)
        return {"message": "Job cancelled"}

    @app.get("/frames")
    def list_frames(video_id: Optional[str] = Query(default=None, alias="videoId"),
                    job_id: Optional[str] = Query(default=None, alias="jobId")):
        frames = archive.list_frames(video_id=video_id, job_id=job_id)
        return [frame.model_dump(by_alias=True) for frame in frames]

    @app.get("/frames/download")
    def download_frames(video_id: Optional[str] = Query(default=None, alias="videoId"),
                        job_id: Optional[str] = Query(default=None, alias="jobId")):
        result = archive.download_archive(video_id=video_id, job_id=job_id)
        return StreamingResponse(
            result.chunks,
            media_type="application/zip",
            headers={"Content-Disposition": result.content_disposition},
        )

    if storage_dir:
        app.mount("/storage", StaticFiles(directory=storage_dir), name="storage")

    return app


class HTTPServer:
    def __init__(self, app: FastAPI, port: int = 8000):
        self.app = app
        self.port = port
        self.server: Optional[uvicorn.Server] = None
        self.server_thread = None
        self.running = False

    def start(self):
        """Start the HTTP server in a background thread"""
        if self.running:
            return

        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.port,
            log_level="warning",  # Reduce uvicorn logging
            access_log=False
        )
        self.server = uvicorn.Server(config)

        def run_server():
            try:
                self.server.run()
            except Exception as e:
                logger.error(f"HTTP server error: {str(e)}")

        self.server_thread = Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

        logger.info(f"HTTP server started on port {self.port}")

    def stop(self, timeout: float = 5.0):
        """Ask uvicorn to exit and wait for its thread"""
        if not self.running:
            return

        self.server.should_exit = True
        self.server_thread.join(timeout)
        self.running = False

        if self.server_thread.is_alive():
            logger.warning(f"HTTP server did not stop within {timeout}s")
        else:
            logger.info("HTTP server stopped")

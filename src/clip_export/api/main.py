from __future__ import annotations

import asyncio
import io
import json
import logging
import os
import shutil
import tempfile
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, BinaryIO, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import ValidationError

from clip_export.config import resolve_config
from clip_export.errors import JobNotFoundError, QueueFault, StorageError, StoreFault
from clip_export.jobs.backends import JobQueue, JobRecordStore
from clip_export.jobs.factory import build_backends
from clip_export.jobs.models import JobStatus
from clip_export.jobs.submission import get_job_view, submit_job
from clip_export.models import ClipExportConfig
from clip_export.storage import BlobStore, LocalBlobStore, create_blob_store

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[ClipExportConfig] = None,
    store: Optional[JobRecordStore] = None,
    queue: Optional[JobQueue] = None,
    blob_store: Optional[BlobStore] = None,
) -> FastAPI:
    """Build the API around one resolved config.

    Backends are created here (or injected) and shared by every request.
    """
    config = config or resolve_config()
    if store is None or queue is None:
        store, queue = build_backends(config.queue)
    if blob_store is None:
        blob_store = create_blob_store(config.storage)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.queue.close()
        app.state.store.close()

    app = FastAPI(title="Clip Export API", lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.queue = queue
    app.state.blob_store = blob_store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- API ENDPOINTS ---

    @app.get("/")
    async def root():
        return {"message": "Clip Export API", "docs": "/docs", "health": "/health"}

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.get("/config/defaults")
    async def get_config_defaults(request: Request):
        return request.app.state.config.public_dump()

    @app.post("/upload")
    async def upload_file(request: Request, file: UploadFile = File(...)):
        ext = os.path.splitext(file.filename or "")[1].lower()
        prefix = request.app.state.config.storage.upload_prefix.rstrip("/")
        key = f"{prefix}/{uuid.uuid4().hex}{ext}"

        try:
            await asyncio.to_thread(
                _store_upload,
                request.app.state.blob_store,
                file.file,
                key,
                file.content_type or "video/mp4",
            )
        except StorageError as e:
            logger.error("Upload of %s failed: %s", file.filename, e)
            raise HTTPException(status_code=500, detail="Failed to store upload")

        return {"key": key, "filename": file.filename}

    @app.post("/upload-url")
    async def create_upload_url(request: Request):
        state = request.app.state
        prefix = state.config.storage.upload_prefix.rstrip("/")
        key = f"{prefix}/{uuid.uuid4().hex}.mp4"

        try:
            upload_url = await asyncio.to_thread(
                state.blob_store.get_upload_url, key, state.config.storage.url_expires_s
            )
        except StorageError as e:
            logger.error("Cannot sign upload URL for %s: %s", key, e)
            raise HTTPException(status_code=500, detail="Failed to generate upload URL")

        return {"uploadUrl": upload_url, "key": key}

    @app.put("/storage/upload")
    async def direct_upload(request: Request, key: Optional[str] = None):
        if not key:
            raise HTTPException(status_code=400, detail="Missing key")

        state = request.app.state
        blob_store = state.blob_store
        if not isinstance(blob_store, LocalBlobStore):
            raise HTTPException(status_code=404, detail="Not served by this storage backend")

        prefix = state.config.storage.upload_prefix.rstrip("/") + "/"
        if not key.startswith(prefix):
            raise HTTPException(status_code=400, detail="Invalid key")
        try:
            blob_store.path_for(key)
        except StorageError:
            raise HTTPException(status_code=400, detail="Invalid key")

        body = await request.body()
        try:
            await asyncio.to_thread(
                _store_upload,
                blob_store,
                io.BytesIO(body),
                key,
                request.headers.get("content-type") or "video/mp4",
            )
        except StorageError as e:
            logger.error("Direct upload of %s failed: %s", key, e)
            raise HTTPException(status_code=500, detail="Failed to store upload")

        return {"key": key}

    @app.post("/jobs")
    async def create_job(request: Request):
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid request", "details": "Body must be JSON"},
            )

        state = request.app.state
        try:
            job = await asyncio.to_thread(submit_job, state.store, state.queue, payload)
        except ValidationError as e:
            return JSONResponse(
                status_code=400,
                content={
                    "error": "Invalid request",
                    "details": json.loads(e.json(include_url=False)),
                },
            )
        except (StoreFault, QueueFault) as e:
            logger.error("Job submission failed: %s", e)
            raise HTTPException(status_code=503, detail="Job queue unavailable")

        return {"jobId": job.id}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request):
        state = request.app.state
        try:
            return await asyncio.to_thread(
                get_job_view,
                state.store,
                state.blob_store,
                job_id,
                state.config.storage.url_expires_s,
            )
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        except StoreFault as e:
            logger.error("Cannot read job %s: %s", job_id, e)
            raise HTTPException(status_code=503, detail="Job store unavailable")
        except StorageError as e:
            logger.error("Cannot build result URL for %s: %s", job_id, e)
            raise HTTPException(status_code=500, detail="Result URL unavailable")

    @app.get("/jobs/{job_id}/events")
    async def job_events(job_id: str, request: Request):
        try:
            job = await asyncio.to_thread(request.app.state.store.get, job_id)
        except StoreFault as e:
            logger.error("Cannot read job %s: %s", job_id, e)
            raise HTTPException(status_code=503, detail="Job store unavailable")
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return StreamingResponse(event_generator(job_id, request), media_type="text/event-stream")

    @app.get("/queue")
    async def queue_depth(request: Request):
        try:
            depth = await asyncio.to_thread(request.app.state.queue.depth)
        except QueueFault as e:
            logger.error("Cannot read queue depth: %s", e)
            raise HTTPException(status_code=503, detail="Job queue unavailable")
        return {"depth": depth}

    @app.get("/storage/download")
    async def download(request: Request, key: Optional[str] = None):
        if not key:
            raise HTTPException(status_code=400, detail="Missing key")

        blob_store = request.app.state.blob_store
        if not isinstance(blob_store, LocalBlobStore):
            raise HTTPException(status_code=404, detail="Not served by this storage backend")

        try:
            path = blob_store.path_for(key)
        except StorageError:
            raise HTTPException(status_code=400, detail="Invalid key")
        if not path.is_file():
            raise HTTPException(status_code=404, detail="File not found")

        return FileResponse(path, media_type="video/mp4", filename=path.name)

    return app


def _store_upload(blob_store: BlobStore, stream: BinaryIO, key: str, content_type: str) -> None:
    suffix = os.path.splitext(key)[1]
    buffer = tempfile.NamedTemporaryFile(suffix=suffix, delete=False)
    try:
        with buffer:
            shutil.copyfileobj(stream, buffer)
        blob_store.upload(buffer.name, key, content_type=content_type)
    finally:
        os.unlink(buffer.name)


async def event_generator(job_id: str, request: Request) -> AsyncGenerator[str, None]:
    """
    SSE generator that yields job status updates until the job is terminal.
    """
    state = request.app.state
    interval = state.config.api.client_poll_interval_s
    last_progress = -1
    last_status = None

    while True:
        if await request.is_disconnected():
            break

        try:
            job = await asyncio.to_thread(state.store.get, job_id)
        except StoreFault as e:
            logger.warning("Event stream for %s: %s", job_id, e)
            await asyncio.sleep(interval)
            continue
        if job is None:
            break

        if job.progress != last_progress or job.status.value != last_status:
            event = {"status": job.status.value, "progress": job.progress}
            if job.error:
                event["error"] = job.error
            yield f"data: {json.dumps(event)}\n\n"
            last_progress = job.progress
            last_status = job.status.value

        if JobStatus(job.status).is_terminal:
            break

        await asyncio.sleep(interval)

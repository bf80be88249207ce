from __future__ import annotations

import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from starlette.types import Receive, Scope, Send
import structlog

from mp4merge_backend.config import INSTALL_INSTRUCTIONS, LOG_LEVEL, OUTPUT_MEDIA_TYPE
from mp4merge_backend.engine import FFmpegEngine
from mp4merge_backend.errors import MergeError
from mp4merge_backend.logging import get_logger, setup_logging
from mp4merge_backend.pipeline import MergePipeline
from mp4merge_backend.uploads import parse_order, store_uploads, validate_uploads
from mp4merge_backend.workspace import WorkspaceManager


BASE_DIR = Path(__file__).resolve().parent
PUBLIC_DIR = BASE_DIR / "public"

log = get_logger("server")


class ErrorResponse(BaseModel):
    error: str
    instructions: Optional[List[str]] = None


class HealthResponse(BaseModel):
    status: str
    ffmpeg: bool


class MergedFileResponse(Response):
    """Hands the ASGI send/receive pair to the pipeline's delivery stage.

    Headers, body and cleanup are all driven by ``MergePipeline.deliver``.
    """

    media_type = OUTPUT_MEDIA_TYPE

    def __init__(self, pipeline: MergePipeline) -> None:
        super().__init__(status_code=200)
        self.pipeline = pipeline

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        outcome = await self.pipeline.deliver(scope, receive, send)
        log.info("merge_finished", outcome=outcome.value)
        if self.background is not None:
            await self.background()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(LOG_LEVEL)

    # Workspaces left behind by a crash or kill of a previous run.
    app.state.workspaces.sweep_orphans()

    version = await app.state.engine.probe()
    app.state.engine_available = version is not None
    if version is None:
        log.error(
            "ffmpeg_not_found",
            message="The server will start, but /merge requests will be rejected until FFmpeg is available.",
            instructions=list(INSTALL_INSTRUCTIONS),
        )
    else:
        log.info("ffmpeg_found", version=version)
    yield


app = FastAPI(lifespan=lifespan)
app.state.engine = FFmpegEngine()
app.state.workspaces = WorkspaceManager()
app.state.engine_available = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)


@app.exception_handler(MergeError)
async def _merge_error(request: Request, exc: MergeError) -> JSONResponse:
    log.warning(
        "merge_rejected",
        status=exc.status_code,
        error=exc.message,
        kind=type(exc).__name__,
    )
    body = ErrorResponse(error=exc.message, instructions=exc.instructions)
    return JSONResponse(body.model_dump(), status_code=exc.status_code)


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    log.exception("merge_internal_error", error=str(exc))
    body = ErrorResponse(error="Internal server error.")
    return JSONResponse(body.model_dump(), status_code=500)


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    return HealthResponse(status="ok", ffmpeg=bool(request.app.state.engine_available))


@app.post("/merge")
async def merge(
    request: Request,
    videos: Optional[List[UploadFile]] = File(None),
    order: Optional[str] = Form(None),
) -> Response:
    """Normalize the uploaded videos, join them in ``order`` and stream merged.mp4."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=uuid.uuid4().hex[:8])

    state = request.app.state
    pipeline = MergePipeline(
        state.workspaces,
        state.engine,
        engine_available=state.engine_available,
    )

    with pipeline.admission():
        pipeline.check_available()
        received = validate_uploads(videos)
        names = parse_order(order)
    log.info("merge_received", files=len(received))

    ordered = pipeline.resolve(received, names)
    await pipeline.process(lambda workspace: store_uploads(workspace, ordered))
    return MergedFileResponse(pipeline)


# Static frontend. API routes are defined above; the mount at '/' must come last.
app.mount("/", StaticFiles(directory=str(PUBLIC_DIR), html=True), name="static")


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "3000"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)

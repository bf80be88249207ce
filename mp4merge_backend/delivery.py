"""
Streaming the merged file back to the caller.

Delivery races two tasks: one reads the file and pushes ASGI body messages,
the other waits for ``http.disconnect``. Whichever finishes first decides the
single DeliveryOutcome; the loser is cancelled and the file handle is closed
before returning. Workspace cleanup is the caller's job (see pipeline.py).
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from fastapi.responses import JSONResponse
from starlette.types import Receive, Scope, Send

from .config import OUTPUT_FILENAME, OUTPUT_MEDIA_TYPE, STREAM_CHUNK_BYTES
from .errors import DeliveryFailure
from .logging import get_logger

log = get_logger(__name__)


class DeliveryOutcome(str, Enum):
    COMPLETED = "completed"
    STREAM_ERROR = "stream_error"
    CLIENT_ABORTED = "client_aborted"


@dataclass
class _Progress:
    headers_sent: bool = False
    bytes_sent: int = 0


class DeliveryStage:
    def __init__(
        self,
        chunk_size: int = STREAM_CHUNK_BYTES,
        filename: str = OUTPUT_FILENAME,
        media_type: str = OUTPUT_MEDIA_TYPE,
    ) -> None:
        self.chunk_size = chunk_size
        self.filename = filename
        self.media_type = media_type

    def headers(self, size: int) -> list[tuple[bytes, bytes]]:
        return [
            (b"content-type", self.media_type.encode("latin-1")),
            (b"content-disposition", f'attachment; filename="{self.filename}"'.encode("latin-1")),
            (b"content-length", str(size).encode("latin-1")),
            (b"cache-control", b"no-store"),
            (b"x-content-type-options", b"nosniff"),
        ]

    def _open(self, path: Path) -> BinaryIO:
        return path.open("rb")

    async def deliver(self, path: Path, scope: Scope, receive: Receive, send: Send) -> DeliveryOutcome:
        try:
            fh = self._open(path)
        except OSError as exc:
            log.error("stream_open_failed", path=str(path), error=str(exc))
            await self._report_failure(scope, receive, send)
            return DeliveryOutcome.STREAM_ERROR

        progress = _Progress()
        try:
            size = os.fstat(fh.fileno()).st_size
            log.info("streaming_started", size_mb=round(size / 1024 / 1024, 1))
            stream_task = asyncio.create_task(self._stream(fh, size, send, progress))
            abort_task = asyncio.create_task(self._wait_for_disconnect(receive))
            try:
                await asyncio.wait({stream_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (stream_task, abort_task):
                    if not task.done():
                        task.cancel()
                await asyncio.gather(stream_task, abort_task, return_exceptions=True)
        finally:
            fh.close()

        if stream_task.cancelled():
            log.info("client_disconnected", bytes_sent=progress.bytes_sent, size=size)
            return DeliveryOutcome.CLIENT_ABORTED

        outcome = stream_task.result()
        if outcome is DeliveryOutcome.STREAM_ERROR and not progress.headers_sent:
            await self._report_failure(scope, receive, send)
        elif outcome is DeliveryOutcome.COMPLETED:
            log.info("download_stream_finished", bytes_sent=progress.bytes_sent)
        return outcome

    async def _stream(self, fh: BinaryIO, size: int, send: Send, progress: _Progress) -> DeliveryOutcome:
        async def _start() -> None:
            await send({"type": "http.response.start", "status": 200, "headers": self.headers(size)})
            progress.headers_sent = True

        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(fh.read, self.chunk_size)
                except OSError as exc:
                    # With headers already out there is nothing to report; the transfer just stops short.
                    log.error(
                        "stream_read_failed",
                        error=str(exc),
                        headers_sent=progress.headers_sent,
                        bytes_sent=progress.bytes_sent,
                    )
                    return DeliveryOutcome.STREAM_ERROR
                if not progress.headers_sent:
                    await _start()
                if not chunk:
                    break
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                progress.bytes_sent += len(chunk)
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except OSError as exc:
            # The server failed to write to the socket: the caller is gone.
            log.info("client_write_failed", error=str(exc), bytes_sent=progress.bytes_sent)
            return DeliveryOutcome.CLIENT_ABORTED
        return DeliveryOutcome.COMPLETED

    @staticmethod
    async def _wait_for_disconnect(receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return

    @staticmethod
    async def _report_failure(scope: Scope, receive: Receive, send: Send) -> None:
        err = DeliveryFailure("Failed to stream the merged file.")
        response = JSONResponse({"error": err.message, "instructions": None}, status_code=err.status_code)
        await response(scope, receive, send)

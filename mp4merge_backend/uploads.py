"""Upload boundary: validate multipart uploads and land them in a workspace.

Validation only looks at what the multipart parser already gave us
(declared name, media type, size), so a rejected request never allocates a
workspace. Copying into the workspace happens after the order is resolved.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from fastapi import UploadFile

from .config import ALLOWED_MIME_TYPES, MAX_FILE_BYTES, MAX_FILES, MIN_FILES, STREAM_CHUNK_BYTES
from .errors import PayloadTooLarge, ValidationError
from .logging import get_logger
from .security import safe_join, stored_upload_name
from .workspace import Workspace

log = get_logger(__name__)


@dataclass(frozen=True)
class InputDescriptor:
    declared_name: str
    stored_path: Path
    size: int
    media_type: str


@dataclass(frozen=True)
class ReceivedUpload:
    declared_name: str
    media_type: str
    size: Optional[int]
    upload: UploadFile


def _too_large(max_bytes: int) -> PayloadTooLarge:
    return PayloadTooLarge(f"File too large. Max size is {max_bytes // (1024 * 1024)} MB.")


def validate_uploads(
    files: Sequence[UploadFile] | None,
    *,
    max_files: int = MAX_FILES,
    max_bytes: int = MAX_FILE_BYTES,
    allowed_types: frozenset[str] = ALLOWED_MIME_TYPES,
) -> list[ReceivedUpload]:
    files = list(files or [])
    if len(files) > max_files:
        raise ValidationError(f"Too many files. Max is {max_files}.")

    received: list[ReceivedUpload] = []
    for upload in files:
        name = upload.filename or ""
        media_type = (upload.content_type or "").split(";")[0].strip().lower()
        if media_type not in allowed_types:
            raise ValidationError(
                f'Rejected "{name}": MIME type "{media_type}" is not a supported video format.'
            )
        if upload.size is not None and upload.size > max_bytes:
            raise _too_large(max_bytes)
        received.append(ReceivedUpload(name, media_type, upload.size, upload))

    if len(received) < MIN_FILES:
        raise ValidationError(f"Upload at least {MIN_FILES} video files.")
    return received


def parse_order(raw: str | None) -> list[str]:
    """Parse the ``order`` form field: a JSON array of declared names."""
    if raw is None:
        raise ValidationError("Invalid order parameter.")
    try:
        order = json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid order parameter.")
    if not isinstance(order, list) or not all(isinstance(name, str) for name in order):
        raise ValidationError("Invalid order parameter.")
    return order


async def store_upload(
    workspace: Workspace,
    item: ReceivedUpload,
    *,
    max_bytes: int = MAX_FILE_BYTES,
) -> InputDescriptor:
    dest = safe_join(workspace.path, stored_upload_name(item.declared_name))
    written = 0
    await item.upload.seek(0)
    with dest.open("wb") as out:
        while True:
            chunk = await item.upload.read(STREAM_CHUNK_BYTES)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                raise _too_large(max_bytes)
            out.write(chunk)
    log.debug("upload_stored", declared_name=item.declared_name, stored=dest.name, size=written)
    return InputDescriptor(
        declared_name=item.declared_name,
        stored_path=dest,
        size=written,
        media_type=item.media_type,
    )


async def store_uploads(workspace: Workspace, items: Sequence[ReceivedUpload]) -> list[InputDescriptor]:
    """Copy uploads into the workspace, preserving the given order."""
    return [await store_upload(workspace, item) for item in items]

from __future__ import annotations

import re
import uuid
from pathlib import Path


_EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,8}$")


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name in {".", ".."}:
        return False
    if name != Path(name).name:
        return False
    if "/" in name or "\\" in name:
        return False
    return True


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir.

    Stored upload paths are built with this so a bad name can never land
    outside the request workspace.
    """
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise ValueError("Path traversal attempt")
    return resolved


def declared_extension(declared_name: str | None) -> str:
    """Return the lowercase extension of a client-supplied filename.

    The declared name is never used as a path; only a short alphanumeric
    suffix survives. Anything else yields "".
    """
    if not declared_name:
        return ""
    base = declared_name.replace("\\", "/").rsplit("/", 1)[-1]
    if not is_safe_basename(base):
        return ""
    ext = Path(base).suffix.lower()
    return ext if _EXTENSION_RE.match(ext) else ""


def stored_upload_name(declared_name: str | None) -> str:
    """Collision-free on-disk name for an upload, keeping its extension."""
    return f"{uuid.uuid4().hex}{declared_extension(declared_name)}"

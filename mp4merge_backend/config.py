from __future__ import annotations

import os
import tempfile
from pathlib import Path


# Parent directory for per-request workspaces.
# Default: the OS temp dir. Override with env var MP4MERGE_TMP_ROOT.
_root_raw = os.environ.get("MP4MERGE_TMP_ROOT")
if _root_raw and _root_raw.strip():
    TMP_ROOT = Path(_root_raw)
else:
    TMP_ROOT = Path(tempfile.gettempdir())
TMP_ROOT = TMP_ROOT.resolve()

# Every workspace directory name starts with this; the startup sweep relies on it.
WORKSPACE_PREFIX = os.environ.get("MP4MERGE_WORKSPACE_PREFIX", "mp4-merge-")

# How long a cleaned workspace stays in the dedupe map before it is forgotten.
CLEANUP_GRACE_SECONDS = float(os.environ.get("MP4MERGE_CLEANUP_GRACE_SECONDS", "5"))

# Upload limits.
MAX_FILE_BYTES = int(os.environ.get("MP4MERGE_MAX_FILE_BYTES", str(500 * 1024 * 1024)))  # 500MB
MAX_FILES = int(os.environ.get("MP4MERGE_MAX_FILES", "20"))
MIN_FILES = 2

ALLOWED_MIME_TYPES = frozenset(
    {
        "video/mp4",
        "video/quicktime",
        "video/x-msvideo",
        "video/x-matroska",
        "video/webm",
        "video/mpeg",
    }
)

# Explicit ffmpeg path; when unset the binary is looked up on PATH.
FFMPEG_BIN = os.environ.get("MP4MERGE_FFMPEG_BIN") or None

# Normalization profile. Fixed for the life of the process.
NORMALIZE_MAX_WIDTH = int(os.environ.get("MP4MERGE_NORMALIZE_MAX_WIDTH", "1280"))
NORMALIZE_MAX_HEIGHT = int(os.environ.get("MP4MERGE_NORMALIZE_MAX_HEIGHT", "720"))
NORMALIZE_FPS = int(os.environ.get("MP4MERGE_NORMALIZE_FPS", "30"))

STREAM_CHUNK_BYTES = int(os.environ.get("MP4MERGE_STREAM_CHUNK_BYTES", str(1024 * 1024)))

LOG_LEVEL = os.environ.get("MP4MERGE_LOG_LEVEL", "INFO")

# Fixed names inside a workspace.
MANIFEST_FILENAME = "concat-list.txt"
OUTPUT_FILENAME = "merged.mp4"
OUTPUT_MEDIA_TYPE = "video/mp4"

INSTALL_INSTRUCTIONS = (
    "macOS:    brew install ffmpeg",
    "Ubuntu:   sudo apt install ffmpeg",
    "Windows:  Download from https://ffmpeg.org/download.html and add to PATH",
)

from __future__ import annotations

from pathlib import Path
from typing import Sequence

from .config import MANIFEST_FILENAME, OUTPUT_FILENAME
from .engine import Engine
from .errors import ConcatenationFailure
from .logging import get_logger
from .workspace import Workspace

log = get_logger(__name__)


def _quote(path: Path) -> str:
    # Concat demuxer quoting: close the quote, escaped quote, reopen.
    return "'" + str(path).replace("'", "'\\''") + "'"


def manifest_text(paths: Sequence[Path]) -> str:
    """One ``file '<absolute-path>'`` line per input, in merge order."""
    return "".join(f"file {_quote(p.resolve())}\n" for p in paths)


def write_manifest(paths: Sequence[Path], manifest_path: Path) -> Path:
    manifest_path.write_text(manifest_text(paths), encoding="utf-8")
    return manifest_path


def concat_args(manifest_path: Path, output_path: Path) -> list[str]:
    return [
        "-y",
        "-f", "concat",
        "-safe", "0",  # manifest holds absolute paths
        "-i", str(manifest_path),
        "-c", "copy",
        "-movflags", "+faststart",
        str(output_path),
    ]


class ConcatenationStage:
    """Join normalized outputs without re-encoding."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def run(self, normalized: Sequence[Path], workspace: Workspace) -> Path:
        manifest_path = write_manifest(normalized, workspace.path / MANIFEST_FILENAME)
        log.info("manifest_written", path=str(manifest_path), entries=len(normalized))

        output_path = workspace.path / OUTPUT_FILENAME
        result = await self.engine.run(concat_args(manifest_path, output_path))
        if not result.ok:
            log.error("concat_failed", returncode=result.returncode, stderr=result.stderr_tail)
            raise ConcatenationFailure(
                "FFmpeg failed to concatenate videos.",
                details={"returncode": result.returncode},
            )
        if not output_path.is_file():
            log.error("concat_output_missing", path=str(output_path))
            raise ConcatenationFailure("FFmpeg failed to concatenate videos.")

        log.info("concat_complete", output=output_path.name)
        return output_path

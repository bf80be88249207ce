"""
ffmpeg invocation boundary.

One subprocess per call, stdout and stderr captured. The exit code is the
only success signal; callers decide what a non-zero exit means for them.
No timeout is applied.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from .config import FFMPEG_BIN, INSTALL_INSTRUCTIONS
from .errors import EngineUnavailable
from .logging import get_logger

log = get_logger(__name__)

_COMMON_PATHS = (
    "/usr/local/bin/ffmpeg",
    "/usr/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
)

# Keep operator logs readable; ffmpeg prints a lot before the actual error.
STDERR_TAIL_CHARS = 2000


@dataclass(frozen=True)
class EngineResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def stderr_tail(self) -> str:
        return self.stderr[-STDERR_TAIL_CHARS:]


class Engine(Protocol):
    async def run(self, args: Sequence[str]) -> EngineResult: ...


class FFmpegEngine:
    def __init__(self, binary: Optional[str] = FFMPEG_BIN) -> None:
        self._binary = binary

    def find_binary(self) -> Optional[str]:
        """Locate ffmpeg: explicit setting, then PATH, then common install dirs."""
        if self._binary:
            return self._binary
        found = shutil.which("ffmpeg")
        if found:
            self._binary = found
            return found
        for path in _COMMON_PATHS:
            if os.path.isfile(path) and os.access(path, os.X_OK):
                self._binary = path
                return path
        return None

    async def probe(self) -> Optional[str]:
        """Return the ffmpeg version banner, or None if it cannot be run."""
        if self.find_binary() is None:
            return None
        try:
            result = await self.run(["-version"])
        except EngineUnavailable:
            return None
        if not result.ok:
            return None
        lines = result.stdout.splitlines()
        return lines[0] if lines else "ffmpeg"

    async def run(self, args: Sequence[str]) -> EngineResult:
        binary = self.find_binary()
        if binary is None:
            raise EngineUnavailable(
                "FFmpeg is not installed or not found in PATH.",
                instructions=INSTALL_INSTRUCTIONS,
            )
        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            log.error("ffmpeg_launch_failed", binary=binary, error=str(exc))
            raise EngineUnavailable(
                "FFmpeg is not installed or not found in PATH.",
                instructions=INSTALL_INSTRUCTIONS,
            ) from exc

        stdout, stderr = await proc.communicate()
        return EngineResult(
            args=tuple(args),
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

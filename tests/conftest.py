"""Shared pytest fixtures and an in-process ffmpeg double."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Sequence

import pytest

from mp4merge_backend.engine import EngineResult
from mp4merge_backend.uploads import InputDescriptor
from mp4merge_backend.workspace import WorkspaceManager

_MANIFEST_LINE_RE = re.compile(r"^file '(?P<path>.*)'$")


class FakeEngine:
    """Stands in for ffmpeg.

    Transcode calls write ``<NORM>`` + the input bytes to the output path.
    Concat calls read the manifest and join the listed files in order, so
    the merged bytes show which inputs went in and in what order.
    """

    def __init__(self, fail_transcode_at: Optional[int] = None, fail_concat: bool = False) -> None:
        self.fail_transcode_at = fail_transcode_at
        self.fail_concat = fail_concat
        self.calls: list[list[str]] = []
        self.transcodes: list[list[str]] = []
        self.concats: list[list[str]] = []

    async def run(self, args: Sequence[str]) -> EngineResult:
        args = list(args)
        self.calls.append(args)
        if "concat" in args:
            return self._concat(args)
        return self._transcode(args)

    def _transcode(self, args: list[str]) -> EngineResult:
        index = len(self.transcodes)
        self.transcodes.append(args)
        if self.fail_transcode_at == index:
            return EngineResult(tuple(args), 1, "", "Invalid data found when processing input")
        source = Path(args[args.index("-i") + 1])
        Path(args[-1]).write_bytes(b"<NORM>" + source.read_bytes())
        return EngineResult(tuple(args), 0, "", "")

    def _concat(self, args: list[str]) -> EngineResult:
        self.concats.append(args)
        if self.fail_concat:
            return EngineResult(tuple(args), 1, "", "Unsafe file name")
        manifest = Path(args[args.index("-i") + 1])
        parts = []
        for line in manifest.read_text(encoding="utf-8").splitlines():
            match = _MANIFEST_LINE_RE.match(line)
            assert match, line
            parts.append(Path(match.group("path")).read_bytes())
        Path(args[-1]).write_bytes(b"".join(parts))
        return EngineResult(tuple(args), 0, "", "")


@pytest.fixture
def tmp_root(tmp_path):
    """Stand-in for the system temp dir."""
    root = tmp_path / "tmp"
    root.mkdir()
    return root


@pytest.fixture
def manager(tmp_root):
    return WorkspaceManager(root=tmp_root, prefix="mp4-merge-", grace_seconds=0.05)


@pytest.fixture
def engine():
    return FakeEngine()


def make_inputs(directory: Path, names: Sequence[str]) -> list[InputDescriptor]:
    """Write small placeholder videos whose content is their own name."""
    inputs = []
    for i, name in enumerate(names):
        path = directory / f"upload-{i}.mp4"
        path.write_bytes(name.encode())
        inputs.append(InputDescriptor(name, path, path.stat().st_size, "video/mp4"))
    return inputs

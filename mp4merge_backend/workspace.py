from __future__ import annotations

import asyncio
import shutil
import tempfile
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator

from .config import CLEANUP_GRACE_SECONDS, TMP_ROOT, WORKSPACE_PREFIX
from .errors import WorkspaceCreationError
from .logging import get_logger

log = get_logger(__name__)


class CleanupState(str, Enum):
    PENDING = "pending"
    CLEANING = "cleaning"
    DONE = "done"


@dataclass
class Workspace:
    path: Path
    state: CleanupState = field(default=CleanupState.PENDING)

    @property
    def key(self) -> str:
        return str(self.path)


def _remove_entry(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


class WorkspaceManager:
    """Owns every per-request workspace under one temporary root.

    ``cleanup`` may be triggered from several places for the same request
    (pipeline failure, stream end, stream error, client abort). The manager
    keeps a lock-guarded map of workspace identity -> state so only the first
    call removes anything. Entries are forgotten ``grace_seconds`` after the
    removal finishes, which keeps the map small under sustained traffic.
    """

    def __init__(
        self,
        root: Path | None = None,
        prefix: str = WORKSPACE_PREFIX,
        grace_seconds: float = CLEANUP_GRACE_SECONDS,
    ) -> None:
        self.root = Path(root or TMP_ROOT)
        self.prefix = prefix
        self.grace_seconds = grace_seconds
        self._lock = threading.Lock()
        self._tracked: dict[str, CleanupState] = {}

    @property
    def tracked(self) -> dict[str, CleanupState]:
        with self._lock:
            return dict(self._tracked)

    async def create(self) -> Workspace:
        try:
            raw = await asyncio.to_thread(tempfile.mkdtemp, prefix=self.prefix, dir=self.root)
        except OSError as exc:
            log.error("workspace_create_failed", root=str(self.root), error=str(exc))
            raise WorkspaceCreationError(
                "Could not create a working directory for this request.",
                details={"root": str(self.root), "error": str(exc)},
            ) from exc
        ws = Workspace(path=Path(raw).resolve())
        log.info("workspace_created", path=ws.key)
        return ws

    def _claim(self, ws: Workspace) -> bool:
        with self._lock:
            if ws.state is not CleanupState.PENDING or ws.key in self._tracked:
                return False
            self._tracked[ws.key] = CleanupState.CLEANING
            ws.state = CleanupState.CLEANING
            return True

    def _finish(self, ws: Workspace) -> None:
        with self._lock:
            self._tracked[ws.key] = CleanupState.DONE
            ws.state = CleanupState.DONE

    def _forget(self, key: str) -> None:
        with self._lock:
            self._tracked.pop(key, None)

    async def cleanup(self, ws: Workspace) -> bool:
        """Remove the workspace directory once.

        Returns True if this call performed the removal, False if another
        call already claimed it. Removal errors are logged, never raised.
        """
        if not self._claim(ws):
            return False
        try:
            await asyncio.to_thread(shutil.rmtree, ws.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.error("workspace_cleanup_failed", path=ws.key, error=str(exc))
        else:
            log.info("workspace_cleaned", path=ws.key)
        finally:
            self._finish(ws)
            asyncio.get_running_loop().call_later(self.grace_seconds, self._forget, ws.key)
        return True

    @asynccontextmanager
    async def scoped(self) -> AsyncIterator[Workspace]:
        """Create a workspace and clean it up on every exit path."""
        ws = await self.create()
        try:
            yield ws
        finally:
            await self.cleanup(ws)

    def sweep_orphans(self) -> int:
        """Delete leftover workspaces from earlier runs (crash, kill).

        Only entries directly under the root whose name starts with the
        workspace prefix are touched. Returns the number removed.
        """
        root = self.root
        if not root.exists():
            return 0
        try:
            orphans = [child for child in root.iterdir() if child.name.startswith(self.prefix)]
        except OSError as exc:
            log.warning("orphan_scan_failed", root=str(root), error=str(exc))
            return 0
        if not orphans:
            return 0

        log.info("orphan_workspaces_found", count=len(orphans))
        removed = 0
        for child in orphans:
            try:
                _remove_entry(child)
            except OSError as exc:
                log.error("orphan_remove_failed", path=str(child), error=str(exc))
                continue
            removed += 1
            log.info("orphan_removed", name=child.name)
        return removed

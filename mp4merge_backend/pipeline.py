"""
MergePipeline: one request's trip from uploads to a streamed merged file.

States::

    received -> ordering_resolved -> normalizing -> concatenating -> delivering -> cleaned

Any non-terminal state may move to ``failed``, which is always followed by
``cleaned``.

The workspace is held through an AsyncExitStack. Any failure between
workspace creation and the end of delivery unwinds the stack, which runs the
manager's idempotent cleanup. On success the open stack is handed from
``process`` to ``deliver`` and closed once the stream ends, however it ends.
"""

from __future__ import annotations

from contextlib import AsyncExitStack, contextmanager
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Optional, Protocol, Sequence, TypeVar

from starlette.types import Receive, Scope, Send

from .concat import ConcatenationStage
from .config import INSTALL_INSTRUCTIONS, MIN_FILES
from .delivery import DeliveryOutcome, DeliveryStage
from .engine import Engine
from .errors import EngineUnavailable, ValidationError
from .logging import get_logger
from .transcode import NormalizationProfile, TranscodeStage
from .uploads import InputDescriptor
from .workspace import Workspace, WorkspaceManager

log = get_logger(__name__)


class PipelineState(str, Enum):
    RECEIVED = "received"
    ORDERING_RESOLVED = "ordering_resolved"
    NORMALIZING = "normalizing"
    CONCATENATING = "concatenating"
    DELIVERING = "delivering"
    FAILED = "failed"
    CLEANED = "cleaned"


_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.RECEIVED: frozenset({PipelineState.ORDERING_RESOLVED, PipelineState.FAILED}),
    PipelineState.ORDERING_RESOLVED: frozenset({PipelineState.NORMALIZING, PipelineState.FAILED}),
    PipelineState.NORMALIZING: frozenset({PipelineState.CONCATENATING, PipelineState.FAILED}),
    PipelineState.CONCATENATING: frozenset({PipelineState.DELIVERING, PipelineState.FAILED}),
    PipelineState.DELIVERING: frozenset({PipelineState.CLEANED, PipelineState.FAILED}),
    PipelineState.FAILED: frozenset({PipelineState.CLEANED}),
    PipelineState.CLEANED: frozenset(),
}


class Declared(Protocol):
    declared_name: str


T = TypeVar("T", bound=Declared)


def resolve_order(received: Sequence[T], order: Sequence[str]) -> list[T]:
    """Map the client's declared order onto what was actually received.

    Matching is by exact declared name. If two uploads share a name, the
    first one wins for every occurrence of that name.
    """
    if len(order) != len(received):
        raise ValidationError(
            f"Order lists {len(order)} file(s) but {len(received)} were uploaded."
        )
    by_name: dict[str, T] = {}
    for item in received:
        by_name.setdefault(item.declared_name, item)

    missing = [name for name in order if name not in by_name]
    if missing:
        raise ValidationError(
            "Order contains filenames that were not uploaded.",
            details={"missing": missing},
        )
    return [by_name[name] for name in order]


class MergePipeline:
    def __init__(
        self,
        workspaces: WorkspaceManager,
        engine: Engine,
        *,
        engine_available: bool,
        profile: Optional[NormalizationProfile] = None,
        delivery: Optional[DeliveryStage] = None,
    ) -> None:
        self.workspaces = workspaces
        self.engine_available = engine_available
        self.transcoder = TranscodeStage(engine, profile)
        self.concatenator = ConcatenationStage(engine)
        self.delivery = delivery or DeliveryStage()

        self.state = PipelineState.RECEIVED
        self.history: list[PipelineState] = [self.state]
        self.workspace: Optional[Workspace] = None
        self.result_path: Optional[Path] = None
        self.outcome: Optional[DeliveryOutcome] = None
        self._scope: Optional[AsyncExitStack] = None

    def _transition(self, new: PipelineState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {new.value}")
        log.debug("pipeline_state", old=self.state.value, new=new.value)
        self.state = new
        self.history.append(new)

    def _fail(self, exc: BaseException) -> None:
        if self.state not in (PipelineState.FAILED, PipelineState.CLEANED):
            log.error("merge_pipeline_failed", state=self.state.value, error=str(exc))
            self._transition(PipelineState.FAILED)

    def _mark_cleaned(self) -> None:
        if self.state is not PipelineState.CLEANED:
            self._transition(PipelineState.CLEANED)

    def check_available(self) -> None:
        if not self.engine_available:
            raise EngineUnavailable(
                "FFmpeg is not installed or not found in PATH.",
                instructions=INSTALL_INSTRUCTIONS,
            )

    @contextmanager
    def admission(self) -> Iterator[None]:
        """Rejections before any workspace exists go straight to failed -> cleaned."""
        try:
            yield
        except BaseException as exc:
            self._fail(exc)
            self._mark_cleaned()
            raise

    def resolve(self, received: Sequence[T], order: Sequence[str]) -> list[T]:
        """Entry guards and ordering. Nothing touches the filesystem here."""
        with self.admission():
            self.check_available()
            ordered = resolve_order(received, order)
            if len(ordered) < MIN_FILES:
                raise ValidationError(f"Upload at least {MIN_FILES} video files.")
        self._transition(PipelineState.ORDERING_RESOLVED)
        log.info("order_resolved", order=[item.declared_name for item in ordered])
        return ordered

    async def process(
        self,
        materialize: Callable[[Workspace], Awaitable[Sequence[InputDescriptor]]],
    ) -> Path:
        """Create the workspace, land the inputs, normalize, concatenate.

        ``materialize`` copies the resolved uploads into the workspace and
        returns their descriptors in merge order. On success the workspace
        stays alive for ``deliver``; on failure it is already gone when the
        exception reaches the caller.
        """
        async with AsyncExitStack() as stack:
            stack.callback(self._mark_cleaned)
            try:
                self.workspace = await stack.enter_async_context(self.workspaces.scoped())
                inputs = await materialize(self.workspace)

                self._transition(PipelineState.NORMALIZING)
                normalized = await self.transcoder.run(inputs, self.workspace)

                self._transition(PipelineState.CONCATENATING)
                self.result_path = await self.concatenator.run(normalized, self.workspace)
            except BaseException as exc:
                self._fail(exc)
                raise
            self._transition(PipelineState.DELIVERING)
            self._scope = stack.pop_all()
        return self.result_path

    async def deliver(self, scope: Scope, receive: Receive, send: Send) -> DeliveryOutcome:
        if self._scope is None or self.result_path is None:
            raise RuntimeError("deliver() called before a successful process()")
        async with self._scope:
            try:
                self.outcome = await self.delivery.deliver(self.result_path, scope, receive, send)
            except BaseException as exc:
                self._fail(exc)
                raise
            if self.outcome is DeliveryOutcome.STREAM_ERROR:
                self._fail(RuntimeError("stream read failed"))
        self._scope = None
        return self.outcome


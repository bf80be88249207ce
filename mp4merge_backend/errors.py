"""
Exception hierarchy for the merge pipeline.

Everything raised on purpose inherits from MergeError so the HTTP layer can
render it with a single handler. Each exception carries the status code it
maps to and, where useful, remediation hints for the caller. Engine
diagnostics go in ``details`` and are only ever logged.
"""

from __future__ import annotations

from typing import Sequence


class MergeError(Exception):
    """Base exception for all merge failures."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        instructions: Sequence[str] | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message
        self.instructions = list(instructions) if instructions else None
        self.details = details or {}
        super().__init__(message)


class EngineUnavailable(MergeError):
    """ffmpeg is missing; every merge request is rejected."""

    status_code = 503


class ValidationError(MergeError):
    """Bad file count, media type or order. Raised before any processing."""

    status_code = 400


class PayloadTooLarge(ValidationError):
    status_code = 413


class WorkspaceCreationError(MergeError):
    """The temporary root is not writable."""


class TranscodeFailure(MergeError):
    """Normalizing one input exited non-zero."""

    def __init__(self, message: str, *, input_name: str, **kwargs) -> None:
        self.input_name = input_name
        super().__init__(message, **kwargs)


class ConcatenationFailure(MergeError):
    """The stream-copy concatenation did not produce a merged file."""


class DeliveryFailure(MergeError):
    """Reading the merged file failed before anything was sent."""

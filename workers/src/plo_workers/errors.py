"""Stable error taxonomy for the event pipeline."""

from __future__ import annotations

from typing import Any, Literal

ErrorKind = Literal[
    "invalid_payload",
    "unregistered_source",
    "duplicate_event",
    "unresolved_project",
    "processing_failure",
    "transport_failure",
]

ERROR_KINDS: tuple[ErrorKind, ...] = (
    "invalid_payload",
    "unregistered_source",
    "duplicate_event",
    "unresolved_project",
    "processing_failure",
    "transport_failure",
)


class PipelineError(Exception):
    kind: ErrorKind = "processing_failure"


class AdapterError(PipelineError):
    """Raw payload rejected by a source adapter.

    ``details`` lists ``{"field": ..., "message": ...}`` items so callers can
    surface field-level problems to the emitting system.
    """

    kind: ErrorKind = "invalid_payload"

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, "details": self.details}


class UnregisteredSourceError(PipelineError):
    kind: ErrorKind = "unregistered_source"

    def __init__(self, source: str) -> None:
        super().__init__(f"Unknown event source: {source!r}")
        self.source = source


class UnresolvedProjectError(PipelineError):
    kind: ErrorKind = "unresolved_project"

    def __init__(self, project_ref: str, source: str) -> None:
        super().__init__(f"Project not found for ref={project_ref!r} (source={source})")
        self.project_ref = project_ref
        self.source = source


class ProcessingFailure(PipelineError):
    kind: ErrorKind = "processing_failure"


class TransportFailure(PipelineError):
    kind: ErrorKind = "transport_failure"


def classify_error(exc: BaseException | None) -> ErrorKind:
    if isinstance(exc, PipelineError):
        return exc.kind
    return "processing_failure"


def is_retryable(exc: BaseException) -> bool:
    """Adapter and configuration faults never succeed on retry."""
    return classify_error(exc) not in {"invalid_payload", "unregistered_source"}

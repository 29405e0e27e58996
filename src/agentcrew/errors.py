from __future__ import annotations

from typing import Literal

HostErrorReason = Literal[
    "not_found",
    "permission_denied",
    "not_mergeable",
    "validation",
    "unavailable",
]


class CrewError(RuntimeError):
    """Base class for orchestration failures."""


class NotFoundError(CrewError):
    """Raised when an agent, task, project or pull request does not exist."""

    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class GenerationError(CrewError):
    """Raised when the text generator fails or returns a malformed payload."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.retriable = retriable


class GenerationTimeoutError(GenerationError):
    """Raised when a generator call exceeds the configured timeout."""


class HostError(CrewError):
    """Raised when a repository-host call fails."""

    def __init__(
        self,
        message: str,
        *,
        reason: HostErrorReason = "unavailable",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.status_code = status_code


class ValidationError(CrewError):
    """Raised for malformed input rejected at the call site."""

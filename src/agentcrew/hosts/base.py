from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from agentcrew.errors import ValidationError

ReviewEvent = Literal["APPROVE", "REQUEST_CHANGES", "COMMENT"]
ReviewState = Literal["APPROVED", "CHANGES_REQUESTED", "COMMENTED"]

REVIEW_EVENT_STATES: dict[str, ReviewState] = {
    "APPROVE": "APPROVED",
    "REQUEST_CHANGES": "CHANGES_REQUESTED",
    "COMMENT": "COMMENTED",
}


@dataclass(slots=True)
class FileChange:
    path: str
    content: str


@dataclass(slots=True)
class ChangedFile:
    filename: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0
    patch: str = ""


@dataclass(slots=True)
class PullRequest:
    number: int
    url: str
    title: str
    head: str
    base: str
    state: str = "open"
    labels: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReviewSubmission:
    event: ReviewEvent
    body: str

    def __post_init__(self) -> None:
        if self.event not in REVIEW_EVENT_STATES:
            raise ValidationError(f"Unsupported review event: {self.event}")
        if not self.body.strip():
            raise ValidationError("Review comment body cannot be empty.")


@dataclass(slots=True)
class SubmittedReview:
    reviewer: str
    state: ReviewState
    body: str = ""


@dataclass(slots=True)
class PullRequestStatus:
    mergeable: bool
    state: str
    reviews: list[SubmittedReview] = field(default_factory=list)

    @property
    def approvals(self) -> int:
        return sum(1 for review in self.reviews if review.state == "APPROVED")

    @property
    def changes_requested(self) -> int:
        return sum(1 for review in self.reviews if review.state == "CHANGES_REQUESTED")

    def to_dict(self) -> dict[str, Any]:
        return {
            "mergeable": self.mergeable,
            "state": self.state,
            "approvals": self.approvals,
            "changes_requested": self.changes_requested,
        }


class RepositoryHost(ABC):
    """Code-hosting backend: branches, commits, pull requests, reviews and merges.

    Every method may raise ``HostError``; callers narrate the failure and never
    retry automatically.
    """

    name: str = "host"

    @abstractmethod
    async def create_branch(self, repository: str, branch: str, base: str) -> str:
        """Create ``branch`` from ``base`` and return the branch name."""

    @abstractmethod
    async def commit_files(
        self,
        repository: str,
        branch: str,
        files: list[FileChange],
        message: str,
    ) -> list[str]:
        """Write files to ``branch`` and return the committed paths."""

    @abstractmethod
    async def create_pull_request(
        self,
        repository: str,
        *,
        title: str,
        body: str,
        head: str,
        base: str,
        labels: list[str] | None = None,
    ) -> PullRequest:
        ...

    @abstractmethod
    async def get_changed_files(self, repository: str, pr_number: int) -> list[ChangedFile]:
        ...

    @abstractmethod
    async def submit_review(
        self,
        repository: str,
        pr_number: int,
        submission: ReviewSubmission,
        *,
        reviewer: str,
    ) -> None:
        ...

    @abstractmethod
    async def get_status(self, repository: str, pr_number: int) -> PullRequestStatus:
        ...

    @abstractmethod
    async def merge(
        self,
        repository: str,
        pr_number: int,
        *,
        method: str,
        title: str,
        message: str,
    ) -> str:
        """Merge the pull request and return the resulting commit sha."""

    async def close(self) -> None:
        return None

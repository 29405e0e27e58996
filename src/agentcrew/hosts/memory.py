from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field

from agentcrew.errors import HostError
from agentcrew.hosts.base import (
    REVIEW_EVENT_STATES,
    ChangedFile,
    FileChange,
    PullRequest,
    PullRequestStatus,
    RepositoryHost,
    ReviewSubmission,
    SubmittedReview,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _StoredPullRequest:
    pull: PullRequest
    reviews: list[SubmittedReview] = field(default_factory=list)
    merged: bool = False
    merge_sha: str | None = None
    merge_method: str | None = None


@dataclass(slots=True)
class _Repository:
    branches: dict[str, dict[str, str]] = field(default_factory=dict)
    pulls: dict[int, _StoredPullRequest] = field(default_factory=dict)
    next_number: int = 1


class InMemoryHost(RepositoryHost):
    """Process-local repository host used offline and in tests.

    Merging is not repeatable: once a pull request is merged, later merge
    attempts fail with ``HostError(reason="not_mergeable")``.
    """

    name = "memory"

    def __init__(self, *, base_branch: str = "main", auto_create: bool = True) -> None:
        self.base_branch = base_branch
        self.auto_create = auto_create
        self._repositories: dict[str, _Repository] = {}
        self.merge_calls: list[tuple[str, int]] = []

    def add_repository(self, repository: str) -> None:
        self._repositories.setdefault(
            repository, _Repository(branches={self.base_branch: {}})
        )

    def _repo(self, repository: str) -> _Repository:
        if repository not in self._repositories:
            if not self.auto_create:
                raise HostError(
                    f"Repository not found: {repository}", reason="not_found", status_code=404
                )
            self.add_repository(repository)
        return self._repositories[repository]

    def _pull(self, repository: str, pr_number: int) -> _StoredPullRequest:
        stored = self._repo(repository).pulls.get(pr_number)
        if stored is None:
            raise HostError(
                f"Pull request #{pr_number} not found in {repository}",
                reason="not_found",
                status_code=404,
            )
        return stored

    def open_pull_request(
        self,
        repository: str,
        *,
        title: str = "Test change",
        head: str = "feature/test",
        files: dict[str, str] | None = None,
    ) -> PullRequest:
        """Seed a branch and an open pull request for chat-driven reviews."""
        repo = self._repo(repository)
        repo.branches[head] = dict(files or {"README.md": "# change\n"})
        number = repo.next_number
        repo.next_number += 1
        pull = PullRequest(
            number=number,
            url=f"memory://{repository}/pull/{number}",
            title=title,
            head=head,
            base=self.base_branch,
        )
        repo.pulls[number] = _StoredPullRequest(pull=pull)
        return pull

    async def create_branch(self, repository: str, branch: str, base: str) -> str:
        repo = self._repo(repository)
        if base not in repo.branches:
            raise HostError(f"Base branch not found: {base}", reason="not_found", status_code=404)
        if branch in repo.branches:
            raise HostError(
                f"Branch already exists: {branch}", reason="validation", status_code=422
            )
        repo.branches[branch] = dict(repo.branches[base])
        return branch

    async def commit_files(
        self,
        repository: str,
        branch: str,
        files: list[FileChange],
        message: str,
    ) -> list[str]:
        repo = self._repo(repository)
        tree = repo.branches.get(branch)
        if tree is None:
            raise HostError(f"Branch not found: {branch}", reason="not_found", status_code=404)
        for change in files:
            tree[change.path] = change.content
        logger.debug("Committed %d files to %s:%s (%s)", len(files), repository, branch, message)
        return [change.path for change in files]

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
        repo = self._repo(repository)
        if head not in repo.branches:
            raise HostError(f"Head branch not found: {head}", reason="validation", status_code=422)
        number = repo.next_number
        repo.next_number += 1
        pull = PullRequest(
            number=number,
            url=f"memory://{repository}/pull/{number}",
            title=title,
            head=head,
            base=base,
            labels=list(labels or []),
        )
        repo.pulls[number] = _StoredPullRequest(pull=pull)
        return pull

    async def get_changed_files(self, repository: str, pr_number: int) -> list[ChangedFile]:
        stored = self._pull(repository, pr_number)
        repo = self._repo(repository)
        head = repo.branches.get(stored.pull.head, {})
        base = repo.branches.get(stored.pull.base, {})
        changed: list[ChangedFile] = []
        for path, content in sorted(head.items()):
            if base.get(path) == content:
                continue
            changed.append(
                ChangedFile(
                    filename=path,
                    status="modified" if path in base else "added",
                    additions=content.count("\n") or 1,
                    patch=content,
                )
            )
        return changed

    async def submit_review(
        self,
        repository: str,
        pr_number: int,
        submission: ReviewSubmission,
        *,
        reviewer: str,
    ) -> None:
        stored = self._pull(repository, pr_number)
        if stored.merged:
            raise HostError(
                f"Pull request #{pr_number} is already merged",
                reason="validation",
                status_code=422,
            )
        stored.reviews.append(
            SubmittedReview(
                reviewer=reviewer,
                state=REVIEW_EVENT_STATES[submission.event],
                body=submission.body,
            )
        )

    async def get_status(self, repository: str, pr_number: int) -> PullRequestStatus:
        stored = self._pull(repository, pr_number)
        return PullRequestStatus(
            mergeable=not stored.merged,
            state="merged" if stored.merged else stored.pull.state,
            reviews=list(stored.reviews),
        )

    async def merge(
        self,
        repository: str,
        pr_number: int,
        *,
        method: str,
        title: str,
        message: str,
    ) -> str:
        self.merge_calls.append((repository, pr_number))
        stored = self._pull(repository, pr_number)
        if stored.merged:
            raise HostError(
                f"Pull request #{pr_number} is not mergeable",
                reason="not_mergeable",
                status_code=405,
            )
        repo = self._repo(repository)
        repo.branches.setdefault(stored.pull.base, {}).update(
            repo.branches.get(stored.pull.head, {})
        )
        digest = hashlib.sha1(f"{repository}#{pr_number}:{title}".encode()).hexdigest()
        stored.merged = True
        stored.merge_sha = digest
        stored.merge_method = method
        stored.pull.state = "closed"
        logger.info("Merged %s#%d with %s", repository, pr_number, method)
        return digest

    def is_merged(self, repository: str, pr_number: int) -> bool:
        return self._pull(repository, pr_number).merged

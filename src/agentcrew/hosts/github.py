from __future__ import annotations

import base64
import logging
import os
from typing import Any

import httpx

from agentcrew.errors import HostError, HostErrorReason
from agentcrew.hosts.base import (
    ChangedFile,
    FileChange,
    PullRequest,
    PullRequestStatus,
    RepositoryHost,
    ReviewSubmission,
    SubmittedReview,
)

logger = logging.getLogger(__name__)

STATUS_REASONS: dict[int, HostErrorReason] = {
    401: "permission_denied",
    403: "permission_denied",
    404: "not_found",
    405: "not_mergeable",
    409: "not_mergeable",
    422: "validation",
}


def reason_for_status(status_code: int) -> HostErrorReason:
    return STATUS_REASONS.get(status_code, "unavailable")


class GitHubHost(RepositoryHost):
    """GitHub REST v3 host on ``httpx.AsyncClient``."""

    name = "github"

    def __init__(
        self,
        *,
        owner: str,
        token: str | None = None,
        api_url: str = "https://api.github.com",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        if not owner:
            raise HostError("GitHub owner is not configured.", reason="validation")
        self.owner = owner
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=api_url, headers=headers, timeout=timeout
        )
        if http_client is not None:
            self._client.headers.update(headers)

    @classmethod
    def from_env(
        cls,
        *,
        owner: str,
        token_env: str = "GITHUB_TOKEN",
        api_url: str = "https://api.github.com",
    ) -> GitHubHost:
        return cls(owner=owner, token=os.environ.get(token_env), api_url=api_url)

    def _path(self, repository: str, suffix: str) -> str:
        return f"/repos/{self.owner}/{repository}{suffix}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            raise HostError(f"GitHub request failed: {exc}", reason="unavailable") from exc
        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            detail = response.text
            if isinstance(payload, dict):
                detail = payload.get("message", response.text)
            raise HostError(
                f"GitHub {method} {path} failed ({response.status_code}): {detail}",
                reason=reason_for_status(response.status_code),
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def create_branch(self, repository: str, branch: str, base: str) -> str:
        ref = await self._request("GET", self._path(repository, f"/git/ref/heads/{base}"))
        sha = ref["object"]["sha"]
        await self._request(
            "POST",
            self._path(repository, "/git/refs"),
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )
        logger.info("Created branch %s from %s in %s", branch, base, repository)
        return branch

    async def _existing_sha(self, repository: str, branch: str, path: str) -> str | None:
        try:
            existing = await self._request(
                "GET", self._path(repository, f"/contents/{path}"), params={"ref": branch}
            )
        except HostError as exc:
            if exc.reason == "not_found":
                return None
            raise
        if isinstance(existing, dict):
            return existing.get("sha")
        return None

    async def commit_files(
        self,
        repository: str,
        branch: str,
        files: list[FileChange],
        message: str,
    ) -> list[str]:
        committed: list[str] = []
        for change in files:
            payload: dict[str, Any] = {
                "message": f"{message}: {change.path}",
                "content": base64.b64encode(change.content.encode("utf-8")).decode("ascii"),
                "branch": branch,
            }
            sha = await self._existing_sha(repository, branch, change.path)
            if sha:
                payload["sha"] = sha
            await self._request(
                "PUT", self._path(repository, f"/contents/{change.path}"), json=payload
            )
            committed.append(change.path)
        return committed

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
        data = await self._request(
            "POST",
            self._path(repository, "/pulls"),
            json={"title": title, "body": body, "head": head, "base": base},
        )
        number = int(data["number"])
        if labels:
            try:
                await self._request(
                    "POST",
                    self._path(repository, f"/issues/{number}/labels"),
                    json={"labels": labels},
                )
            except HostError as exc:
                logger.warning("Could not label PR #%d in %s: %s", number, repository, exc)
        return PullRequest(
            number=number,
            url=str(data.get("html_url", "")),
            title=str(data.get("title", title)),
            head=head,
            base=base,
            state=str(data.get("state", "open")),
            labels=list(labels or []),
        )

    async def get_changed_files(self, repository: str, pr_number: int) -> list[ChangedFile]:
        data = await self._request("GET", self._path(repository, f"/pulls/{pr_number}/files"))
        return [
            ChangedFile(
                filename=str(item.get("filename", "")),
                status=str(item.get("status", "modified")),
                additions=int(item.get("additions", 0)),
                deletions=int(item.get("deletions", 0)),
                patch=str(item.get("patch") or ""),
            )
            for item in data or []
        ]

    async def submit_review(
        self,
        repository: str,
        pr_number: int,
        submission: ReviewSubmission,
        *,
        reviewer: str,
    ) -> None:
        await self._request(
            "POST",
            self._path(repository, f"/pulls/{pr_number}/reviews"),
            json={"body": submission.body, "event": submission.event},
        )
        logger.info(
            "Submitted %s review on %s#%d for %s",
            submission.event,
            repository,
            pr_number,
            reviewer,
        )

    async def get_status(self, repository: str, pr_number: int) -> PullRequestStatus:
        pull = await self._request("GET", self._path(repository, f"/pulls/{pr_number}"))
        reviews = await self._request(
            "GET", self._path(repository, f"/pulls/{pr_number}/reviews")
        )
        state = "merged" if pull.get("merged") else str(pull.get("state", "open"))
        return PullRequestStatus(
            mergeable=bool(pull.get("mergeable")),
            state=state,
            reviews=[
                SubmittedReview(
                    reviewer=str((item.get("user") or {}).get("login", "")),
                    state=item.get("state", "COMMENTED"),
                    body=str(item.get("body") or ""),
                )
                for item in reviews or []
            ],
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
        data = await self._request(
            "PUT",
            self._path(repository, f"/pulls/{pr_number}/merge"),
            json={"commit_title": title, "commit_message": message, "merge_method": method},
        )
        if not data or not data.get("merged", True):
            raise HostError(
                f"Pull request #{pr_number} was not merged",
                reason="not_mergeable",
            )
        return str(data.get("sha", ""))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

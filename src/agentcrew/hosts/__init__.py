from agentcrew.hosts.base import (
    ChangedFile,
    FileChange,
    PullRequest,
    PullRequestStatus,
    RepositoryHost,
    ReviewSubmission,
    SubmittedReview,
)
from agentcrew.hosts.github import GitHubHost
from agentcrew.hosts.memory import InMemoryHost

__all__ = [
    "ChangedFile",
    "FileChange",
    "GitHubHost",
    "InMemoryHost",
    "PullRequest",
    "PullRequestStatus",
    "RepositoryHost",
    "ReviewSubmission",
    "SubmittedReview",
]

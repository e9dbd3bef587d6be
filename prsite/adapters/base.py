"""Abstract base for Git platform adapters."""

from abc import ABC, abstractmethod

from prsite.errors import GitPlatformError
from prsite.models import PRInstanceData

__all__ = ["GitPlatformAdapter", "GitPlatformError"]


class GitPlatformAdapter(ABC):
    """Interface the bot needs from a Git hosting platform."""

    @abstractmethod
    def get_authenticated_login(self) -> str:
        """Return the login of the account the token belongs to."""
        ...

    @abstractmethod
    def create_comment(self, repo: str, issue_number: int, body: str) -> int:
        """Post a comment on an issue or PR thread; return the comment id."""
        ...

    @abstractmethod
    def get_pr(self, repo: str, pr_number: int) -> PRInstanceData:
        """Fetch the PR fields needed to spawn an instance."""
        ...

    @abstractmethod
    def download_archive(self, repo: str, ref: str) -> bytes:
        """Download a zip archive of repo at ref."""
        ...

"""Git platform adapters (base and GitHub implementation)."""

from prsite.adapters.base import GitPlatformAdapter
from prsite.adapters.github import GitHubAdapter
from prsite.errors import GitPlatformError

__all__ = ["GitPlatformAdapter", "GitPlatformError", "GitHubAdapter"]

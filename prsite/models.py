"""Data models for site instances and comment targets (Pydantic)."""

from datetime import UTC, datetime
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class InstanceState(str, Enum):
    """Lifecycle state of a site instance.

    ABSENT is never stored; a PR without a registry entry is absent.
    """

    ABSENT = "absent"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    UPDATING = "updating"
    FAILED = "failed"
    REMOVED = "removed"


class CommentTarget(BaseModel):
    """Pull request (or issue) thread a comment is posted to."""

    model_config = ConfigDict(frozen=True)

    pr_id: int
    repo_account: str
    repo_name: str

    @property
    def repo(self) -> str:
        """Repository full name (owner/repo)."""
        return f"{self.repo_account}/{self.repo_name}"


class PRInstanceData(BaseModel):
    """Pull request data needed to spawn an instance."""

    model_config = ConfigDict(frozen=True)

    pr_id: int
    branch: str
    source_repo_full_name: str = Field(description="Head repository (may be a fork)")
    pr_repo_account: str = Field(description="Owner of the repository the PR targets")
    pr_repo_name: str
    pr_author: str

    @property
    def target(self) -> CommentTarget:
        return CommentTarget(pr_id=self.pr_id, repo_account=self.pr_repo_account, repo_name=self.pr_repo_name)


class InstanceRecord(BaseModel):
    """One site instance per pull request.

    Identity fields and assigned_ports never change after spawn; only
    state and updated_at are mutated by lifecycle transitions.
    """

    model_config = ConfigDict(validate_assignment=True)

    pr_id: int
    branch: str
    source_repo_full_name: str
    pr_repo_account: str
    pr_repo_name: str
    pr_author: str
    assigned_ports: List[int] = Field(min_length=1)
    state: InstanceState = InstanceState.PROVISIONING
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_data(cls, data: PRInstanceData, ports: List[int]) -> "InstanceRecord":
        return cls(**data.model_dump(), assigned_ports=ports)

    @property
    def assigned_port(self) -> int:
        """First port of the block; the one the site listens on."""
        return self.assigned_ports[0]

    @property
    def target(self) -> CommentTarget:
        return CommentTarget(pr_id=self.pr_id, repo_account=self.pr_repo_account, repo_name=self.pr_repo_name)

    def touch(self) -> None:
        """Mark activity now (used by the idle reaper)."""
        self.updated_at = datetime.now(UTC)

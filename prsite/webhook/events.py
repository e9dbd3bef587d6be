"""Event schemas for the GitHub 'pull_request' and 'issue_comment' webhooks.

Only the fields the bot uses are modelled. Payloads missing them raise
EventValidationError.
"""

from typing import Any, Dict

from pydantic import BaseModel, ValidationError

from prsite.errors import EventValidationError
from prsite.models import CommentTarget, PRInstanceData


class PullRequestEvent(BaseModel):
    """pull_request webhook (opened, reopened, synchronize, closed, ...)."""

    action: str
    data: PRInstanceData


class IssueCommentEvent(BaseModel):
    """issue_comment webhook on an issue or a pull request."""

    action: str
    issue_number: int
    repo_account: str
    repo_name: str
    author: str
    body: str = ""
    is_pull_request: bool = False
    state: str = "open"

    @property
    def target(self) -> CommentTarget:
        return CommentTarget(pr_id=self.issue_number, repo_account=self.repo_account, repo_name=self.repo_name)

    @property
    def repo(self) -> str:
        return f"{self.repo_account}/{self.repo_name}"


def _get(payload: Dict[str, Any], *path: str) -> Any:
    value: Any = payload
    for key in path:
        if not isinstance(value, dict) or value.get(key) is None:
            raise EventValidationError(f"payload missing {'.'.join(path)}")
        value = value[key]
    return value


def parse_pull_request(payload: Dict[str, Any]) -> PullRequestEvent:
    """Build PullRequestEvent from a pull_request webhook payload.

    A deleted fork leaves head.repo null; the base repository is used then.
    """
    head = _get(payload, "pull_request", "head")
    head_repo = head.get("repo") or _get(payload, "repository")
    try:
        return PullRequestEvent(
            action=_get(payload, "action"),
            data=PRInstanceData(
                pr_id=_get(payload, "number"),
                branch=_get(payload, "pull_request", "head", "ref"),
                source_repo_full_name=_get(head_repo, "full_name"),
                pr_repo_account=_get(payload, "repository", "owner", "login"),
                pr_repo_name=_get(payload, "repository", "name"),
                pr_author=_get(payload, "sender", "login"),
            ),
        )
    except ValidationError as e:
        raise EventValidationError(f"invalid pull_request payload: {e}") from e


def parse_issue_comment(payload: Dict[str, Any]) -> IssueCommentEvent:
    """Build IssueCommentEvent from an issue_comment webhook payload."""
    issue = _get(payload, "issue")
    comment = payload.get("comment") or {}
    try:
        return IssueCommentEvent(
            action=_get(payload, "action"),
            issue_number=_get(payload, "issue", "number"),
            repo_account=_get(payload, "repository", "owner", "login"),
            repo_name=_get(payload, "repository", "name"),
            author=_get(payload, "sender", "login"),
            body=comment.get("body") or "",
            is_pull_request=issue.get("pull_request") is not None,
            state=issue.get("state") or "open",
        )
    except ValidationError as e:
        raise EventValidationError(f"invalid issue_comment payload: {e}") from e

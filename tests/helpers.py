"""Test helpers shared across test modules."""

from unittest.mock import MagicMock

from prsite.models import PRInstanceData


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_pr_data(pr_id: int = 7, **overrides) -> PRInstanceData:
    fields = {
        "pr_id": pr_id,
        "branch": "feature/login",
        "source_repo_full_name": "alice/site",
        "pr_repo_account": "acme",
        "pr_repo_name": "site",
        "pr_author": "alice",
    }
    fields.update(overrides)
    return PRInstanceData(**fields)


def posted_bodies(adapter: MagicMock) -> list[str]:
    """Bodies of all comments posted through the mocked adapter."""
    return [c.args[2] for c in adapter.create_comment.call_args_list]

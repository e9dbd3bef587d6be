"""Tests for comment commands."""

from unittest.mock import MagicMock

import pytest
from helpers import make_pr_data, posted_bodies
from payloads import issue_comment_payload

from prsite.commands import CommandParser
from prsite.comments import CommentComposer
from prsite.errors import GitPlatformError
from prsite.instances import InstanceManager
from prsite.models import InstanceState
from prsite.webhook.events import parse_issue_comment


@pytest.fixture
def parser(manager: InstanceManager, composer: CommentComposer, adapter: MagicMock) -> CommandParser:
    return CommandParser(manager, composer, adapter, lambda: "prsite-bot")


def _event(body: str, **kwargs):
    return parse_issue_comment(issue_comment_payload(body, **kwargs))


@pytest.mark.parametrize(
    "body, verb",
    [
        ("@prsite-bot rebuild", "rebuild"),
        ("thanks!\n  @PRSITE-BOT Status please", "status"),
        ("@prsite-bot", ""),
        ("ping @prsite-bot rebuild", None),
        ("@prsite-botty rebuild", None),
        ("no mention at all", None),
    ],
)
def test_extract_verb(parser: CommandParser, body: str, verb: str | None) -> None:
    """Only a line starting with the exact bot mention is a command."""
    assert parser.extract_verb(body) == verb


def test_non_command_comment_ignored(parser: CommandParser, adapter: MagicMock) -> None:
    """Ordinary discussion gets no reply."""
    assert parser.parse(_event("looks good to me")) is None
    adapter.create_comment.assert_not_called()


def test_unknown_verb_replies_with_help(parser: CommandParser, adapter: MagicMock) -> None:
    """Unrecognised verbs produce the generic help reply."""
    assert parser.parse(_event("@prsite-bot deploy")) == "deploy"
    body = posted_bodies(adapter)[0]
    assert body.startswith("I don't know the command `deploy`")
    assert "`@prsite-bot rebuild`" in body


def test_help_lists_commands(parser: CommandParser, adapter: MagicMock) -> None:
    """help replies with the command list."""
    parser.parse(_event("@prsite-bot help"))
    assert posted_bodies(adapter)[0].startswith("Available commands:")


def test_rebuild_existing_instance_edits(
    parser: CommandParser, manager: InstanceManager, builder: MagicMock
) -> None:
    """rebuild on a live instance rebuilds in place."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    parser.parse(_event("@prsite-bot rebuild"))
    builder.rebuild.assert_called_once()
    assert manager.get_instance(7).state == InstanceState.RUNNING


def test_rebuild_absent_instance_fetches_pr_and_spawns(
    parser: CommandParser, manager: InstanceManager, adapter: MagicMock, builder: MagicMock
) -> None:
    """rebuild without instance fetches PR data and provisions a new one."""
    adapter.get_pr.return_value = make_pr_data(pr_id=7)
    parser.parse(_event("@prsite-bot rebuild"))
    adapter.get_pr.assert_called_once_with("acme/site", 7)
    builder.provision.assert_called_once()
    assert manager.check_for_instance(7)


def test_rebuild_pr_fetch_failure_reported_in_log_only(
    parser: CommandParser, manager: InstanceManager, adapter: MagicMock
) -> None:
    """A failed PR lookup leaves no instance and does not raise."""
    adapter.get_pr.side_effect = GitPlatformError("404: Not Found")
    parser.parse(_event("@prsite-bot rebuild"))
    assert manager.check_for_instance(7) is False


def test_status_without_instance(parser: CommandParser, adapter: MagicMock) -> None:
    """status replies that there is no preview."""
    parser.parse(_event("@prsite-bot status"))
    assert posted_bodies(adapter)[0].startswith("There is no preview for PR #7")


def test_status_with_instance_links_port(
    parser: CommandParser, manager: InstanceManager, adapter: MagicMock
) -> None:
    """status replies with the preview link."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    adapter.create_comment.reset_mock()
    parser.parse(_event("@prsite-bot status"))
    assert "http://preview.example.com:9000" in posted_bodies(adapter)[0]


def test_stop_removes_instance(parser: CommandParser, manager: InstanceManager, adapter: MagicMock) -> None:
    """stop tears the instance down and confirms."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    parser.parse(_event("@prsite-bot stop"))
    assert manager.check_for_instance(7) is False
    assert posted_bodies(adapter)[-1] == "The preview for PR #7 has been removed."


def test_non_pr_response_when_addressed(parser: CommandParser, adapter: MagicMock) -> None:
    """On plain issues the bot explains previews are PR-only."""
    parser.send_non_pr_response(_event("@prsite-bot rebuild", is_pr=False, author="carol"))
    body = posted_bodies(adapter)[0]
    assert body.startswith("Hey @carol, previews only exist for pull requests")


def test_non_pr_response_skipped_when_not_addressed(parser: CommandParser, adapter: MagicMock) -> None:
    """Issue chatter that does not mention the bot gets no reply."""
    parser.send_non_pr_response(_event("unrelated", is_pr=False))
    adapter.create_comment.assert_not_called()


@pytest.mark.parametrize(
    "body, shown",
    [
        ("@prsite-bot ~~{PRID}", "prid"),
        ("@prsite-bot ~~{}", "(none)"),
        ("@prsite-bot " + "x" * 100, "x" * 32),
    ],
)
def test_unknown_verb_echo_is_sanitised(parser: CommandParser, adapter: MagicMock, body: str, shown: str) -> None:
    """Comment text never reaches the template as a placeholder token."""
    parser.parse(_event(body))
    reply = posted_bodies(adapter)[0]
    assert reply.startswith(f"I don't know the command `{shown}`")
    assert "~~{" not in reply

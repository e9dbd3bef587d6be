"""Chat-style commands in pull request comments.

A command is a comment line addressed to the bot: ``@<bot> <verb>``.
Comments without such a line are not commands and are ignored.
"""

import logging
import re
from typing import Callable, Dict

from prsite.adapters.base import GitPlatformAdapter
from prsite.comments import CommentComposer
from prsite.errors import ExternalAPIError
from prsite.instances import InstanceManager
from prsite.webhook.events import IssueCommentEvent

LOG = logging.getLogger("prsite.commands")

# What an unknown verb may show when echoed back into a reply
ECHO_RE = re.compile(r"[^\w.-]")
ECHO_MAX = 32


def echo_verb(verb: str) -> str:
    """Unknown verb as quoted in the reply; template tokens cannot survive."""
    return ECHO_RE.sub("", verb)[:ECHO_MAX] or "(none)"


class CommandParser:
    """Recognises command verbs and runs the matching instance action."""

    def __init__(
        self,
        instances: InstanceManager,
        composer: CommentComposer,
        adapter: GitPlatformAdapter,
        bot_login: Callable[[], str | None],
    ) -> None:
        self._instances = instances
        self._composer = composer
        self._adapter = adapter
        self._bot_login = bot_login
        self.verbs: Dict[str, Callable[[IssueCommentEvent], None]] = {
            "rebuild": self._rebuild,
            "status": self._status,
            "stop": self._stop,
            "help": self._help,
        }

    def extract_verb(self, body: str) -> str | None:
        """Return the lowercased word after the first ``@<bot>`` mention at
        the start of a line ("" when the mention has no verb)."""
        login = self._bot_login()
        if not login:
            return None
        # App logins end in "[bot]", so \b cannot delimit the mention
        pattern = re.compile(rf"^[ \t]*@{re.escape(login)}(?![\w-])[ \t]*(\S*)", re.IGNORECASE | re.MULTILINE)
        match = pattern.search(body)
        if match is None:
            return None
        return match.group(1).lower()

    def parse(self, event: IssueCommentEvent) -> str | None:
        """Run the command in an open PR's comment; return the verb handled
        (None when the comment is not a command)."""
        verb = self.extract_verb(event.body)
        if verb is None:
            return None
        handler = self.verbs.get(verb)
        if handler is None:
            LOG.info("PR #%s: unknown command %r from %s", event.issue_number, verb, event.author)
            self._reply(event, "unknown_command", command=echo_verb(verb))
            return verb
        LOG.info("PR #%s: command %s from %s", event.issue_number, verb, event.author)
        handler(event)
        return verb

    def send_non_pr_response(self, event: IssueCommentEvent) -> None:
        """Explain that previews exist only for pull requests (only when the
        bot was addressed)."""
        if self.extract_verb(event.body) is None:
            return
        self._reply(event, "non_pr_response")

    def _reply(self, event: IssueCommentEvent, identifier: str, **extra) -> None:
        context = self._composer.context_for(
            pr_id=event.issue_number,
            pr_repo_account=event.repo_account,
            pr_repo_name=event.repo_name,
            pr_author=event.author,
            **extra,
        )
        self._composer.notify(event.target, identifier, context)

    def _rebuild(self, event: IssueCommentEvent) -> None:
        self._reply(event, "rebuild_started")
        with self._instances.lock_for(event.issue_number):
            if self._instances.check_for_instance(event.issue_number):
                self._instances.edit(event.issue_number)
                return
            try:
                data = self._adapter.get_pr(event.repo, event.issue_number)
            except ExternalAPIError as e:
                LOG.warning("PR #%s: cannot fetch PR for rebuild: %s", event.issue_number, e)
                return
            self._instances.rebuild(data)

    def _status(self, event: IssueCommentEvent) -> None:
        if not self._instances.check_for_instance(event.issue_number):
            self._reply(event, "no_instance")
            return
        record = self._instances.get_instance(event.issue_number)
        self._composer.notify(record.target, "instance_status", self._composer.context_for(record))

    def _stop(self, event: IssueCommentEvent) -> None:
        with self._instances.lock_for(event.issue_number):
            if not self._instances.check_for_instance(event.issue_number):
                self._reply(event, "no_instance")
                return
            record = self._instances.remove(event.issue_number)
        self._composer.notify(record.target, "removed", self._composer.context_for(record))

    def _help(self, event: IssueCommentEvent) -> None:
        self._reply(event, "command_help")

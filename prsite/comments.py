"""Templated status comments posted back to pull requests.

Templates are static text with placeholders of the form ``~~{Name}``.
Rendering repeatedly replaces the leftmost placeholder with the matching
context value until none remain. Substituted values are rescanned, so a
context value must never contain a ``~~{...}`` literal; such values are
rejected with UnsafeTemplateValue.
"""

import logging
import re
from operator import attrgetter
from typing import Any, Callable, Dict, Mapping

from pydantic import BaseModel

from prsite.adapters.base import GitPlatformAdapter
from prsite.errors import (
    DuplicateTemplate,
    ExternalAPIError,
    TemplateError,
    TemplateNotFound,
    UnknownVariable,
    UnsafeTemplateValue,
)
from prsite.models import CommentTarget, InstanceRecord

LOG = logging.getLogger("prsite.comments")

PLACEHOLDER_RE = re.compile(r"~~\{(.*?)\}")


def fancify(text: str) -> str:
    """Strip leading whitespace from every line (lets templates be indented
    in source)."""
    return "\n".join(line.lstrip() for line in text.split("\n"))


class CommentContext(BaseModel):
    """Values available to templates; fields left as None are not offered."""

    pr_id: int | None = None
    branch: str | None = None
    source_repo_full_name: str | None = None
    pr_repo_account: str | None = None
    pr_repo_name: str | None = None
    pr_author: str | None = None
    bot_login: str | None = None
    link_domain: str | None = None
    assigned_port: int | None = None
    command: str | None = None


# Placeholder name -> accessor over CommentContext
PLACEHOLDERS: Dict[str, Callable[[CommentContext], Any]] = {
    "PRID": attrgetter("pr_id"),
    "Branch": attrgetter("branch"),
    "SourceRepoFullName": attrgetter("source_repo_full_name"),
    "PRRepoAccount": attrgetter("pr_repo_account"),
    "PRRepoName": attrgetter("pr_repo_name"),
    "PRAuthor": attrgetter("pr_author"),
    "BotLoginUsername": attrgetter("bot_login"),
    "LinkDomain": attrgetter("link_domain"),
    "AssignedPort": attrgetter("assigned_port"),
    "Command": attrgetter("command"),
}


def context_variables(context: CommentContext) -> Dict[str, Any]:
    """Map placeholder names to the values set in context."""
    variables = {}
    for name, accessor in PLACEHOLDERS.items():
        value = accessor(context)
        if value is not None:
            variables[name] = value
    return variables


class CommentTemplate:
    """Registered comment text with ``~~{Name}`` placeholders."""

    def __init__(self, identifier: str, text: str) -> None:
        self.identifier = identifier
        self.text = text

    def placeholders(self) -> list[str]:
        return PLACEHOLDER_RE.findall(self.text)

    def build_message(self, variables: Mapping[str, Any]) -> str:
        """Substitute placeholders leftmost-first, rescanning after each
        replacement."""
        text = self.text
        while True:
            match = PLACEHOLDER_RE.search(text)
            if match is None:
                return text
            name = match.group(1)
            if name not in variables:
                raise UnknownVariable(name)
            replacement = str(variables[name])
            if PLACEHOLDER_RE.search(replacement):
                raise UnsafeTemplateValue(f"Value for {name} contains a placeholder token: {replacement!r}")
            text = text[: match.start()] + replacement + text[match.end() :]


class TemplateRegistry:
    """Append-only mapping of template identifier to CommentTemplate.

    Filled during startup; every placeholder must name a known accessor.
    """

    def __init__(self, known_placeholders: Mapping[str, Any] = PLACEHOLDERS) -> None:
        self._known = set(known_placeholders)
        self._templates: Dict[str, CommentTemplate] = {}

    def register(self, identifier: str, text: str) -> CommentTemplate:
        if identifier in self._templates:
            raise DuplicateTemplate(f"Template identifier {identifier!r} already claimed")
        template = CommentTemplate(identifier, text)
        unknown = [p for p in template.placeholders() if p not in self._known]
        if unknown:
            raise TemplateError(f"Template {identifier!r} uses unknown placeholders: {unknown}")
        self._templates[identifier] = template
        return template

    def get(self, identifier: str) -> CommentTemplate:
        try:
            return self._templates[identifier]
        except KeyError:
            raise TemplateNotFound(identifier) from None

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def render(self, identifier: str, variables: Mapping[str, Any]) -> str:
        return self.get(identifier).build_message(variables)


DEFAULT_TEMPLATES = {
    "new_default": """
        Hey there, @~~{PRAuthor}!
        A preview of `~~{Branch}` is up at http://~~{LinkDomain}:~~{AssignedPort}

        It is rebuilt on every push and removed when this PR is closed.
        Comment `@~~{BotLoginUsername} help` to see what else I can do.
    """,
    "edit": """
        New commits on `~~{Branch}` have been deployed.
        Preview: http://~~{LinkDomain}:~~{AssignedPort}
    """,
    "new_no_resources": """
        Sorry @~~{PRAuthor}, all preview slots are in use right now, so no preview was created for this PR.
        Push a new commit or comment `@~~{BotLoginUsername} rebuild` to try again later.
    """,
    "build_failed": """
        The preview for `~~{Branch}` could not be built.
        Comment `@~~{BotLoginUsername} rebuild` to retry.
    """,
    "removed": """
        The preview for PR #~~{PRID} has been removed.
    """,
    "instance_expired": """
        The preview for PR #~~{PRID} was idle too long and has been removed.
        Push a new commit or comment `@~~{BotLoginUsername} rebuild` to bring it back.
    """,
    "instance_status": """
        Preview for `~~{Branch}` is at http://~~{LinkDomain}:~~{AssignedPort}
    """,
    "no_instance": """
        There is no preview for PR #~~{PRID} right now.
        Comment `@~~{BotLoginUsername} rebuild` to create one.
    """,
    "rebuild_started": """
        Rebuilding the preview for PR #~~{PRID}, @~~{PRAuthor}.
    """,
    "command_help": """
        Available commands:

        `@~~{BotLoginUsername} rebuild` - rebuild (or recreate) the preview
        `@~~{BotLoginUsername} status` - show the preview link
        `@~~{BotLoginUsername} stop` - remove the preview
        `@~~{BotLoginUsername} help` - show this message
    """,
    "unknown_command": """
        I don't know the command `~~{Command}`. Available commands:

        `@~~{BotLoginUsername} rebuild` - rebuild (or recreate) the preview
        `@~~{BotLoginUsername} status` - show the preview link
        `@~~{BotLoginUsername} stop` - remove the preview
        `@~~{BotLoginUsername} help` - show this message
    """,
    "non_pr_response": """
        Hey @~~{PRAuthor}, previews only exist for pull requests, so there is nothing I can do on an issue.
    """,
}


def register_default_templates(registry: TemplateRegistry) -> TemplateRegistry:
    for identifier, text in DEFAULT_TEMPLATES.items():
        registry.register(identifier, fancify(text).strip())
    return registry


class CommentComposer:
    """Renders templates from instance data and posts them via the Git
    platform adapter."""

    def __init__(
        self,
        templates: TemplateRegistry,
        adapter: GitPlatformAdapter,
        link_domain: str,
        bot_login: Callable[[], str | None],
    ) -> None:
        self.templates = templates
        self._adapter = adapter
        self._link_domain = link_domain
        self._bot_login = bot_login

    def context_for(self, record: InstanceRecord | None = None, **extra: Any) -> CommentContext:
        """Instance fields merged with bot login, link domain and assigned
        port."""
        data: Dict[str, Any] = {"bot_login": self._bot_login(), "link_domain": self._link_domain}
        if record is not None:
            data.update(
                pr_id=record.pr_id,
                branch=record.branch,
                source_repo_full_name=record.source_repo_full_name,
                pr_repo_account=record.pr_repo_account,
                pr_repo_name=record.pr_repo_name,
                pr_author=record.pr_author,
                assigned_port=record.assigned_port,
            )
        data.update(extra)
        return CommentContext(**data)

    def build_message(self, identifier: str, context: CommentContext | Mapping[str, Any]) -> str:
        variables = context_variables(context) if isinstance(context, CommentContext) else context
        return self.templates.render(identifier, variables)

    def send_comment(self, target: CommentTarget, text: str, use_fancify: bool = False) -> bool:
        """Post text on the target thread; ExternalAPIError propagates."""
        if use_fancify:
            text = fancify(text)
        self._adapter.create_comment(target.repo, target.pr_id, text)
        LOG.debug("Commented on %s#%s", target.repo, target.pr_id)
        return True

    def notify(self, target: CommentTarget, identifier: str, context: CommentContext) -> bool:
        """Render and post a template, best effort.

        Delivery failures are logged and reported as False; template
        defects still raise.
        """
        text = self.build_message(identifier, context)
        try:
            return self.send_comment(target, text)
        except ExternalAPIError as e:
            LOG.warning("Failed to post %s comment on %s#%s: %s", identifier, target.repo, target.pr_id, e)
            return False

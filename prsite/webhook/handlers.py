"""Listener bodies for GitHub webhook events.

pull_request events drive the instance lifecycle (after a delay, so GitHub
has time to build the branch archive); issue_comment events go to the
command parser.
"""

import logging
from typing import Any, Dict

from prsite.errors import EventValidationError
from prsite.instances import PR_ACTIONS
from prsite.webhook.events import parse_issue_comment, parse_pull_request
from prsite.webhook.router import HandlerContext, WebhookRouter

LOG = logging.getLogger("prsite.webhook.handlers")

# GitHub needs roughly this long to generate a fresh zipball for the branch
PR_DELAY_MS = 15000


def handle_pull_request(ctx: HandlerContext, payload: Dict[str, Any]) -> None:
    """opened/reopened/synchronize/closed -> InstanceManager.handle_action."""
    if payload.get("action") not in PR_ACTIONS:
        LOG.debug("Ignoring pull_request action %s", payload.get("action"))
        return
    try:
        event = parse_pull_request(payload)
    except EventValidationError as e:
        LOG.warning("Dropping pull_request delivery %s: %s", ctx.delivery_id, e)
        return
    LOG.info("Valid hook received: %s | PR #%s", event.action, event.data.pr_id)
    ctx.app.instances.handle_action(event.action, event.data, accepted_at=ctx.accepted_at)


def handle_issue_comment(ctx: HandlerContext, payload: Dict[str, Any]) -> None:
    """New comments: commands on open PRs, a short reply on plain issues."""
    try:
        event = parse_issue_comment(payload)
    except EventValidationError as e:
        LOG.warning("Dropping issue_comment delivery %s: %s", ctx.delivery_id, e)
        return
    if event.author == ctx.app.bot_login():
        return
    if event.action != "created":
        return
    if not event.is_pull_request:
        ctx.app.commands.send_non_pr_response(event)
        return
    if event.state == "closed":
        return
    ctx.app.commands.parse(event)


def register_default_listeners(router: WebhookRouter, pr_delay_ms: int = PR_DELAY_MS) -> WebhookRouter:
    """Register the comment listener (immediate) and the pull_request
    listener (delayed)."""
    return router.add_listener("issue_comment", handle_issue_comment).add_listener(
        "pull_request", handle_pull_request, pr_delay_ms
    )

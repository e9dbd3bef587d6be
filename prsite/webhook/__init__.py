"""Webhook server, router and listeners for GitHub events."""

from prsite.webhook.handlers import register_default_listeners
from prsite.webhook.router import HandlerContext, WebhookRouter
from prsite.webhook.server import run_webhook_server, verify_signature

__all__ = ["HandlerContext", "WebhookRouter", "register_default_listeners", "run_webhook_server", "verify_signature"]

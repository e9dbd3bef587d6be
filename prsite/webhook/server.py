"""Webhook HTTP server: POST /hook and a GET / liveness check.

Deliveries are authenticated with the shared secret (X-Hub-Signature-256),
acknowledged with 200 straight away, and only then handed to the router.
Processing outcomes never show up in the HTTP response.
"""

import hashlib
import hmac
import logging
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any

from prsite.webhook.router import WebhookRouter

LOG = logging.getLogger("prsite.webhook.server")

SIGNATURE_HEADER = "X-Hub-Signature-256"


def sign(secret: str, body: bytes) -> str:
    """Signature GitHub sends for body: sha256=<hex hmac>."""
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Check X-Hub-Signature-256 against the shared secret.

    An empty secret rejects every delivery.
    """
    if not secret or not signature_header or not signature_header.startswith("sha256="):
        return False
    return hmac.compare_digest(sign(secret, body), signature_header)


class WebhookHandler(BaseHTTPRequestHandler):
    """Handle GET / (and /health) and POST to the webhook path."""

    router: WebhookRouter
    secret: str = ""
    webhook_path: str = "/hook"

    def do_GET(self) -> None:
        if self.path in ("/", "/health"):
            self._respond(200)
            return
        self._respond(404)

    def do_POST(self) -> None:
        if self.path != self.webhook_path:
            self._respond(404)
            return
        length = int(self.headers.get("Content-Length", 0) or 0)
        body = self.rfile.read(length) if length else b""
        if not verify_signature(self.secret, body, self.headers.get(SIGNATURE_HEADER)):
            LOG.warning("Rejected delivery %s: bad signature", self.headers.get("X-GitHub-Delivery", "?"))
            self._respond(401)
            return
        self._respond(200)
        try:
            self.router.check_incoming(self.headers, body)
        except Exception as e:
            LOG.exception("Failed to route delivery %s: %s", self.headers.get("X-GitHub-Delivery", "?"), e)

    def _respond(self, status: int) -> None:
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()
        self.wfile.flush()

    def log_message(self, format: str, *args: Any) -> None:
        LOG.debug(format, *args)


def make_webhook_server(
    router: WebhookRouter,
    secret: str,
    host: str = "0.0.0.0",
    port: int = 8000,
    webhook_path: str = "/hook",
) -> HTTPServer:
    """Bind an HTTPServer whose handler class carries router, secret and
    path."""
    handler = type(
        "BoundWebhookHandler",
        (WebhookHandler,),
        {"router": router, "secret": secret, "webhook_path": webhook_path},
    )
    return HTTPServer((host, port), handler)


def run_webhook_server(router: WebhookRouter, secret: str, host: str, port: int, webhook_path: str = "/hook") -> None:
    """Run HTTP server for webhooks and liveness checks."""
    if not secret:
        LOG.warning("Webhook secret is empty; every delivery will be rejected")
    server = make_webhook_server(router, secret, host, port, webhook_path)
    LOG.info("Webhook server listening on %s:%s%s", host, port, webhook_path)
    server.serve_forever()

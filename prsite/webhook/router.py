"""Route inbound webhook deliveries to registered listeners.

Listeners are registered at startup as (event name, handler, delay). Each
matching delivery schedules handler(context, payload) on the
DelayedScheduler after the listener's delay; nothing runs on the request
thread.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping
from urllib.parse import parse_qs

from prsite.errors import EventValidationError
from prsite.scheduler import DelayedScheduler, ScheduledTask

LOG = logging.getLogger("prsite.webhook.router")

EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"


@dataclass(frozen=True)
class HandlerContext:
    """Passed to every listener: the application plus delivery metadata."""

    app: Any
    event: str
    delivery_id: str
    accepted_at: float


WebhookCallback = Callable[[HandlerContext, Dict[str, Any]], None]


@dataclass(frozen=True)
class WebhookRegistration:
    event_name: str
    handler: WebhookCallback
    delay_ms: int = 0


def parse_body(body: bytes, content_type: str = "") -> Dict[str, Any]:
    """Parse webhook body as JSON.

    Supports raw JSON and application/x-www-form-urlencoded (payload=...).
    """
    if not body:
        return {}
    try:
        if "application/x-www-form-urlencoded" in content_type:
            parsed = parse_qs(body.decode("utf-8", errors="replace"), keep_blank_values=True)
            raw = (parsed.get("payload") or [None])[0]
            if raw is None:
                return {}
            payload = json.loads(raw)
        else:
            payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EventValidationError(f"invalid webhook body: {e}") from e
    if not isinstance(payload, dict):
        raise EventValidationError("webhook body is not a JSON object")
    return payload


def event_key(payload: Dict[str, Any]) -> int | None:
    """PR or issue number a payload refers to (used to cancel pending work)."""
    for section in ("pull_request", "issue"):
        number = (payload.get(section) or {}).get("number")
        if isinstance(number, int):
            return number
    number = payload.get("number")
    return number if isinstance(number, int) else None


class WebhookRouter:
    """Table of listener registrations plus dispatch of incoming deliveries."""

    def __init__(self, scheduler: DelayedScheduler, app: Any = None) -> None:
        self._scheduler = scheduler
        self.app = app
        self._registrations: List[WebhookRegistration] = []

    @property
    def registrations(self) -> List[WebhookRegistration]:
        return list(self._registrations)

    def add_listener(self, event_name: str, handler: WebhookCallback, delay_ms: int = 0) -> "WebhookRouter":
        if delay_ms < 0:
            raise ValueError("delay_ms must not be negative")
        self._registrations.append(WebhookRegistration(event_name, handler, delay_ms))
        LOG.debug("Listener %s registered for %s (delay %sms)", getattr(handler, "__name__", handler), event_name, delay_ms)
        return self

    def check_incoming(self, headers: Mapping[str, str], body: bytes) -> List[ScheduledTask]:
        """Schedule every listener registered for the delivery's event type.

        Unregistered events and unparseable bodies are dropped.
        """
        event = headers.get(EVENT_HEADER, "")
        matching = [r for r in self._registrations if r.event_name == event]
        if not matching:
            LOG.debug("No listener for event %r", event)
            return []
        try:
            payload = parse_body(body, headers.get("Content-Type", ""))
        except EventValidationError as e:
            LOG.warning("Dropping %s delivery: %s", event, e)
            return []
        return self.dispatch(event, payload, delivery_id=headers.get(DELIVERY_HEADER, ""))

    def dispatch(self, event: str, payload: Dict[str, Any], delivery_id: str = "") -> List[ScheduledTask]:
        accepted_at = self._scheduler.now()
        context = HandlerContext(app=self.app, event=event, delivery_id=delivery_id, accepted_at=accepted_at)
        key = event_key(payload)
        tasks = []
        for reg in self._registrations:
            if reg.event_name != event:
                continue
            tasks.append(
                self._scheduler.schedule(
                    reg.delay_ms / 1000,
                    reg.handler,
                    context,
                    payload,
                    key=key,
                    accepted_at=accepted_at,
                    name=f"{event}:{getattr(reg.handler, '__name__', 'handler')}",
                )
            )
        LOG.info("Accepted %s (action=%s, key=%s): %d listener(s) scheduled", event, payload.get("action"), key, len(tasks))
        return tasks

"""
Post-commit notification hooks.

State changes (document status transitions, finished crawl jobs) are recorded
as events on the unit of work while the transaction is open.  Only after the
transaction commits are they handed to the registered hooks.

Delivery guarantee: at-most-once.  Each event is offered to each hook once;
a hook that raises is logged and the event is dropped for that hook, never
retried.  Rolling back the unit of work discards queued events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    name:       str
    payload:    dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict[str, Any]:
        return {
            "event":      self.name,
            "payload":    self.payload,
            "emitted_at": self.emitted_at.isoformat(),
        }


Hook = Callable[[Event], Awaitable[None]]


class PostCommitHooks:
    """Explicit hook list plus the queue of events waiting for commit."""

    def __init__(self, hooks: list[Hook] | None = None) -> None:
        self._hooks:   list[Hook]  = list(hooks or [])
        self._pending: list[Event] = []

    def register(self, hook: Hook) -> None:
        self._hooks.append(hook)

    def emit(self, name: str, **payload: Any) -> None:
        self._pending.append(Event(name=name, payload=payload))

    @property
    def pending(self) -> list[Event]:
        return list(self._pending)

    def discard(self) -> None:
        self._pending.clear()

    async def flush(self) -> int:
        """Deliver queued events; returns the number of successful deliveries."""
        events, self._pending = self._pending, []
        delivered = 0
        for event in events:
            for hook in self._hooks:
                try:
                    await hook(event)
                    delivered += 1
                except Exception:
                    logger.exception(
                        "Post-commit hook failed, event dropped | event=%s hook=%s",
                        event.name, getattr(hook, "__name__", type(hook).__name__),
                    )
        return delivered


class WebhookNotifier:
    """Hook that POSTs each event as JSON to a configured URL."""

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self._url     = url
        self._timeout = timeout

    async def __call__(self, event: Event) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(self._url, json=event.as_dict())
            resp.raise_for_status()
        logger.debug("Webhook delivered | event=%s status=%d", event.name, resp.status_code)


def build_hooks() -> PostCommitHooks:
    """Hook list for a new unit of work, wired from settings."""
    from knowledge.core.config import settings

    hooks = PostCommitHooks()
    if settings.webhook_url:
        hooks.register(WebhookNotifier(settings.webhook_url, settings.webhook_timeout_seconds))
    return hooks

"""Hands transition events to the driver boundary.

Delivery happens after the ledger state is committed. A failing subscriber is
logged and counted; it never reaches the engine and never rolls anything back.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence

from .metrics import increment, record_handler_invocation
from .models import TransitionEvent
from .registry import SubscriberFn, get_event_subscribers

logger = logging.getLogger(__name__)


def _name(subscriber: SubscriberFn) -> str:
    return getattr(subscriber, "__name__", type(subscriber).__name__)


class EventEmitter:
    def __init__(
        self,
        subscribers: Mapping[str, Sequence[SubscriberFn]] | None = None,
        *,
        extra_subscribers: Sequence[SubscriberFn] = (),
    ) -> None:
        # None means "use the decorator registry".
        self._subscribers = subscribers
        # Receive every event kind, after the per-kind subscribers.
        self._extra = list(extra_subscribers)

    def subscribers_for(self, event: TransitionEvent) -> list[SubscriberFn]:
        if self._subscribers is None:
            matched = get_event_subscribers(event.event)
        else:
            matched = list(self._subscribers.get(event.event, ()))
        return matched + self._extra

    async def emit(self, event: TransitionEvent) -> int:
        """Deliver ``event`` to every matching subscriber; returns successful deliveries."""
        increment("events_emitted")
        logger.info(
            "Transition event %s for user %d (debt=%d, active=%d)",
            event.event,
            event.user_id,
            event.debt_minutes,
            event.active_minutes,
            extra={
                "headmaster_user_id": event.user_id,
                "headmaster_hour": event.hour.isoformat(),
                "headmaster_event": event.event,
            },
        )

        delivered = 0
        for subscriber in self.subscribers_for(event):
            t0 = time.monotonic()
            try:
                await subscriber(event)
            except Exception:
                record_handler_invocation(
                    _name(subscriber), (time.monotonic() - t0) * 1000, success=False
                )
                increment("subscriber_failures")
                logger.exception(
                    "Event subscriber %s failed for event=%s user=%d",
                    _name(subscriber),
                    event.event,
                    event.user_id,
                )
                continue
            record_handler_invocation(
                _name(subscriber), (time.monotonic() - t0) * 1000, success=True
            )
            delivered += 1
        return delivered

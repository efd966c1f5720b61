import logging
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

from .models import EventKind, TransitionEvent

logger = logging.getLogger(__name__)

# Handler signature: async def handler(conn: AsyncConnection, payload: dict) -> None
HandlerFn = Callable[[psycopg.AsyncConnection[Any], dict[str, Any]], Awaitable[None]]

# Subscriber signature: async def subscriber(event: TransitionEvent) -> None
SubscriberFn = Callable[[TransitionEvent], Awaitable[None]]

EVENT_KINDS: tuple[EventKind, ...] = ("normal", "debt_collection", "debt_collection_paused")

# Job-level registry: one handler per job_type
_registry: dict[str, HandlerFn] = {}

# Event-level registry: multiple subscribers per transition event kind
_event_subscribers: dict[str, list[SubscriberFn]] = {}


def register(job_type: str) -> Callable[[HandlerFn], HandlerFn]:
    """Register a handler for a job_type (e.g. 'ledger.evaluate')."""

    def decorator(fn: HandlerFn) -> HandlerFn:
        if job_type in _registry:
            raise ValueError(f"Duplicate handler for job_type={job_type!r}")
        _registry[job_type] = fn
        logger.info("Registered handler for job_type=%s", job_type)
        return fn

    return decorator


def event_subscriber(*event_kinds: EventKind) -> Callable[[SubscriberFn], SubscriberFn]:
    """Register a subscriber for one or more transition event kinds.

    With no kinds given the subscriber receives every event. Subscribers must
    be idempotent: the same event kind can arrive many times in a row.

    Usage:
        @event_subscriber("debt_collection", "debt_collection_paused")
        async def notify(event):
            ...
    """
    kinds = event_kinds or EVENT_KINDS
    for kind in kinds:
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind {kind!r}")

    def decorator(fn: SubscriberFn) -> SubscriberFn:
        for kind in kinds:
            _event_subscribers.setdefault(kind, []).append(fn)
            logger.info("Registered event subscriber %s for event=%s", fn.__name__, kind)
        return fn

    return decorator


def get_handler(job_type: str) -> HandlerFn | None:
    return _registry.get(job_type)


def get_event_subscribers(event_kind: str) -> list[SubscriberFn]:
    return list(_event_subscribers.get(event_kind, []))


def registered_types() -> list[str]:
    return list(_registry.keys())


def registered_event_kinds() -> dict[str, int]:
    return {kind: len(subs) for kind, subs in _event_subscribers.items()}

"""
Change Feed Subscriber.

Opens long-lived subscriptions to a resource's row changes and dispatches
typed ``ChangeEvent`` values to a handler.

Architecture:
    transport (SSE stream | in-process broadcaster)
        → ChangeFeedSubscriber → handler (SynchronizedCollection.apply_event)

Delivery assumptions: at-least-once, best-effort FIFO within one
subscription, no ordering across resources.  Connection loss is silent to
the handler; transports that reconnect may leave a gap, which is why
collections expose ``resync()``.

Subscriptions are explicit ``SubscriptionHandle`` values owned by whoever
called ``subscribe``; there is no global channel registry.
"""
from __future__ import annotations

import enum
import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from skillswap.contracts.json_types import Record
from skillswap.services.query import Filter

logger = logging.getLogger(__name__)


class ChangeKind(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """One row change.

    ``record`` is the new row for INSERT/UPDATE.  For DELETE the store only
    guarantees the primary key in ``old_record``; ``record`` may be empty.
    """

    kind: ChangeKind
    resource: str
    record: Record
    old_record: Record | None = None

    @property
    def row(self) -> Record:
        """The row that identifies the change (old row for deletes)."""
        if self.kind is ChangeKind.DELETE:
            return self.old_record or self.record
        return self.record


EventHandler = Callable[[ChangeEvent], None]


def routes_to(filter: Filter, event: ChangeEvent) -> bool:
    """Whether a subscription with *filter* should receive *event*."""
    if event.kind is ChangeKind.DELETE:
        return filter.matches_partial(event.row)
    return filter.matches(event.row)


@dataclass(frozen=True)
class SubscriptionHandle:
    """Token for one open subscription; pass it back to ``unsubscribe``."""

    subscription_id: str
    resource: str
    filter: Filter


class ChangeFeedTransport(Protocol):
    """What the subscriber needs from a realtime transport."""

    def open(self, subscription_id: str, resource: str, filter: Filter, on_event: EventHandler) -> None:
        ...

    def close(self, subscription_id: str) -> None:
        ...


class ChangeFeedSubscriber:
    """Hands out subscription handles over a transport.

    ``unsubscribe`` is idempotent: releasing an already-released handle is a
    no-op, so teardown paths can release unconditionally.
    """

    _ids = itertools.count(1)

    def __init__(self, transport: ChangeFeedTransport) -> None:
        self._transport = transport
        self._open: dict[str, SubscriptionHandle] = {}

    def subscribe(self, resource: str, filter: Filter, on_event: EventHandler) -> SubscriptionHandle:
        handle = SubscriptionHandle(
            subscription_id=f"{resource}:{next(self._ids)}",
            resource=resource,
            filter=filter,
        )
        self._transport.open(handle.subscription_id, resource, filter, on_event)
        self._open[handle.subscription_id] = handle
        logger.debug(f"Subscribed {handle.subscription_id} where {filter}")
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if self._open.pop(handle.subscription_id, None) is None:
            return
        self._transport.close(handle.subscription_id)
        logger.debug(f"Unsubscribed {handle.subscription_id}")

    def is_open(self, handle: SubscriptionHandle) -> bool:
        return handle.subscription_id in self._open

    @property
    def active_count(self) -> int:
        """Number of open subscriptions."""
        return len(self._open)


class LocalChangeFeed:
    """
    In-process change feed transport.

    Routes published events to every open subscription on the same resource
    whose filter matches the changed row.  Dispatch is synchronous and in
    publish order, which makes it the transport of choice for tests and for
    echoing locally confirmed writes to sibling collections.
    """

    def __init__(self) -> None:
        # subscription_id -> (resource, filter, handler)
        self._subscribers: dict[str, tuple[str, Filter, EventHandler]] = {}

    def open(self, subscription_id: str, resource: str, filter: Filter, on_event: EventHandler) -> None:
        self._subscribers[subscription_id] = (resource, filter, on_event)

    def close(self, subscription_id: str) -> None:
        self._subscribers.pop(subscription_id, None)

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver *event* to matching subscribers.

        Returns the number of handlers that received it.  A failing handler
        is logged and does not stop delivery to the others.
        """
        delivered = 0
        # Copy: handlers may unsubscribe while we iterate
        for subscription_id, (resource, filter, handler) in list(self._subscribers.items()):
            if resource != event.resource:
                continue
            if not routes_to(filter, event):
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(f"❌ Change handler {subscription_id} failed on {event.kind.value}")
                continue
            delivered += 1
        logger.debug(f"Published {event.kind.value} on {event.resource} to {delivered} subscriber(s)")
        return delivered

    def clear(self) -> None:
        """Drop all subscriptions (for testing)."""
        self._subscribers.clear()

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscribers)

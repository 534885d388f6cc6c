"""Notification inbox for the signed-in user."""
from __future__ import annotations

import logging

from skillswap.config import RESOURCE_NOTIFICATIONS
from skillswap.contracts.json_types import Record
from skillswap.services.change_feed import ChangeFeedSubscriber
from skillswap.services.collection import SynchronizedCollection
from skillswap.services.gateway import RemoteDataGateway
from skillswap.services.query import Filter, Order
from skillswap.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Where opening a notification of a given type should take the user.
NAVIGATION_BY_TYPE: dict[str, str] = {
    "application": "/manage-posts",
}


class NotificationInbox:
    """Newest-first notifications scoped to one user."""

    def __init__(
        self,
        gateway: RemoteDataGateway,
        subscriber: ChangeFeedSubscriber,
        user_id: str,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.user_id = user_id
        self.collection = SynchronizedCollection(
            RESOURCE_NOTIFICATIONS,
            gateway,
            subscriber,
            filter=Filter().eq("user_id", user_id),
            order=Order("created_at"),
            retry_policy=retry_policy,
        )

    @property
    def notifications(self) -> tuple[Record, ...]:
        return self.collection.snapshot

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.collection.snapshot if not n.get("read"))

    @property
    def closed(self) -> bool:
        return self.collection.closed

    async def init(self) -> None:
        await self.collection.init()

    async def resync(self) -> None:
        await self.collection.resync()

    def teardown(self) -> None:
        self.collection.teardown()

    async def mark_as_read(self, notification_id: str) -> Record:
        return await self.collection.update(notification_id, {"read": True})

    async def delete(self, notification_id: str) -> None:
        await self.collection.delete(notification_id)

    async def open(self, notification: Record) -> str | None:
        """Mark *notification* read if needed and return where to navigate."""
        if not notification.get("read"):
            await self.mark_as_read(str(notification["id"]))
        return NAVIGATION_BY_TYPE.get(str(notification.get("type") or ""))

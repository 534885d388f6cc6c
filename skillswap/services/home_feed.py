"""Home screen data: open opportunities and the recent activity feed.

Opportunities with a completed completion row are hidden.  The completion
can arrive on its own feed before or after the opportunity, so the hiding
goes through the collection's sticky exclusion set.
"""
from __future__ import annotations

import asyncio
import logging

from skillswap.config import (
    RESOURCE_ACTIVITIES,
    RESOURCE_APPLICATIONS,
    RESOURCE_COMPLETIONS,
    RESOURCE_OPPORTUNITIES,
    RESOURCE_PROFILES,
    settings,
)
from skillswap.contracts.json_types import Record
from skillswap.services.change_feed import ChangeFeedSubscriber
from skillswap.services.collection import CompanionExclusion, SynchronizedCollection
from skillswap.services.errors import ErrorCode, GatewayError, LocalInvariantError, ProfileIncompleteError
from skillswap.services.gateway import RemoteDataGateway
from skillswap.services.query import Filter, Order
from skillswap.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

COMPLETED_EXCLUSION = CompanionExclusion(
    resource=RESOURCE_COMPLETIONS,
    filter=Filter().eq("status", "completed"),
    key_field="opportunity_id",
    columns="opportunity_id",
)


class HomeFeed:
    """Opportunities + activity feed for the home screen."""

    def __init__(
        self,
        gateway: RemoteDataGateway,
        subscriber: ChangeFeedSubscriber,
        user_id: str | None,
        *,
        activity_limit: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._gateway = gateway
        self.user_id = user_id
        limit = activity_limit or settings.activity_feed_limit
        self.opportunities = SynchronizedCollection(
            RESOURCE_OPPORTUNITIES,
            gateway,
            subscriber,
            order=Order("created_at"),
            exclusion=COMPLETED_EXCLUSION,
            retry_policy=retry_policy,
        )
        self.activities = SynchronizedCollection(
            RESOURCE_ACTIVITIES,
            gateway,
            subscriber,
            order=Order("created_at"),
            limit=limit,
            max_length=limit,
            retry_policy=retry_policy,
        )

    @property
    def loading(self) -> bool:
        return self.opportunities.loading or self.activities.loading

    @property
    def error(self) -> str | None:
        return self.opportunities.error or self.activities.error

    @property
    def closed(self) -> bool:
        return self.opportunities.closed

    async def init(self) -> None:
        """Load both collections concurrently; fails if either fails."""
        await asyncio.gather(self.opportunities.init(), self.activities.init())

    async def refetch(self) -> None:
        await asyncio.gather(self.opportunities.resync(), self.activities.resync())

    def teardown(self) -> None:
        self.opportunities.teardown()
        self.activities.teardown()

    async def apply(self, opportunity_id: str, message: str = "") -> Record:
        """Submit an application for the signed-in user.

        Raises:
            ProfileIncompleteError: the user has no profile row yet.
            GatewayError: the insert was rejected (not retried).
        """
        if not self.user_id:
            raise LocalInvariantError("Applying requires a signed-in user")
        try:
            await self._gateway.fetch_one(RESOURCE_PROFILES, Filter().eq("id", self.user_id), columns="id")
        except GatewayError as exc:
            if exc.code is ErrorCode.NOT_FOUND:
                raise ProfileIncompleteError() from exc
            raise
        application = await self._gateway.insert(
            RESOURCE_APPLICATIONS,
            {"opportunity_id": opportunity_id, "user_id": self.user_id, "message": message},
        )
        logger.info(f"✅ User {self.user_id} applied to opportunity {opportunity_id}")
        return application

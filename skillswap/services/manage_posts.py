"""The organizer's own posts, their applicants, and marking work complete.

Each post row is an opportunity decorated with its ``applications`` (each
carrying the applicant's ``user`` profile) and a ``completed`` flag.  The
decoration comes from a multi-step read, so the collection seeds through a
custom fetcher; opportunity events still merge in place because an update
is merged onto the existing decorated row.

Marking complete writes three rows in order: the completion, the accepted
application, and a notification for each side.  The completion row is what
hides the opportunity from everyone's home feed.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from skillswap.config import (
    RESOURCE_APPLICATIONS,
    RESOURCE_COMPLETIONS,
    RESOURCE_NOTIFICATIONS,
    RESOURCE_OPPORTUNITIES,
    RESOURCE_PROFILES,
)
from skillswap.contracts.json_types import Record
from skillswap.services.change_feed import ChangeEvent, ChangeFeedSubscriber, ChangeKind
from skillswap.services.collection import SynchronizedCollection
from skillswap.services.errors import LocalInvariantError
from skillswap.services.gateway import RemoteDataGateway
from skillswap.services.query import Filter, Order
from skillswap.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

APPLICATION_COLUMNS = "id, status, created_at, user_id, message, opportunity_id"
VOLUNTEER_COMPLETION_MESSAGE = "Your work has been marked as complete. Please leave a review!"
ORGANIZER_COMPLETION_MESSAGE = "You marked a task as complete. Don't forget to leave a review!"


def _with_defaults(post: Record) -> Record:
    post.setdefault("applications", [])
    post.setdefault("completed", False)
    return post


class ManagePosts(SynchronizedCollection):
    """Opportunities posted by the signed-in user, newest first."""

    def __init__(
        self,
        gateway: RemoteDataGateway,
        subscriber: ChangeFeedSubscriber,
        user_id: str,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(
            RESOURCE_OPPORTUNITIES,
            gateway,
            subscriber,
            filter=Filter().eq("organization_id", user_id),
            order=Order("created_at"),
            decorate=_with_defaults,
            fetcher=self._fetch_posts,
            retry_policy=retry_policy,
        )
        self.user_id = user_id
        self.completing: str | None = None

    async def _fetch_posts(self) -> list[Record]:
        posts = await self._gateway.fetch(self.resource, self.filter, self.order)
        if not posts:
            return []
        post_ids = [p["id"] for p in posts]
        completions, applications = await asyncio.gather(
            self._gateway.fetch(
                RESOURCE_COMPLETIONS,
                Filter().in_("opportunity_id", post_ids).eq("status", "completed"),
                columns="opportunity_id, status",
            ),
            self._gateway.fetch(
                RESOURCE_APPLICATIONS,
                Filter().in_("opportunity_id", post_ids),
                columns=APPLICATION_COLUMNS,
            ),
        )

        profiles: dict[str, Record] = {}
        applicant_ids = sorted({str(a["user_id"]) for a in applications if a.get("user_id")})
        if applicant_ids:
            rows = await self._gateway.fetch(
                RESOURCE_PROFILES, Filter().in_("id", applicant_ids), columns="id, name, email"
            )
            profiles = {str(r["id"]): r for r in rows}

        completed_ids = {str(c["opportunity_id"]) for c in completions}
        by_post: dict[str, list[Record]] = {}
        for application in applications:
            # Applications whose applicant has no profile are not shown
            profile = profiles.get(str(application.get("user_id")))
            if profile is None:
                continue
            entry = {
                **application,
                "user": {"name": profile.get("name"), "email": profile.get("email")},
            }
            by_post.setdefault(str(application["opportunity_id"]), []).append(entry)

        return [
            {
                **post,
                "applications": by_post.get(str(post["id"]), []),
                "completed": str(post["id"]) in completed_ids,
            }
            for post in posts
        ]

    async def delete_post(self, opportunity_id: str) -> None:
        """Delete one of the user's own posts."""
        await self.delete(opportunity_id, filter=Filter().eq("organization_id", self.user_id))
        logger.info(f"✅ Deleted post {opportunity_id}")

    async def mark_complete(self, opportunity_id: str, application_id: str, volunteer_id: str) -> Record:
        """Record that *volunteer_id* finished the work for *opportunity_id*.

        Returns the stored completion row.

        Raises:
            LocalInvariantError: another completion is in progress, or the
                application is not *volunteer_id*'s application to this post.
            GatewayError: a write was rejected (writes are not retried).
        """
        if not (opportunity_id and application_id and volunteer_id):
            raise LocalInvariantError("Missing required data for completion")
        if self.completing is not None:
            raise LocalInvariantError(f"Already completing {self.completing}")
        post = self.get(opportunity_id)
        if post is not None and not any(
            a.get("id") == application_id and a.get("user_id") == volunteer_id
            for a in post.get("applications") or []
            if isinstance(a, dict)
        ):
            raise LocalInvariantError(f"Application {application_id} is not from {volunteer_id}")

        self.completing = opportunity_id
        try:
            completion = await self._gateway.insert(
                RESOURCE_COMPLETIONS,
                {
                    "opportunity_id": opportunity_id,
                    "volunteer_id": volunteer_id,
                    "organizer_id": self.user_id,
                    "status": "completed",
                    "hours_spent": 1,
                    "completion_date": datetime.now(timezone.utc).isoformat(),
                },
            )
            await self._gateway.update(RESOURCE_APPLICATIONS, application_id, {"status": "accepted"})
            await self._gateway.insert_many(
                RESOURCE_NOTIFICATIONS,
                [
                    {
                        "user_id": volunteer_id,
                        "message": VOLUNTEER_COMPLETION_MESSAGE,
                        "type": "completion",
                        "reference_id": completion["id"],
                    },
                    {
                        "user_id": self.user_id,
                        "message": ORGANIZER_COMPLETION_MESSAGE,
                        "type": "completion",
                        "reference_id": completion["id"],
                    },
                ],
            )
        finally:
            self.completing = None

        if post is not None:
            applications = [
                {**a, "status": "accepted"} if a.get("id") == application_id else a
                for a in post.get("applications") or []
                if isinstance(a, dict)
            ]
            self.apply_event(
                ChangeEvent(
                    ChangeKind.UPDATE,
                    self.resource,
                    {"id": opportunity_id, "completed": True, "applications": applications},  # type: ignore[dict-item]
                )
            )
        logger.info(f"✅ Marked {opportunity_id} complete for volunteer {volunteer_id}")
        return completion

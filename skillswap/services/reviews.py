"""Completed work the user took part in, and leaving a review for it."""
from __future__ import annotations

import logging

from skillswap.config import RESOURCE_COMPLETIONS, RESOURCE_REVIEWS
from skillswap.contracts.json_types import Record, ReviewDict
from skillswap.services.change_feed import ChangeFeedSubscriber
from skillswap.services.collection import SynchronizedCollection
from skillswap.services.errors import LocalInvariantError
from skillswap.services.gateway import RemoteDataGateway
from skillswap.services.query import Filter, Order, Predicate
from skillswap.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

REVIEW_COLUMNS = (
    "*, opportunity:opportunity_id(title, organization), "
    "volunteer:volunteer_id(name, avatar_url), "
    "organizer:organizer_id(name, avatar_url), reviews(*)"
)
DEFAULT_RATING = 5


def _with_reviews(completion: Record) -> Record:
    completion.setdefault("reviews", [])
    return completion


class Reviews:
    """Completions where the user was the volunteer or the organizer."""

    def __init__(
        self,
        gateway: RemoteDataGateway,
        subscriber: ChangeFeedSubscriber,
        user_id: str,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._gateway = gateway
        self.user_id = user_id
        self.submitting = False
        self.collection = SynchronizedCollection(
            RESOURCE_COMPLETIONS,
            gateway,
            subscriber,
            filter=Filter()
            .any_of(Predicate("volunteer_id", "eq", user_id), Predicate("organizer_id", "eq", user_id))
            .eq("status", "completed"),
            order=Order("created_at"),
            columns=REVIEW_COLUMNS,
            decorate=_with_reviews,
            retry_policy=retry_policy,
        )

    @property
    def completions(self) -> tuple[Record, ...]:
        return self.collection.snapshot

    @property
    def closed(self) -> bool:
        return self.collection.closed

    async def init(self) -> None:
        await self.collection.init()

    async def resync(self) -> None:
        await self.collection.resync()

    def teardown(self) -> None:
        self.collection.teardown()

    def has_reviewed(self, completion: Record) -> bool:
        return any(
            isinstance(r, dict) and r.get("reviewer_id") == self.user_id
            for r in completion.get("reviews") or []
        )

    def reviewee_for(self, completion: Record) -> str:
        """The other side of *completion*."""
        if completion.get("volunteer_id") == self.user_id:
            return str(completion["organizer_id"])
        return str(completion["volunteer_id"])

    async def submit_review(
        self, completion: Record, rating: int = DEFAULT_RATING, feedback: str = ""
    ) -> ReviewDict | None:
        """Review the other side of *completion*.

        Returns None without writing when *feedback* is blank.  The review is
        embedded in the completion row, so the list is re-read afterwards.

        Raises:
            ValueError: *rating* is not between 1 and 5.
            LocalInvariantError: the user already reviewed this completion,
                or another review is being submitted.
            GatewayError: the insert was rejected (not retried).
        """
        text = feedback.strip()
        if not text:
            return None
        if not 1 <= rating <= 5:
            raise ValueError(f"Rating must be between 1 and 5, got {rating}")
        if self.submitting:
            raise LocalInvariantError("A review is already being submitted")
        if self.has_reviewed(completion):
            raise LocalInvariantError(f"Completion {completion.get('id')} was already reviewed")

        self.submitting = True
        try:
            review = await self._gateway.insert(
                RESOURCE_REVIEWS,
                {
                    "completion_id": completion["id"],
                    "reviewer_id": self.user_id,
                    "reviewee_id": self.reviewee_for(completion),
                    "rating": rating,
                    "feedback": text,
                },
            )
        finally:
            self.submitting = False
        logger.info(f"✅ Review submitted for completion {completion['id']}")
        await self.collection.resync()
        return review  # type: ignore[return-value]

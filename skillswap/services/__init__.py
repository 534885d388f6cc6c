"""Services for the SkillSwap sync layer."""
from __future__ import annotations

from skillswap.services.change_feed import (
    ChangeEvent,
    ChangeFeedSubscriber,
    ChangeKind,
    LocalChangeFeed,
    SubscriptionHandle,
)
from skillswap.services.collection import (
    CollectionView,
    CompanionExclusion,
    SynchronizedCollection,
)
from skillswap.services.errors import ErrorCode, GatewayError, LocalInvariantError
from skillswap.services.gateway import RemoteDataGateway, close_gateway, get_gateway
from skillswap.services.query import Filter, Order
from skillswap.services.retry import RetryPolicy, with_retry
from skillswap.services.search import SearchDebouncer, SearchState

__all__ = [
    "ChangeEvent",
    "ChangeFeedSubscriber",
    "ChangeKind",
    "CollectionView",
    "CompanionExclusion",
    "ErrorCode",
    "Filter",
    "GatewayError",
    "LocalChangeFeed",
    "LocalInvariantError",
    "Order",
    "RemoteDataGateway",
    "RetryPolicy",
    "SearchDebouncer",
    "SearchState",
    "SubscriptionHandle",
    "SynchronizedCollection",
    "close_gateway",
    "get_gateway",
    "with_retry",
]

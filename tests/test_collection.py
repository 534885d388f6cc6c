"""
Tests for SynchronizedCollection.

Covers seeding with retry, change-feed merging (idempotence, ordering,
bounded length), optimistic add/reconcile/rollback, cross-resource
exclusion, resync after drift, and teardown.
"""
from __future__ import annotations

import asyncio

import pytest

from skillswap.contracts.json_types import Record
from skillswap.services.change_feed import ChangeEvent, ChangeFeedSubscriber, ChangeKind, LocalChangeFeed
from skillswap.services.collection import (
    LOAD_ERROR_MESSAGE,
    CollectionView,
    CompanionExclusion,
    OptimisticState,
    SynchronizedCollection,
)
from skillswap.services.errors import ErrorCode, GatewayError, LocalInvariantError
from skillswap.services.query import Filter, Order
from skillswap.services.retry import RetryPolicy


def ts(n: int) -> str:
    return f"2024-05-01T12:{n // 60:02d}:{n % 60:02d}+00:00"


def _row(n: int, **extra: object) -> Record:
    return {"id": f"r-{n}", "created_at": ts(n), **extra}


def _insert(resource: str, record: Record) -> ChangeEvent:
    return ChangeEvent(ChangeKind.INSERT, resource, record)


def _newest_first(snapshot: tuple[Record, ...]) -> bool:
    stamps = [str(r["created_at"]) for r in snapshot]
    return stamps == sorted(stamps, reverse=True)


@pytest.fixture
def make_collection(gateway, subscriber: ChangeFeedSubscriber, no_wait: RetryPolicy):
    def make(resource: str = "activities", **kwargs: object) -> SynchronizedCollection:
        kwargs.setdefault("retry_policy", no_wait)
        return SynchronizedCollection(resource, gateway, subscriber, **kwargs)  # type: ignore[arg-type]

    return make


# =============================================================================
# Seeding
# =============================================================================


class TestInit:

    @pytest.mark.asyncio
    async def test_seed_is_sorted_newest_first(self, gateway, make_collection, feed: LocalChangeFeed) -> None:
        gateway.seed("activities", _row(2), _row(5), _row(1))
        coll = make_collection()
        await coll.init()
        assert coll.keys() == ["r-5", "r-2", "r-1"]
        assert not coll.loading
        assert coll.error is None
        assert feed.active_subscriptions == 1

    @pytest.mark.asyncio
    async def test_seed_drops_duplicate_keys(self, gateway, make_collection) -> None:
        gateway.seed("activities", _row(1), _row(1))
        coll = make_collection()
        await coll.init()
        assert coll.keys() == ["r-1"]

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, gateway, make_collection, transient) -> None:
        gateway.seed("activities", _row(1))
        gateway.fail("fetch", "activities", transient)
        coll = make_collection()
        await coll.init()
        assert coll.keys() == ["r-1"]
        assert gateway.count("fetch", "activities") == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_empty_snapshot_and_error(
        self, gateway, make_collection, transient, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(1))
        gateway.fail("fetch", "activities", transient, transient, transient)
        coll = make_collection()
        with pytest.raises(GatewayError):
            await coll.init()
        assert coll.snapshot == ()
        assert coll.error == LOAD_ERROR_MESSAGE
        assert coll.last_error is transient
        assert not coll.loading
        assert gateway.count("fetch", "activities") == 3
        assert feed.active_subscriptions == 0

        # a later init succeeds
        await coll.init()
        assert coll.keys() == ["r-1"]
        assert coll.error is None

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, gateway, make_collection) -> None:
        gateway.fail("fetch", "activities", GatewayError(ErrorCode.PERMISSION_DENIED, "rls", status=403))
        coll = make_collection()
        with pytest.raises(GatewayError):
            await coll.init()
        assert gateway.count("fetch", "activities") == 1
        assert coll.error == LOAD_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_listener_sees_loading_then_loaded(self, gateway, make_collection) -> None:
        gateway.seed("activities", _row(1))
        coll = make_collection()
        views: list[CollectionView] = []
        coll.add_listener(views.append)
        await coll.init()
        assert views[0].loading and views[0].snapshot == ()
        assert not views[-1].loading
        assert [r["id"] for r in views[-1].snapshot] == ["r-1"]

    @pytest.mark.asyncio
    async def test_remove_listener(self, gateway, make_collection) -> None:
        coll = make_collection()
        views: list[CollectionView] = []
        remove = coll.add_listener(views.append)
        remove()
        remove()
        await coll.init()
        assert views == []

    @pytest.mark.asyncio
    async def test_one_subscription_per_resource_and_filter(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        coll = make_collection()
        await coll.init()
        await coll.init()
        assert len(coll.subscription_handles) == 1
        assert feed.active_subscriptions == 1


# =============================================================================
# Change feed
# =============================================================================


class TestApplyEvent:

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, gateway, make_collection, feed: LocalChangeFeed) -> None:
        gateway.seed("activities", _row(1))
        coll = make_collection()
        await coll.init()
        event = _insert("activities", _row(2))
        feed.publish(event)
        feed.publish(event)
        assert coll.keys() == ["r-2", "r-1"]

    @pytest.mark.asyncio
    async def test_order_is_kept_under_out_of_order_delivery(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(10), _row(20))
        coll = make_collection()
        await coll.init()
        for n in (25, 5, 15, 30, 1):
            feed.publish(_insert("activities", _row(n)))
            assert _newest_first(coll.snapshot)
        assert coll.keys() == ["r-30", "r-25", "r-20", "r-15", "r-10", "r-5", "r-1"]

    @pytest.mark.asyncio
    async def test_bounded_feed_keeps_latest_ten(self, gateway, make_collection, feed: LocalChangeFeed) -> None:
        gateway.seed("activities", *(_row(n) for n in range(1, 11)))
        coll = make_collection(limit=10, max_length=10)
        await coll.init()
        assert len(coll) == 10

        feed.publish(_insert("activities", _row(11)))
        assert len(coll) == 10
        assert coll.keys()[0] == "r-11"
        assert "r-1" not in coll

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, gateway, make_collection, feed: LocalChangeFeed) -> None:
        gateway.seed("notifications", _row(1, read=False, title="New applicant"))
        coll = make_collection("notifications")
        await coll.init()
        feed.publish(ChangeEvent(ChangeKind.UPDATE, "notifications", {"id": "r-1", "read": True}))
        record = coll.get("r-1")
        assert record is not None
        assert record["read"] is True
        assert record["title"] == "New applicant"

    @pytest.mark.asyncio
    async def test_update_that_changes_sort_key_repositions(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(1), _row(2), _row(3))
        coll = make_collection()
        await coll.init()
        feed.publish(ChangeEvent(ChangeKind.UPDATE, "activities", {"id": "r-1", "created_at": ts(9)}))
        assert coll.keys() == ["r-1", "r-3", "r-2"]

    @pytest.mark.asyncio
    async def test_update_and_delete_for_unknown_key_are_ignored(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(1))
        coll = make_collection()
        await coll.init()
        before = coll.snapshot
        feed.publish(ChangeEvent(ChangeKind.UPDATE, "activities", {"id": "ghost", "x": 1}))
        feed.publish(ChangeEvent(ChangeKind.DELETE, "activities", {}, {"id": "ghost"}))
        assert coll.snapshot == before

    @pytest.mark.asyncio
    async def test_delete_removes_and_repeat_is_noop(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(1), _row(2))
        coll = make_collection()
        await coll.init()
        delete = ChangeEvent(ChangeKind.DELETE, "activities", {}, {"id": "r-1"})
        feed.publish(delete)
        feed.publish(delete)
        assert coll.keys() == ["r-2"]

    @pytest.mark.asyncio
    async def test_filtered_subscription_ignores_other_rows(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        coll = make_collection("notifications", filter=Filter().eq("user_id", "u-1"))
        await coll.init()
        feed.publish(_insert("notifications", _row(1, user_id="u-2")))
        feed.publish(_insert("notifications", _row(2, user_id="u-1")))
        assert coll.keys() == ["r-2"]

    @pytest.mark.asyncio
    async def test_post_filter(self, gateway, make_collection, feed: LocalChangeFeed) -> None:
        coll = make_collection(post_filter=lambda r: r.get("public", True))
        await coll.init()
        feed.publish(_insert("activities", _row(1, public=False)))
        feed.publish(_insert("activities", _row(2)))
        assert coll.keys() == ["r-2"]


# =============================================================================
# Optimistic writes
# =============================================================================


class TestOptimistic:

    @pytest.mark.asyncio
    async def test_add_optimistic_shows_record_at_once(self, gateway, make_collection) -> None:
        gateway.seed("activities", _row(1))
        coll = make_collection()
        await coll.init()
        coll.add_optimistic({"message": "hi"}, "temp-1", kind="post")
        assert coll.keys()[0] == "temp-1"
        assert coll.optimistic_state("temp-1") is OptimisticState.PENDING
        assert coll.is_pending("post")

    @pytest.mark.asyncio
    async def test_reconcile_keeps_position(self, gateway, make_collection, feed: LocalChangeFeed) -> None:
        gateway.seed("activities", _row(1), _row(2))
        coll = make_collection()
        await coll.init()
        coll.add_optimistic({"message": "hi"}, "temp-1", kind="post")
        feed.publish(_insert("activities", {"id": "later", "created_at": "2999-01-01T00:00:00+00:00"}))
        assert coll.keys().index("temp-1") == 1

        coll.reconcile("temp-1", {"id": "c-1", "created_at": ts(3), "message": "hi"})
        assert coll.keys() == ["later", "c-1", "r-2", "r-1"]
        assert coll.optimistic_state("temp-1") is OptimisticState.CONFIRMED
        assert not coll.is_pending("post")

    @pytest.mark.asyncio
    async def test_reconcile_after_feed_echo_does_not_duplicate(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(1))
        coll = make_collection()
        await coll.init()
        coll.add_optimistic({"message": "hi"}, "temp-1")
        confirmed = {"id": "c-1", "created_at": ts(5), "message": "hi"}
        feed.publish(_insert("activities", confirmed))
        coll.reconcile("temp-1", confirmed)
        assert coll.keys().count("c-1") == 1
        assert "temp-1" not in coll
        assert len(coll) == 2

    @pytest.mark.asyncio
    async def test_rollback_restores_previous_snapshot(self, gateway, make_collection) -> None:
        gateway.seed("activities", _row(1), _row(2))
        coll = make_collection()
        await coll.init()
        before = coll.snapshot
        coll.add_optimistic({"message": "draft text"}, "temp-1")
        restored = coll.rollback("temp-1")
        assert coll.snapshot == before
        assert restored["message"] == "draft text"
        assert coll.optimistic_state("temp-1") is OptimisticState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_pending_entry_is_not_truncated_from_bounded_feed(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(1), _row(2), _row(3))
        coll = make_collection(limit=3, max_length=3)
        await coll.init()
        coll.add_optimistic({"message": "hi"}, "temp-1")
        feed.publish(_insert("activities", _row(4)))
        feed.publish(_insert("activities", _row(5)))
        assert coll.keys() == ["temp-1", "r-5", "r-4", "r-3"]

        await coll.resync()
        assert coll.keys() == ["temp-1", "r-3", "r-2", "r-1"]

        # once confirmed it counts toward the bound
        coll.reconcile("temp-1", {"id": "c-1", "created_at": ts(9)})
        assert coll.keys() == ["c-1", "r-3", "r-2"]

    @pytest.mark.asyncio
    async def test_unknown_temp_key_is_a_local_invariant_error(self, make_collection) -> None:
        coll = make_collection()
        await coll.init()
        with pytest.raises(LocalInvariantError):
            coll.reconcile("temp-missing", {"id": "c-1"})
        with pytest.raises(LocalInvariantError):
            coll.rollback("temp-missing")

    @pytest.mark.asyncio
    async def test_one_pending_entry_per_kind(self, make_collection) -> None:
        coll = make_collection()
        await coll.init()
        coll.add_optimistic({"content": "a"}, "temp-1", kind="send")
        with pytest.raises(LocalInvariantError):
            coll.add_optimistic({"content": "b"}, "temp-2", kind="send")
        coll.add_optimistic({"content": "c"}, "temp-3", kind="react")
        with pytest.raises(LocalInvariantError):
            coll.add_optimistic({"content": "d"}, "temp-3", kind="other")

    @pytest.mark.asyncio
    async def test_pending_entries_survive_resync(self, gateway, make_collection) -> None:
        gateway.seed("activities", _row(1))
        coll = make_collection()
        await coll.init()
        coll.add_optimistic({"message": "hi"}, "temp-1")
        await coll.resync()
        assert "temp-1" in coll
        assert "r-1" in coll

    @pytest.mark.asyncio
    async def test_add_reconciles_with_stored_row(self, gateway, make_collection) -> None:
        coll = make_collection("messages", order=Order("created_at", ascending=True))
        await coll.init()
        stored = await coll.add({"content": "hello"}, kind="send")
        assert coll.keys() == [stored["id"]]
        assert coll.get(str(stored["id"]))["content"] == "hello"  # type: ignore[index]
        assert not coll.is_pending("send")

    @pytest.mark.asyncio
    async def test_add_failure_rolls_back(self, gateway, make_collection, transient) -> None:
        gateway.seed("messages", _row(1))
        gateway.fail("insert", "messages", transient)
        coll = make_collection("messages")
        await coll.init()
        before = coll.snapshot
        with pytest.raises(GatewayError):
            await coll.add({"content": "hello"}, kind="send")
        assert coll.snapshot == before
        assert not coll.is_pending("send")
        # writes are never retried
        assert gateway.count("insert", "messages") == 1

    @pytest.mark.asyncio
    async def test_update_and_delete_write_through(self, gateway, make_collection) -> None:
        gateway.seed("notifications", _row(1, read=False), _row(2, read=False))
        coll = make_collection("notifications")
        await coll.init()
        await coll.update("r-1", {"read": True})
        assert coll.get("r-1")["read"] is True  # type: ignore[index]
        await coll.delete("r-2")
        assert coll.keys() == ["r-1"]
        assert [r["id"] for r in gateway.tables["notifications"]] == ["r-1"]


# =============================================================================
# Cross-resource exclusion
# =============================================================================


COMPLETED = CompanionExclusion(
    resource="completions",
    filter=Filter().eq("status", "completed"),
    key_field="opportunity_id",
)


class TestExclusion:

    @pytest.mark.asyncio
    async def test_seed_excludes_completed(self, gateway, make_collection, feed: LocalChangeFeed) -> None:
        gateway.seed("opportunities", _row(1), _row(2))
        gateway.seed(
            "completions",
            {"id": "c-1", "opportunity_id": "r-1", "status": "completed"},
            {"id": "c-2", "opportunity_id": "r-2", "status": "in_progress"},
        )
        coll = make_collection("opportunities", exclusion=COMPLETED)
        await coll.init()
        assert coll.keys() == ["r-2"]
        assert coll.excluded_keys == {"r-1"}
        assert feed.active_subscriptions == 2

    @pytest.mark.asyncio
    async def test_completion_removes_visible_opportunity(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("opportunities", _row(1), _row(2))
        coll = make_collection("opportunities", exclusion=COMPLETED)
        await coll.init()
        feed.publish(_insert("completions", {"id": "c-1", "opportunity_id": "r-1", "status": "completed"}))
        assert coll.keys() == ["r-2"]

    @pytest.mark.asyncio
    async def test_completion_before_opportunity_hides_it(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        coll = make_collection("opportunities", exclusion=COMPLETED)
        await coll.init()
        feed.publish(_insert("completions", {"id": "c-1", "opportunity_id": "r-7", "status": "completed"}))
        feed.publish(_insert("opportunities", _row(7)))
        assert "r-7" not in coll

    @pytest.mark.asyncio
    async def test_completion_update_to_completed_counts(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("opportunities", _row(1))
        coll = make_collection("opportunities", exclusion=COMPLETED)
        await coll.init()
        feed.publish(
            ChangeEvent(
                ChangeKind.UPDATE,
                "completions",
                {"id": "c-1", "opportunity_id": "r-1", "status": "completed"},
            )
        )
        assert coll.snapshot == ()

    @pytest.mark.asyncio
    async def test_unfinished_completion_is_ignored(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("opportunities", _row(1))
        coll = make_collection("opportunities", exclusion=COMPLETED)
        await coll.init()
        coll.apply_event(_insert("completions", {"id": "c-1", "opportunity_id": "r-1", "status": "in_progress"}))
        assert coll.keys() == ["r-1"]


# =============================================================================
# Resync, retarget, teardown
# =============================================================================


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_resync_recovers_from_missed_events(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(1), _row(2))
        coll = make_collection()
        await coll.init()
        # changes the feed never delivered
        gateway.tables["activities"] = [_row(2), _row(3)]
        await coll.resync()
        assert coll.keys() == ["r-3", "r-2"]
        assert feed.active_subscriptions == 1

    @pytest.mark.asyncio
    async def test_failed_resync_keeps_snapshot(self, gateway, make_collection, transient) -> None:
        gateway.seed("activities", _row(1))
        coll = make_collection()
        await coll.init()
        gateway.fail("fetch", "activities", transient, transient, transient)
        with pytest.raises(GatewayError):
            await coll.resync()
        assert coll.keys() == ["r-1"]
        assert coll.error == LOAD_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_retarget_switches_subscription(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("messages", _row(1, chat_room_id="a"), _row(2, chat_room_id="b"))
        coll = make_collection("messages", filter=Filter().eq("chat_room_id", "a"))
        await coll.init()
        first = coll.subscription_handles
        await coll.retarget(Filter().eq("chat_room_id", "b"))
        assert coll.keys() == ["r-2"]
        assert coll.subscription_handles != first
        assert feed.active_subscriptions == 1

        feed.publish(_insert("messages", _row(3, chat_room_id="a")))
        assert "r-3" not in coll

    @pytest.mark.asyncio
    async def test_teardown_releases_every_handle(
        self, gateway, make_collection, subscriber: ChangeFeedSubscriber, feed: LocalChangeFeed
    ) -> None:
        coll = make_collection("opportunities", exclusion=COMPLETED)
        await coll.init()
        handles = coll.subscription_handles
        assert len(handles) == 2
        coll.teardown()
        coll.teardown()
        assert coll.closed
        assert all(not subscriber.is_open(h) for h in handles)
        assert feed.active_subscriptions == 0

    @pytest.mark.asyncio
    async def test_events_after_teardown_are_ignored(self, gateway, make_collection) -> None:
        coll = make_collection()
        await coll.init()
        coll.teardown()
        coll.apply_event(_insert("activities", _row(1)))
        assert coll.snapshot == ()

    @pytest.mark.asyncio
    async def test_fetch_resolving_after_teardown_is_discarded(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(1))
        gate = gateway.block("activities")
        coll = make_collection()
        task = asyncio.ensure_future(coll.init())
        await asyncio.sleep(0)
        assert coll.loading
        coll.teardown()
        gate.set()
        await task
        assert coll.snapshot == ()
        assert feed.active_subscriptions == 0

    @pytest.mark.asyncio
    async def test_resync_during_init_still_subscribes(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("activities", _row(1))
        gate = gateway.block("activities")
        coll = make_collection()
        init = asyncio.ensure_future(coll.init())
        await asyncio.sleep(0)
        resync = asyncio.ensure_future(coll.resync())
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(init, resync)

        assert len(coll.subscription_handles) == 1
        assert feed.publish(_insert("activities", _row(2))) == 1
        assert coll.keys() == ["r-2", "r-1"]

    @pytest.mark.asyncio
    async def test_retarget_during_init_leaves_one_subscription(
        self, gateway, make_collection, feed: LocalChangeFeed
    ) -> None:
        gateway.seed("messages", _row(1, chat_room_id="a"), _row(2, chat_room_id="b"))
        gate = gateway.block("messages")
        coll = make_collection("messages", filter=Filter().eq("chat_room_id", "a"))
        first = asyncio.ensure_future(coll.init())
        await asyncio.sleep(0)
        second = asyncio.ensure_future(coll.retarget(Filter().eq("chat_room_id", "b")))
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(first, second)

        assert feed.active_subscriptions == 1
        assert coll.subscription_handles[0].filter == Filter().eq("chat_room_id", "b")
        assert coll.keys() == ["r-2"]

    @pytest.mark.asyncio
    async def test_operations_after_teardown_raise(self, make_collection) -> None:
        coll = make_collection()
        coll.teardown()
        with pytest.raises(LocalInvariantError):
            await coll.init()
        with pytest.raises(LocalInvariantError):
            coll.add_optimistic({}, "temp-1")

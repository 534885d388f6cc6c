"""
Synchronized Collection.

Owns an in-memory, ordered, key-unique snapshot of one remote resource:

    init()  ── with_retry(fetch) ──▶ snapshot ◀── apply_event() ◀── change feed
                                        ▲
         add_optimistic / reconcile / rollback (local writes before confirmation)

Lifecycle:
    1. ``init()`` seeds the snapshot (retrying transient read failures) and
       opens one subscription per (resource, filter).
    2. Change-feed events mutate the snapshot in delivery order.
    3. ``resync()`` re-reads the resource without touching subscriptions;
       it is the recovery path for feed drift.
    4. ``teardown()`` releases every subscription.  A seed fetch that
       resolves afterwards is discarded.

Invariants:
    - the snapshot is sorted by the configured sort key after every
      operation, except that ``reconcile`` keeps the optimistic entry's slot;
    - keys are unique (an insert for a known key replaces the row);
    - at most one PENDING optimistic entry per action kind;
    - exactly one open subscription per (resource, filter).

Per-event mismatches (update/delete for an unknown key) are expected with
an at-least-once, loosely ordered feed and are ignored.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from skillswap.contracts.json_types import JSONValue, Record
from skillswap.services.change_feed import (
    ChangeEvent,
    ChangeFeedSubscriber,
    ChangeKind,
    SubscriptionHandle,
)
from skillswap.services.errors import LocalInvariantError
from skillswap.services.gateway import RemoteDataGateway
from skillswap.services.query import ALL, Filter, Order
from skillswap.services.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

LOAD_ERROR_MESSAGE = "Failed to load data. Please try refreshing the page."

Fetcher = Callable[[], Awaitable[list[Record]]]
Decorator = Callable[[Record], Record]
Listener = Callable[["CollectionView"], None]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _default_sort_key(field_name: str) -> Callable[[Record], Any]:
    # None sorts lowest without comparing against real values
    def key(record: Record) -> tuple[int, JSONValue]:
        value = record.get(field_name)
        return (-1, "") if value is None else (0, value)

    return key


class OptimisticState(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class PendingEntry:
    """Bookkeeping for one optimistic write, keyed by its temporary key."""

    temp_key: str
    kind: str
    record: Record
    state: OptimisticState = OptimisticState.PENDING


@dataclass(frozen=True)
class CompanionExclusion:
    """A secondary resource whose matching rows hide primary records.

    Example: an opportunity disappears once a ``completions`` row with
    ``status = completed`` references it through ``opportunity_id``.
    """

    resource: str
    filter: Filter
    key_field: str
    columns: str = "*"


@dataclass(frozen=True)
class CollectionView:
    """What a consuming view renders."""

    snapshot: tuple[Record, ...]
    loading: bool
    error: str | None


class SynchronizedCollection:
    """
    Locally coherent, order-preserving view of a remote resource.

    Args:
        resource: Table name.
        gateway: Shared RemoteDataGateway.
        subscriber: ChangeFeedSubscriber used for this collection's handles.
        filter: Row filter for both the seed fetch and the subscription.
        order: Server-side ordering; also the default local sort.
        limit: Seed fetch row limit.
        columns: PostgREST ``select`` expression for the seed fetch.
        key_field: Field holding the unique record key.
        sort_key: Local sort key; defaults to ``order.field``.
        max_length: Bound the confirmed records in the snapshot (activity feeds
            keep the latest 10); pending optimistic entries do not count.
        post_filter: Extra predicate a record must pass to be shown.
        exclusion: Companion resource whose rows hide records.
        decorate: Applied to every record entering the snapshot (e.g. to
            attach a joined profile).
        fetcher: Replaces the default seed fetch (multi-step reads).
        retry_policy: Retry policy for the seed fetch.
    """

    def __init__(
        self,
        resource: str,
        gateway: RemoteDataGateway,
        subscriber: ChangeFeedSubscriber,
        *,
        filter: Filter = ALL,
        order: Order | None = None,
        limit: int | None = None,
        columns: str = "*",
        key_field: str = "id",
        sort_key: Callable[[Record], Any] | None = None,
        max_length: int | None = None,
        post_filter: Callable[[Record], bool] | None = None,
        exclusion: CompanionExclusion | None = None,
        decorate: Decorator | None = None,
        fetcher: Fetcher | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.resource = resource
        self.filter = filter
        self.order = order or Order()
        self.limit = limit
        self.columns = columns
        self.key_field = key_field
        self.max_length = max_length
        self.exclusion = exclusion
        self._gateway = gateway
        self._subscriber = subscriber
        self._sort_key = sort_key or _default_sort_key(self.order.field)
        self._descending = not self.order.ascending
        self._post_filter = post_filter
        self._decorate = decorate
        self._fetcher = fetcher
        self._retry_policy = retry_policy

        self._items: list[Record] = []
        self._pending: dict[str, PendingEntry] = {}
        self._outcomes: dict[str, OptimisticState] = {}
        self._excluded: set[str] = set()
        self._handles: dict[tuple[str, Filter], SubscriptionHandle] = {}
        self._listeners: list[Listener] = []
        self._loading = False
        self._error: str | None = None
        self.last_error: BaseException | None = None
        self._load_seq = 0
        # Bumped by teardown/retarget; a resync does not cancel subscribing.
        self._generation = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Presentation contract
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> tuple[Record, ...]:
        return tuple(self._items)

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def closed(self) -> bool:
        return self._closed

    def view(self) -> CollectionView:
        return CollectionView(snapshot=tuple(self._items), loading=self._loading, error=self._error)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* with a fresh view after every state change.

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def get(self, key: str) -> Record | None:
        pos = self._position(key)
        return None if pos is None else self._items[pos]

    def keys(self) -> list[str]:
        return [str(r.get(self.key_field)) for r in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._position(key) is not None

    def optimistic_state(self, temp_key: str) -> OptimisticState | None:
        """Lifecycle state of the optimistic write tagged *temp_key*."""
        if temp_key in self._pending:
            return OptimisticState.PENDING
        return self._outcomes.get(temp_key)

    def is_pending(self, kind: str) -> bool:
        """Whether an optimistic write of *kind* awaits confirmation."""
        return any(e.kind == kind for e in self._pending.values())

    @property
    def excluded_keys(self) -> frozenset[str]:
        return frozenset(self._excluded)

    @property
    def subscription_handles(self) -> tuple[SubscriptionHandle, ...]:
        return tuple(self._handles.values())

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Seed the snapshot and open the change-feed subscriptions.

        On failure the snapshot is left empty, ``error`` is set and the
        exception is re-raised; ``init()`` may be called again.
        """
        if self._closed:
            raise LocalInvariantError(f"{self.resource} collection was torn down")
        generation = self._generation
        await self._reload(clear_on_error=True)
        if self._closed or generation != self._generation:
            return
        try:
            self._open_subscriptions()
        except Exception:
            self._release_subscriptions()
            raise
        logger.info(f"✅ {self.resource} synchronized ({len(self._items)} record(s))")

    async def resync(self) -> None:
        """Re-read the resource and rebuild the snapshot; subscriptions stay as they are."""
        if self._closed:
            raise LocalInvariantError(f"{self.resource} collection was torn down")
        logger.info(f"Resyncing {self.resource}")
        await self._reload(clear_on_error=False)

    async def retarget(self, filter: Filter) -> None:
        """Switch to a new filter: release subscriptions, drop state, re-init."""
        if self._closed:
            raise LocalInvariantError(f"{self.resource} collection was torn down")
        self._release_subscriptions()
        self._load_seq += 1
        self._generation += 1
        self.filter = filter
        self._items = []
        self._pending.clear()
        self._outcomes.clear()
        self._excluded.clear()
        await self.init()

    def teardown(self) -> None:
        """Release every subscription and discard the snapshot.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._load_seq += 1
        self._generation += 1
        self._release_subscriptions()
        self._items = []
        self._pending.clear()
        self._outcomes.clear()
        self._excluded.clear()
        self._loading = False
        self._listeners.clear()
        logger.debug(f"{self.resource} collection torn down")

    async def _reload(self, *, clear_on_error: bool) -> bool:
        """Fetch and install; return False when the result was discarded."""
        self._load_seq += 1
        seq = self._load_seq
        self._loading = True
        self._error = None
        self._notify()
        try:
            rows, excluded = await self._load()
        except Exception as exc:
            if seq != self._load_seq:
                logger.debug(f"Discarding failed {self.resource} load superseded by teardown/reload")
                return False
            self._loading = False
            self._error = LOAD_ERROR_MESSAGE
            self.last_error = exc
            if clear_on_error:
                self._items = []
            logger.error(f"❌ Loading {self.resource} failed: {exc}")
            self._notify()
            raise
        if seq != self._load_seq:
            logger.debug(f"Discarding stale {self.resource} load")
            return False
        self._install(rows, excluded)
        self._loading = False
        self.last_error = None
        self._notify()
        return True

    async def _load(self) -> tuple[list[Record], set[str]]:
        primary = with_retry(self._fetch_primary, self._retry_policy, label=f"fetch {self.resource}")
        if self.exclusion is None:
            return await primary, set()
        companion = with_retry(
            self._fetch_companion, self._retry_policy, label=f"fetch {self.exclusion.resource}"
        )
        rows, companion_rows = await asyncio.gather(primary, companion)
        key_field = self.exclusion.key_field
        excluded = {str(r[key_field]) for r in companion_rows if r.get(key_field) is not None}
        return rows, excluded

    async def _fetch_primary(self) -> list[Record]:
        if self._fetcher is not None:
            return await self._fetcher()
        return await self._gateway.fetch(
            self.resource, self.filter, self.order, self.limit, columns=self.columns
        )

    async def _fetch_companion(self) -> list[Record]:
        assert self.exclusion is not None
        return await self._gateway.fetch(
            self.exclusion.resource,
            self.exclusion.filter,
            columns=self.exclusion.columns,
        )

    def _install(self, rows: list[Record], excluded: set[str]) -> None:
        self._excluded = excluded
        seen: set[str] = set()
        items: list[Record] = []
        for row in rows:
            record = self._prepare(row)
            key = self._key_of(record)
            if key is None or key in seen or not self._admits(record):
                continue
            seen.add(key)
            items.append(record)
        # sorted() is stable in both directions, so server order breaks ties
        self._items = sorted(items, key=self._sort_key, reverse=self._descending)
        # Writes still awaiting confirmation survive a resync
        for entry in self._pending.values():
            if self._position(entry.temp_key) is None:
                self._insert_sorted(entry.record)
        self._truncate()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _open_subscriptions(self) -> None:
        wanted = [(self.resource, self.filter)]
        if self.exclusion is not None:
            wanted.append((self.exclusion.resource, self.exclusion.filter))
        for resource, filter in wanted:
            if (resource, filter) in self._handles:
                continue
            handle = self._subscriber.subscribe(resource, filter, self.apply_event)
            self._handles[(resource, filter)] = handle

    def _release_subscriptions(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            self._subscriber.unsubscribe(handle)

    # ------------------------------------------------------------------
    # Change-feed events
    # ------------------------------------------------------------------

    def apply_event(self, event: ChangeEvent) -> None:
        """Merge one change-feed event into the snapshot."""
        if self._closed:
            return
        if self.exclusion is not None and event.resource == self.exclusion.resource:
            self._apply_companion(event)
            return
        if event.resource != self.resource:
            return

        if event.kind is ChangeKind.DELETE:
            key = self._key_of(event.row)
            if key is None or not self._remove(key):
                logger.debug(f"Ignoring delete for unknown {self.resource} {key}")
                return
        elif event.kind is ChangeKind.INSERT:
            record = self._prepare(event.record)
            if self._key_of(record) is None:
                logger.debug(f"Ignoring keyless {self.resource} insert")
                return
            self._upsert(record)
            self._truncate()
        else:
            key = self._key_of(event.record)
            pos = None if key is None else self._position(key)
            if pos is None:
                logger.debug(f"Ignoring update for unknown {self.resource} {key}")
                return
            self._upsert(self._prepare({**self._items[pos], **event.record}))
        self._notify()

    def _apply_companion(self, event: ChangeEvent) -> None:
        assert self.exclusion is not None
        if event.kind is ChangeKind.DELETE:
            return
        if not self.exclusion.filter.matches(event.record):
            return
        key = event.record.get(self.exclusion.key_field)
        if key is not None:
            self.exclude(str(key))

    def exclude(self, key: str) -> None:
        """Hide *key* now and whenever it arrives later.  Idempotent."""
        self._excluded.add(key)
        if self._remove(key):
            logger.debug(f"Excluded {self.resource} {key}")
            self._notify()

    # ------------------------------------------------------------------
    # Optimistic writes
    # ------------------------------------------------------------------

    def add_optimistic(self, record: Record, temp_key: str, kind: str = "default") -> None:
        """Show *record* under *temp_key* before the server confirms it."""
        if self._closed:
            raise LocalInvariantError(f"{self.resource} collection was torn down")
        if temp_key in self._pending or self._position(temp_key) is not None:
            raise LocalInvariantError(f"Temporary key {temp_key} is already in use")
        if self.is_pending(kind):
            raise LocalInvariantError(f"A {kind!r} write is already awaiting confirmation")
        optimistic = self._prepare({**record, self.key_field: temp_key})
        optimistic.setdefault(self.order.field, _utc_now_iso())
        self._insert_sorted(optimistic)
        self._pending[temp_key] = PendingEntry(temp_key=temp_key, kind=kind, record=optimistic)
        self._notify()

    def reconcile(self, temp_key: str, confirmed: Record) -> None:
        """Replace the optimistic entry with the confirmed record, in place."""
        entry = self._take_pending(temp_key)
        record = self._prepare(confirmed)
        key = self._key_of(record)
        pos = self._position(temp_key)
        if key is not None:
            dup = self._position(key)
            # The feed may have delivered the confirmed row already
            if dup is not None and dup != pos:
                del self._items[dup]
                if pos is not None and dup < pos:
                    pos -= 1
        if not self._admits(record):
            if pos is not None:
                del self._items[pos]
        elif pos is None:
            self._insert_sorted(record)
        else:
            self._items[pos] = record
        self._truncate()
        entry.state = OptimisticState.CONFIRMED
        self._outcomes[temp_key] = entry.state
        self._notify()

    def rollback(self, temp_key: str) -> Record:
        """Remove the optimistic entry; returns it so the caller can restore input."""
        entry = self._take_pending(temp_key)
        self._remove(temp_key)
        entry.state = OptimisticState.ROLLED_BACK
        self._outcomes[temp_key] = entry.state
        self._notify()
        return entry.record

    def _take_pending(self, temp_key: str) -> PendingEntry:
        entry = self._pending.pop(temp_key, None)
        if entry is None:
            raise LocalInvariantError(f"No pending optimistic entry for {temp_key}")
        return entry

    # ------------------------------------------------------------------
    # Remote writes (never retried)
    # ------------------------------------------------------------------

    async def add(self, record: Record, *, kind: str = "add") -> Record:
        """Insert *record* remotely, showing it optimistically meanwhile.

        On failure the optimistic entry is rolled back and the error raised.
        """
        temp_key = f"temp-{uuid.uuid4()}"
        self.add_optimistic(record, temp_key, kind=kind)
        try:
            confirmed = await self._gateway.insert(self.resource, record)
        except Exception as exc:
            if temp_key in self._pending:
                self.rollback(temp_key)
            logger.warning(f"⚠️ Adding {self.resource} failed, rolled back: {exc}")
            raise
        if temp_key in self._pending:
            self.reconcile(temp_key, confirmed)
        return confirmed

    async def update(self, key: str, patch: Record) -> Record:
        """Patch *key* remotely and merge the confirmed row."""
        confirmed = await self._gateway.update(self.resource, key, patch, key_field=self.key_field)
        self.apply_event(ChangeEvent(ChangeKind.UPDATE, self.resource, confirmed))
        return confirmed

    async def delete(self, key: str, filter: Filter = ALL) -> None:
        """Delete *key* remotely, then locally (the feed echo is a no-op)."""
        await self._gateway.delete(self.resource, key, filter=filter, key_field=self.key_field)
        self.apply_event(ChangeEvent(ChangeKind.DELETE, self.resource, {}, {self.key_field: key}))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _prepare(self, record: Record) -> Record:
        record = dict(record)
        return self._decorate(record) if self._decorate else record

    def _key_of(self, record: Record) -> str | None:
        key = record.get(self.key_field)
        return None if key is None else str(key)

    def _admits(self, record: Record) -> bool:
        if self._key_of(record) in self._excluded:
            return False
        return self._post_filter is None or self._post_filter(record)

    def _position(self, key: str) -> int | None:
        for i, record in enumerate(self._items):
            if self._key_of(record) == key:
                return i
        return None

    def _precedes(self, a: Record, b: Record) -> bool:
        ka, kb = self._sort_key(a), self._sort_key(b)
        # Newest-first lists put a new record ahead of equal keys;
        # oldest-first lists append after them.
        return ka >= kb if self._descending else ka < kb

    def _insert_sorted(self, record: Record) -> None:
        for i, existing in enumerate(self._items):
            if self._precedes(record, existing):
                self._items.insert(i, record)
                return
        self._items.append(record)

    def _upsert(self, record: Record) -> None:
        key = self._key_of(record)
        assert key is not None
        pos = self._position(key)
        if not self._admits(record):
            if pos is not None:
                del self._items[pos]
            return
        if pos is None:
            self._insert_sorted(record)
        elif self._sort_key(self._items[pos]) == self._sort_key(record):
            self._items[pos] = record
        else:
            del self._items[pos]
            self._insert_sorted(record)

    def _truncate(self) -> None:
        """Keep at most ``max_length`` confirmed records; pending entries are not counted."""
        if self.max_length is None:
            return
        kept: list[Record] = []
        confirmed = 0
        for record in self._items:
            if self._key_of(record) in self._pending:
                kept.append(record)
            elif confirmed < self.max_length:
                kept.append(record)
                confirmed += 1
        self._items = kept

    def _remove(self, key: str) -> bool:
        pos = self._position(key)
        if pos is None:
            return False
        del self._items[pos]
        return True

    def _notify(self) -> None:
        if not self._listeners:
            return
        view = self.view()
        for listener in list(self._listeners):
            listener(view)


__all__ = [
    "CollectionView",
    "CompanionExclusion",
    "LOAD_ERROR_MESSAGE",
    "OptimisticState",
    "PendingEntry",
    "SynchronizedCollection",
]

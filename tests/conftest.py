"""Pytest configuration and fixtures."""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from collections.abc import Generator

import pytest

from skillswap.contracts.json_types import Record
from skillswap.services.change_feed import ChangeFeedSubscriber, LocalChangeFeed
from skillswap.services.errors import ErrorCode, GatewayError
from skillswap.services.query import ALL, Filter, Order
from skillswap.services.retry import RetryPolicy


def pytest_configure(config):
    """Ensure asyncio_mode is auto so async fixtures work when pyproject is not in cwd."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"
    logging.getLogger("httpcore").setLevel(logging.CRITICAL)


def ts(n: int) -> str:
    """Deterministic ISO timestamp; larger n is later."""
    return f"2024-05-01T12:{n // 60:02d}:{n % 60:02d}+00:00"


class FakeGateway:
    """In-memory stand-in for RemoteDataGateway.

    Rows live in ``tables``; ``fail(op, resource, *errors)`` queues errors
    raised by the next calls; ``block(resource)`` holds fetches until the
    returned event is set.  Every call is recorded in ``calls``.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[Record]] = defaultdict(list)
        self.calls: list[tuple[str, str]] = []
        self._errors: dict[tuple[str, str], list[Exception]] = defaultdict(list)
        self._gates: dict[str, asyncio.Event] = {}
        self._ids = itertools.count(1)
        self._clock = itertools.count(1000)

    def seed(self, resource: str, *rows: Record) -> None:
        self.tables[resource].extend(dict(r) for r in rows)

    def fail(self, op: str, resource: str, *errors: Exception) -> None:
        self._errors[(op, resource)].extend(errors)

    def block(self, resource: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[resource] = gate
        return gate

    def count(self, op: str, resource: str) -> int:
        return self.calls.count((op, resource))

    def _record(self, op: str, resource: str) -> None:
        self.calls.append((op, resource))
        queued = self._errors[(op, resource)]
        if queued:
            raise queued.pop(0)

    async def fetch(
        self,
        resource: str,
        filter: Filter = ALL,
        order: Order | None = None,
        limit: int | None = None,
        columns: str = "*",
    ) -> list[Record]:
        self._record("fetch", resource)
        gate = self._gates.get(resource)
        if gate is not None:
            await gate.wait()
        rows = [dict(r) for r in self.tables[resource] if filter.matches(r)]
        if order is not None:
            rows.sort(key=lambda r: str(r.get(order.field) or ""), reverse=not order.ascending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def fetch_one(self, resource: str, filter: Filter, columns: str = "*") -> Record:
        rows = await self.fetch(resource, filter, limit=1)
        if not rows:
            raise GatewayError(ErrorCode.NOT_FOUND, f"No {resource} row")
        return rows[0]

    async def insert(self, resource: str, record: Record) -> Record:
        self._record("insert", resource)
        row = {"id": f"{resource}-{next(self._ids)}", "created_at": ts(next(self._clock)), **record}
        self.tables[resource].append(row)
        return dict(row)

    async def insert_many(self, resource: str, records: list[Record]) -> list[Record]:
        return [await self.insert(resource, r) for r in records]

    async def update(self, resource: str, key: str, patch: Record, key_field: str = "id") -> Record:
        self._record("update", resource)
        for row in self.tables[resource]:
            if row.get(key_field) == key:
                row.update(patch)
                return dict(row)
        raise GatewayError(ErrorCode.NOT_FOUND, f"No {resource} row with {key_field}={key}")

    async def delete(self, resource: str, key: str, filter: Filter = ALL, key_field: str = "id") -> None:
        self._record("delete", resource)
        self.tables[resource] = [
            r for r in self.tables[resource] if not (r.get(key_field) == key and filter.matches(r))
        ]

    async def close(self) -> None:
        pass


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def feed() -> Generator[LocalChangeFeed, None, None]:
    """Fresh in-process change feed for each test."""
    f = LocalChangeFeed()
    yield f
    f.clear()


@pytest.fixture
def subscriber(feed: LocalChangeFeed) -> ChangeFeedSubscriber:
    return ChangeFeedSubscriber(feed)


@pytest.fixture
def no_wait() -> RetryPolicy:
    """Three attempts, no delay between them."""
    return RetryPolicy(max_attempts=3, delay=0)


@pytest.fixture
def transient() -> GatewayError:
    return GatewayError(ErrorCode.TRANSIENT, "upstream timed out", status=503)

"""
Search Debouncer.

Coalesces rapid input changes into one delayed remote query and suppresses
responses that a newer input has made stale.

State machine::

    IDLE ──input ≥ min──▶ PENDING ──quiet period──▶ IN_FLIGHT ──result──▶ IDLE
      ▲                     │  ▲                        │
      └──input < min────────┘  └────────newer input─────┘

Every input change bumps a sequence number.  A query remembers the number it
was issued under; when it resolves under a different number its result (or
error) is dropped.  The running query itself is never cancelled.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Generic, TypeVar

from skillswap.config import settings
from skillswap.services.errors import GatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SearchState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"


class SearchDebouncer(Generic[T]):
    """
    Owns a single query slot for a search box.

    Args:
        search: Coroutine function running the remote query for a term.
        quiet_period: Seconds of input silence before querying.
        min_chars: Shorter (stripped) input clears results without querying.
        on_change: Called with the debouncer after every visible state change.
    """

    def __init__(
        self,
        search: Callable[[str], Awaitable[list[T]]],
        *,
        quiet_period: float | None = None,
        min_chars: int | None = None,
        on_change: Callable[["SearchDebouncer[T]"], None] | None = None,
    ) -> None:
        self._search = search
        self.quiet_period = settings.search_debounce if quiet_period is None else quiet_period
        self.min_chars = settings.search_min_chars if min_chars is None else min_chars
        self._on_change = on_change

        self.term = ""
        self.results: list[T] = []
        self.error: str | None = None
        self._state = SearchState.IDLE
        self._input_seq = 0
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def loading(self) -> bool:
        return self._state is SearchState.IN_FLIGHT

    def set_input(self, text: str) -> None:
        """Register an input change."""
        self._input_seq += 1
        self.term = text
        self._cancel_timer()

        query = text.strip()
        if len(query) < self.min_chars:
            self.results = []
            self.error = None
            self._state = SearchState.IDLE
            self._notify()
            return

        seq = self._input_seq
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.quiet_period, self._fire, query, seq)
        self._state = SearchState.PENDING

    def clear(self) -> None:
        """Empty the box (navigation, click outside)."""
        self.set_input("")

    def update_results(self, transform: Callable[[list[T]], list[T]]) -> None:
        """Apply a local edit to the current results (optimistic patches)."""
        self.results = transform(list(self.results))
        self._notify()

    async def drain(self) -> None:
        """Wait for queries already issued to finish (their effect may be suppressed)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self) -> None:
        """Disarm the timer and suppress anything still running."""
        self._input_seq += 1
        self._cancel_timer()
        self._state = SearchState.IDLE

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, query: str, seq: int) -> None:
        self._timer = None
        task = asyncio.ensure_future(self._run(query, seq))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, query: str, seq: int) -> None:
        if seq != self._input_seq:
            return
        self._state = SearchState.IN_FLIGHT
        self._notify()
        logger.debug("Searching for %r", query)
        try:
            results = await self._search(query)
        except GatewayError as exc:
            if seq != self._input_seq:
                logger.debug("Dropping stale search failure for %r", query)
                return
            logger.error(f"❌ Search for {query!r} failed: {exc}")
            self.results = []
            self.error = exc.message
            self._state = SearchState.IDLE
            self._notify()
            return
        if seq != self._input_seq:
            logger.debug("Dropping stale results for %r", query)
            return
        self.results = list(results)
        self.error = None
        self._state = SearchState.IDLE
        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

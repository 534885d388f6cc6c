"""User search box with connection status and optimistic connect."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from skillswap.config import RESOURCE_CONNECTIONS, RESOURCE_PROFILES, settings
from skillswap.contracts.json_types import Record
from skillswap.services.errors import LocalInvariantError
from skillswap.services.gateway import RemoteDataGateway
from skillswap.services.query import Filter, Predicate
from skillswap.services.search import SearchDebouncer

logger = logging.getLogger(__name__)


def find_connection(connections: list[Record], user_id: str, other_id: str) -> Record | None:
    """The connection between *user_id* and *other_id* in either direction."""
    for c in connections:
        if (c.get("requester_id") == user_id and c.get("recipient_id") == other_id) or (
            c.get("recipient_id") == user_id and c.get("requester_id") == other_id
        ):
            return c
    return None


class UserSearch:
    """
    Debounced profile search for the signed-in user.

    Each result is a profile row plus a ``connection`` key holding the
    existing connection with the user, or None.
    """

    def __init__(
        self,
        gateway: RemoteDataGateway,
        user_id: str | None,
        *,
        quiet_period: float | None = None,
        min_chars: int | None = None,
        limit: int | None = None,
        on_change: Callable[[SearchDebouncer[Record]], None] | None = None,
    ) -> None:
        self._gateway = gateway
        self.user_id = user_id
        self.limit = limit or settings.search_result_limit
        self.connecting: str | None = None
        self._closed = False
        self.debouncer: SearchDebouncer[Record] = SearchDebouncer(
            self.search,
            quiet_period=quiet_period,
            min_chars=min_chars,
            on_change=on_change,
        )

    @property
    def results(self) -> list[Record]:
        return self.debouncer.results

    @property
    def loading(self) -> bool:
        return self.debouncer.loading

    def set_input(self, text: str) -> None:
        self.debouncer.set_input(text)

    def clear(self) -> None:
        self.debouncer.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True
        self.debouncer.close()

    async def search(self, term: str) -> list[Record]:
        """Profiles whose name contains *term*, annotated with connections."""
        if not self.user_id:
            return []
        users = await self._gateway.fetch(
            RESOURCE_PROFILES,
            Filter().neq("id", self.user_id).ilike("name", f"%{term}%"),
            limit=self.limit,
        )
        if not users:
            return []

        ids = [self.user_id, *(str(u["id"]) for u in users)]
        connections = await self._gateway.fetch(
            RESOURCE_CONNECTIONS,
            Filter()
            .any_of(
                Predicate("requester_id", "eq", self.user_id),
                Predicate("recipient_id", "eq", self.user_id),
            )
            .in_("requester_id", ids)
            .in_("recipient_id", ids),
        )
        return [
            {**u, "connection": find_connection(connections, self.user_id, str(u["id"]))}
            for u in users
        ]

    async def connect(self, recipient_id: str) -> Record:
        """Send a connection request, showing it as pending right away.

        On failure the result's previous connection state is restored and the
        error is raised.
        """
        if not self.user_id:
            raise LocalInvariantError("Connecting requires a signed-in user")
        if self.connecting is not None:
            raise LocalInvariantError(f"Already connecting to {self.connecting}")

        previous = next(
            (r.get("connection") for r in self.results if r.get("id") == recipient_id), None
        )
        now = datetime.now(timezone.utc).isoformat()
        optimistic: Record = {
            "id": f"temp-{uuid.uuid4()}",
            "requester_id": self.user_id,
            "recipient_id": recipient_id,
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        self.connecting = recipient_id
        self._set_connection(recipient_id, optimistic)
        try:
            confirmed = await self._gateway.insert(
                RESOURCE_CONNECTIONS,
                {"requester_id": self.user_id, "recipient_id": recipient_id, "status": "pending"},
            )
        except Exception:
            self._set_connection(recipient_id, previous)
            raise
        finally:
            self.connecting = None
        self._set_connection(recipient_id, confirmed)
        logger.info(f"✅ Connection requested {self.user_id} → {recipient_id}")
        return confirmed

    def _set_connection(self, recipient_id: str, connection: object) -> None:
        def patch(results: list[Record]) -> list[Record]:
            return [
                {**r, "connection": connection} if r.get("id") == recipient_id else r  # type: ignore[dict-item]
                for r in results
            ]

        self.debouncer.update_results(patch)

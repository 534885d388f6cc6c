"""Chat: the room list and the message thread of the selected room.

``ChatRoomList`` rows are derived from a multi-table read (participants,
their profiles, the latest message), so a raw ``chat_rooms`` event cannot be
merged in place; any room change triggers a ``resync()`` instead.

``MessageThread`` keeps one collection and retargets it when the selected
room changes, which releases the previous room's subscription.  Sends are
optimistic: the message appears at once and is replaced by the stored row,
or removed again (with the draft restored) when the insert fails.
"""
from __future__ import annotations

import asyncio
import logging

from skillswap.config import (
    RESOURCE_CHAT_PARTICIPANTS,
    RESOURCE_CHAT_ROOMS,
    RESOURCE_MESSAGES,
    RESOURCE_PROFILES,
)
from skillswap.contracts.json_types import ChatRoomDict, JSONValue, Record, SenderDict
from skillswap.services.change_feed import ChangeEvent, ChangeFeedSubscriber, ChangeKind
from skillswap.services.collection import SynchronizedCollection
from skillswap.services.errors import GatewayError, LocalInvariantError
from skillswap.services.gateway import RemoteDataGateway
from skillswap.services.query import Filter, Order
from skillswap.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

ROOM_COLUMNS = (
    "*, chat_participants(user_id, profiles(name, avatar_url)), "
    "messages(content, created_at)"
)
MESSAGE_COLUMNS = "*, profiles:sender_id(name, avatar_url)"
SEND_KIND = "send"


def _sender_from(profile: JSONValue) -> SenderDict | None:
    if not isinstance(profile, dict):
        return None
    return {"name": str(profile.get("name") or ""), "avatar_url": profile.get("avatar_url")}  # type: ignore[typeddict-item]


def format_room(room: Record, user_id: str) -> ChatRoomDict:
    """Flatten a room row with embedded participants/messages for the list."""
    participants = room.get("chat_participants") or []
    other = next(
        (p for p in participants if isinstance(p, dict) and p.get("user_id") != user_id),
        None,
    )
    other_user = _sender_from(other.get("profiles")) if other else None
    messages = [m for m in (room.get("messages") or []) if isinstance(m, dict)]
    last_message = max(messages, key=lambda m: str(m.get("created_at") or ""), default=None)
    return {
        "id": str(room["id"]),
        "name": str(room.get("name") or (other_user or {}).get("name") or "Chat"),
        "type": room.get("type") or "direct",  # type: ignore[typeddict-item]
        "updated_at": str(room.get("updated_at") or ""),
        "other_user": other_user,
        "other_user_id": other.get("user_id") if other else None,  # type: ignore[typeddict-unknown-key]
        "last_message": last_message,  # type: ignore[typeddict-item]
    }


class ChatRoomList(SynchronizedCollection):
    """Rooms the user participates in, most recently active first."""

    def __init__(
        self,
        gateway: RemoteDataGateway,
        subscriber: ChangeFeedSubscriber,
        user_id: str,
        *,
        display_name: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(
            RESOURCE_CHAT_ROOMS,
            gateway,
            subscriber,
            order=Order("updated_at"),
            fetcher=self._fetch_rooms,
            retry_policy=retry_policy,
        )
        self.user_id = user_id
        self.display_name = display_name or user_id
        self._refreshes: set[asyncio.Task[None]] = set()

    async def _fetch_rooms(self) -> list[Record]:
        participations = await self._gateway.fetch(
            RESOURCE_CHAT_PARTICIPANTS,
            Filter().eq("user_id", self.user_id),
            columns="chat_room_id",
        )
        room_ids = [p["chat_room_id"] for p in participations if p.get("chat_room_id")]
        if not room_ids:
            return []
        rooms = await self._gateway.fetch(
            RESOURCE_CHAT_ROOMS,
            Filter().in_("id", room_ids),
            Order("updated_at"),
            columns=ROOM_COLUMNS,
        )
        return [dict(format_room(room, self.user_id)) for room in rooms]

    def apply_event(self, event: ChangeEvent) -> None:
        if self.closed or event.resource != self.resource:
            return
        task = asyncio.ensure_future(self._refresh())
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)

    async def _refresh(self) -> None:
        if self.closed:
            return
        try:
            await self.resync()
        except GatewayError as exc:
            # Already surfaced through ``error``; the next change retries.
            logger.warning(f"⚠️ Chat room refresh failed: {exc}")

    def find_direct_room(self, other_user_id: str) -> Record | None:
        for room in self.snapshot:
            if room.get("other_user_id") == other_user_id:
                return room
        return None

    async def start_chat(self, other_user: Record) -> Record:
        """Return the existing direct room with *other_user* or create one."""
        other_id = str(other_user["id"])
        existing = self.find_direct_room(other_id)
        if existing is not None:
            return existing

        room = await self._gateway.insert(
            RESOURCE_CHAT_ROOMS,
            {"type": "direct", "name": f"{self.display_name} & {other_user.get('name') or 'User'}"},
        )
        await self._gateway.insert_many(
            RESOURCE_CHAT_PARTICIPANTS,
            [
                {"chat_room_id": room["id"], "user_id": self.user_id},
                {"chat_room_id": room["id"], "user_id": other_id},
            ],
        )
        logger.info(f"✅ Started chat {room['id']} with {other_id}")
        await self.resync()
        return self.get(str(room["id"])) or room

    async def drain(self) -> None:
        """Wait for event-triggered refreshes (tests)."""
        while self._refreshes:
            await asyncio.gather(*list(self._refreshes))


class MessageThread:
    """Messages of the selected room, oldest first."""

    def __init__(
        self,
        gateway: RemoteDataGateway,
        subscriber: ChangeFeedSubscriber,
        user_id: str,
        *,
        display_name: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._gateway = gateway
        self._subscriber = subscriber
        self._retry_policy = retry_policy
        self.user_id = user_id
        self.display_name = display_name
        self.room_id: str | None = None
        self.collection: SynchronizedCollection | None = None
        self.draft = ""
        self._sending = False
        self._profiles: dict[str, SenderDict] = {}
        self._lookups: dict[str, asyncio.Task[None]] = {}
        self._closed = False

    @property
    def messages(self) -> tuple[Record, ...]:
        return self.collection.snapshot if self.collection else ()

    @property
    def sending(self) -> bool:
        return self._sending

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self, room_id: str) -> None:
        """Select *room_id*, releasing the previous room's subscription."""
        if self._closed:
            raise LocalInvariantError("Message thread was closed")
        room_filter = Filter().eq("chat_room_id", room_id)
        self.room_id = room_id
        if self.collection is None:
            self.collection = SynchronizedCollection(
                RESOURCE_MESSAGES,
                self._gateway,
                self._subscriber,
                filter=room_filter,
                order=Order("created_at", ascending=True),
                columns=MESSAGE_COLUMNS,
                decorate=self._attach_sender,
                retry_policy=self._retry_policy,
            )
            await self.collection.init()
        else:
            await self.collection.retarget(room_filter)

    def close(self) -> None:
        self._closed = True
        if self.collection is not None:
            self.collection.teardown()
        for task in self._lookups.values():
            task.cancel()
        self._lookups.clear()

    async def send(self, content: str) -> Record | None:
        """Send *content* to the open room.

        Returns the stored message, or None when there is nothing to send or
        a send is already in progress.  On failure the optimistic message is
        removed, ``draft`` gets the text back and the GatewayError is raised.
        """
        text = content.strip()
        if not text or self.collection is None or self.room_id is None or self._sending:
            return None
        self._sending = True
        try:
            await self._own_sender()
            self.draft = ""
            try:
                return await self.collection.add(
                    {"chat_room_id": self.room_id, "sender_id": self.user_id, "content": text},
                    kind=SEND_KIND,
                )
            except GatewayError:
                self.draft = text
                raise
        finally:
            self._sending = False

    async def delete_message(self, message_id: str) -> None:
        """Delete one of the user's own messages."""
        if self.collection is None:
            return
        await self.collection.delete(message_id, filter=Filter().eq("sender_id", self.user_id))

    async def drain(self) -> None:
        """Wait for pending sender lookups (tests)."""
        while self._lookups:
            await asyncio.gather(*list(self._lookups.values()))

    # ------------------------------------------------------------------
    # Sender profiles
    # ------------------------------------------------------------------

    async def _own_sender(self) -> SenderDict:
        cached = self._profiles.get(self.user_id)
        if cached is not None:
            return cached
        try:
            profile = await self._gateway.fetch_one(
                RESOURCE_PROFILES, Filter().eq("id", self.user_id), columns="name, avatar_url"
            )
            sender = _sender_from(profile) or {"name": "User", "avatar_url": None}
        except GatewayError as exc:
            logger.warning(f"⚠️ Could not load own profile, using fallback name: {exc}")
            sender = {"name": self.display_name or "User", "avatar_url": None}
        self._profiles[self.user_id] = sender
        return sender

    def _attach_sender(self, record: Record) -> Record:
        embedded = record.pop("profiles", None)
        sender_id = str(record.get("sender_id") or "")
        sender = _sender_from(embedded)
        if sender is not None and sender_id:
            self._profiles[sender_id] = sender
        if record.get("sender"):
            return record
        if sender is None:
            sender = self._profiles.get(sender_id)
        if sender is None and sender_id:
            self._lookup_sender(sender_id)
        record["sender"] = sender  # type: ignore[assignment]
        return record

    def _lookup_sender(self, sender_id: str) -> None:
        if sender_id in self._lookups:
            return
        task = asyncio.ensure_future(self._fetch_sender(sender_id))
        self._lookups[sender_id] = task
        task.add_done_callback(lambda _t: self._lookups.pop(sender_id, None))

    async def _fetch_sender(self, sender_id: str) -> None:
        try:
            profile = await self._gateway.fetch_one(
                RESOURCE_PROFILES, Filter().eq("id", sender_id), columns="name, avatar_url"
            )
        except GatewayError as exc:
            logger.warning(f"⚠️ Sender lookup for {sender_id} failed: {exc}")
            return
        sender = _sender_from(profile)
        if sender is None or self.collection is None:
            return
        self._profiles[sender_id] = sender
        for message in self.collection.snapshot:
            if message.get("sender_id") == sender_id and not message.get("sender"):
                self.collection.apply_event(
                    ChangeEvent(
                        ChangeKind.UPDATE,
                        RESOURCE_MESSAGES,
                        {"id": message["id"], "sender": sender},  # type: ignore[dict-item]
                    )
                )

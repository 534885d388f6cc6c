"""Canonical type definitions for records exchanged with the hosted store.

The synchronization layer itself is generic over record shape: it only ever
reads the key field (``id`` unless configured otherwise) and the sort field.
The named shapes below document what each table actually carries so screen
services can be typed without redefining shapes ad hoc.

## Entity catalog

JSON primitives:
  JSONScalar            — str | int | float | bool | None
  JSONValue             — recursive JSON value
  Record                — dict[str, JSONValue], one row of any table

Community tables:
  OpportunityDict       — a posted request for, or offer of, help
  CompletionDict        — completion state of an opportunity for a volunteer
  ActivityDict          — one line of the public activity feed
  ApplicationDict       — a user's application to an opportunity
  ReviewDict            — post-completion review

Social tables:
  ProfileDict           — public user profile
  ConnectionDict        — connection request between two users
  NotificationDict      — per-user notification

Chat tables:
  ChatRoomDict          — a chat room row
  ChatParticipantDict   — membership row linking a user to a room
  MessageDict           — a chat message (optionally with embedded sender)
  SenderDict            — sender profile fragment embedded in a message
"""
from __future__ import annotations

from typing import Literal, Union

from typing_extensions import TypedDict

JSONScalar = Union[str, int, float, bool, None]
JSONValue = Union[JSONScalar, list["JSONValue"], dict[str, "JSONValue"]]
Record = dict[str, JSONValue]


# ── Community ────────────────────────────────────────────────────────────────


class OpportunityDict(TypedDict, total=False):
    """A posted opportunity.  ``required_skills`` and ``image_url`` stay in
    their wire (snake_case) form."""

    id: str
    title: str
    organization: str
    description: str
    required_skills: list[str]
    location: str
    date: str
    image_url: str | None
    spots: int
    created_at: str
    category: str
    type: str
    estimated_duration: str
    urgency: str


CompletionStatus = Literal["pending", "completed", "cancelled"]


class CompletionDict(TypedDict, total=False):
    """Completion row.  ``status == "completed"`` hides the opportunity."""

    id: str
    opportunity_id: str
    volunteer_id: str
    organizer_id: str
    status: CompletionStatus
    review_status: Literal["pending", "completed"]
    hours_spent: float
    completion_date: str | None
    created_at: str
    updated_at: str


class ActivityDict(TypedDict, total=False):
    id: str
    user_id: str
    user_name: str
    user_avatar: str
    action: str
    target: str
    created_at: str


class ApplicationDict(TypedDict, total=False):
    id: str
    opportunity_id: str
    user_id: str
    status: Literal["pending", "accepted", "rejected"]
    message: str
    created_at: str


class ReviewDict(TypedDict, total=False):
    id: str
    completion_id: str
    reviewer_id: str
    reviewee_id: str
    rating: int
    feedback: str
    created_at: str


# ── Social ───────────────────────────────────────────────────────────────────


class ProfileDict(TypedDict, total=False):
    id: str
    name: str
    email: str
    skills: list[str]
    interests: list[str]
    bio: str
    avatar_url: str | None
    completed_opportunities: int
    total_hours: float
    location: str


ConnectionStatus = Literal["pending", "accepted", "rejected"]


class ConnectionDict(TypedDict, total=False):
    id: str
    requester_id: str
    recipient_id: str
    status: ConnectionStatus
    created_at: str
    updated_at: str


class NotificationDict(TypedDict, total=False):
    """Per-user notification.  ``type`` drives where opening it navigates."""

    id: str
    user_id: str
    message: str
    read: bool
    created_at: str
    type: str
    reference_id: str | None


# ── Chat ─────────────────────────────────────────────────────────────────────


class SenderDict(TypedDict, total=False):
    name: str
    avatar_url: str | None


class MessageDict(TypedDict, total=False):
    id: str
    chat_room_id: str
    sender_id: str
    content: str
    created_at: str
    sender: SenderDict | None


class ChatRoomDict(TypedDict, total=False):
    """Chat room as presented to the room list.

    ``other_user`` and ``last_message`` are derived client-side from the
    embedded participants and messages.
    """

    id: str
    name: str
    type: Literal["direct", "group"]
    updated_at: str
    other_user: SenderDict | None
    last_message: MessageDict | None


class ChatParticipantDict(TypedDict, total=False):
    chat_room_id: str
    user_id: str

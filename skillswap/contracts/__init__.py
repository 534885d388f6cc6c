"""Record shapes shared by the gateway, the change feed and screen services."""

from skillswap.contracts.json_types import (
    ActivityDict,
    ChatRoomDict,
    CompletionDict,
    ConnectionDict,
    JSONValue,
    MessageDict,
    NotificationDict,
    OpportunityDict,
    ProfileDict,
    Record,
)

__all__ = [
    "ActivityDict",
    "ChatRoomDict",
    "CompletionDict",
    "ConnectionDict",
    "JSONValue",
    "MessageDict",
    "NotificationDict",
    "OpportunityDict",
    "ProfileDict",
    "Record",
]

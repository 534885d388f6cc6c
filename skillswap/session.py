"""Signed-in session: one gateway and one change feed shared by every screen.

Usage::

    async with SkillSwapSession(user_id, access_token=token) as session:
        home = session.home_feed()
        await home.init()
        ...

Leaving the context tears down every screen service created through the
session, closes the feed streams and the HTTP pool.  The user id is only
ever used as an equality predicate in filters.
"""
from __future__ import annotations

import logging
import types
from typing import TypeVar, Union

from skillswap.services.change_feed import ChangeFeedSubscriber, ChangeFeedTransport
from skillswap.services.gateway import RemoteDataGateway
from skillswap.services.home_feed import HomeFeed
from skillswap.services.manage_posts import ManagePosts
from skillswap.services.messages import ChatRoomList, MessageThread
from skillswap.services.notifications import NotificationInbox
from skillswap.services.retry import RetryPolicy
from skillswap.services.reviews import Reviews
from skillswap.services.sse_feed import SSEChangeFeed
from skillswap.services.user_search import UserSearch

logger = logging.getLogger(__name__)

Screen = Union[HomeFeed, NotificationInbox, ChatRoomList, MessageThread, UserSearch, ManagePosts, Reviews]

ScreenT = TypeVar("ScreenT", bound=Screen)


def _shutdown(screen: Screen) -> None:
    if isinstance(screen, (MessageThread, UserSearch)):
        screen.close()
    else:
        screen.teardown()


class SkillSwapSession:
    """
    Owns the shared gateway and change feed for one signed-in user.

    Args:
        user_id: Opaque id from the identity provider.
        access_token: User JWT forwarded to the store; never logged.
        display_name: Used when naming new chat rooms.
        gateway: Pre-built gateway (tests); built from settings otherwise.
        transport: Change feed transport; an ``SSEChangeFeed`` otherwise.
        retry_policy: Seed-fetch retry policy for every collection.
    """

    def __init__(
        self,
        user_id: str,
        *,
        access_token: str | None = None,
        display_name: str | None = None,
        gateway: RemoteDataGateway | None = None,
        transport: ChangeFeedTransport | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.user_id = user_id
        self.display_name = display_name
        self.gateway = gateway or RemoteDataGateway(access_token=access_token)
        self.transport = transport or SSEChangeFeed(access_token=access_token)
        self.subscriber = ChangeFeedSubscriber(self.transport)
        self.retry_policy = retry_policy
        self._screens: list[Screen] = []

    # ------------------------------------------------------------------
    # Screen factories
    # ------------------------------------------------------------------

    def home_feed(self) -> HomeFeed:
        screen = HomeFeed(self.gateway, self.subscriber, self.user_id, retry_policy=self.retry_policy)
        return self._track(screen)

    def notifications(self) -> NotificationInbox:
        screen = NotificationInbox(
            self.gateway, self.subscriber, self.user_id, retry_policy=self.retry_policy
        )
        return self._track(screen)

    def chat_rooms(self) -> ChatRoomList:
        screen = ChatRoomList(
            self.gateway,
            self.subscriber,
            self.user_id,
            display_name=self.display_name,
            retry_policy=self.retry_policy,
        )
        return self._track(screen)

    def message_thread(self) -> MessageThread:
        screen = MessageThread(
            self.gateway,
            self.subscriber,
            self.user_id,
            display_name=self.display_name,
            retry_policy=self.retry_policy,
        )
        return self._track(screen)

    def user_search(self) -> UserSearch:
        screen = UserSearch(self.gateway, self.user_id)
        return self._track(screen)

    def manage_posts(self) -> ManagePosts:
        screen = ManagePosts(self.gateway, self.subscriber, self.user_id, retry_policy=self.retry_policy)
        return self._track(screen)

    def reviews(self) -> Reviews:
        screen = Reviews(self.gateway, self.subscriber, self.user_id, retry_policy=self.retry_policy)
        return self._track(screen)

    def release(self, screen: Screen) -> None:
        """Shut *screen* down and stop tracking it.  Idempotent."""
        _shutdown(screen)
        if screen in self._screens:
            self._screens.remove(screen)

    def _track(self, screen: ScreenT) -> ScreenT:
        # Screens shut down directly (not via release) are dropped here
        self._screens = [s for s in self._screens if not s.closed]
        self._screens.append(screen)
        return screen

    # ------------------------------------------------------------------
    # Async context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SkillSwapSession:
        logger.info(f"✅ Session opened for user {self.user_id}")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        for screen in self._screens:
            _shutdown(screen)
        self._screens.clear()
        aclose = getattr(self.transport, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.gateway.close()
        logger.info(f"Session closed for user {self.user_id}")

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from tutor_bot.models import ROLE_MODEL, ROLE_USER, Conversation, Message, utc_now_iso
from tutor_bot.storage import DialogStore

DEFAULT_MAX_CONTEXT_MESSAGES = 20
DEFAULT_MAX_STORED_MESSAGES = 100

logger = logging.getLogger(__name__)


class UserLocks:
    """One asyncio.Lock per user id, dropped once nobody holds or awaits it.

    Held around the whole load -> append -> persist span so two messages from
    the same user cannot overwrite each other's conversation snapshot.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[user_id] -= 1
            if self._users[user_id] == 0:
                del self._users[user_id]
                del self._locks[user_id]

    def __len__(self) -> int:
        return len(self._locks)


class ConversationContext:
    """Read-append-trim-write cycle around a user's Conversation.

    Nothing is written until `trim_and_persist`; if the pipeline fails before
    that, the appended turns are simply dropped with the in-memory object.
    """

    def __init__(
        self,
        dialogs: DialogStore,
        max_context: int = DEFAULT_MAX_CONTEXT_MESSAGES,
        max_stored: int = DEFAULT_MAX_STORED_MESSAGES,
    ):
        if max_context < 1 or max_stored < 1:
            raise ValueError("max_context and max_stored must be positive")
        self._dialogs = dialogs
        self.max_context = max_context
        self.max_stored = max_stored

    async def load(self, user_id: str) -> Optional[Conversation]:
        return await asyncio.to_thread(self._dialogs.load, user_id)

    async def append_user_turn(self, user_id: str, text: str, display_name: str = "") -> Conversation:
        conversation = await self.load(user_id)
        if conversation is None:
            conversation = Conversation(user_id=user_id, display_name=display_name)
            logger.info("New conversation for user %s", user_id)
        elif display_name:
            conversation.display_name = display_name
        conversation.messages.append(Message(role=ROLE_USER, text=text))
        return conversation

    def window_for_model(self, conversation: Conversation, max_context: Optional[int] = None) -> List[Message]:
        """The most recent `max_context` messages, oldest first."""
        limit = self.max_context if max_context is None else max_context
        if limit <= 0:
            return []
        return list(conversation.messages[-limit:])

    def append_model_turn(self, conversation: Conversation, text: str) -> None:
        conversation.messages.append(Message(role=ROLE_MODEL, text=text))

    async def trim_and_persist(self, conversation: Conversation, max_stored: Optional[int] = None) -> bool:
        """Drop the oldest messages beyond `max_stored`, then save.

        Returns True if a trim happened; `last_trim_at` only moves in that case.
        """
        limit = self.max_stored if max_stored is None else max_stored
        if limit < 1:
            raise ValueError("max_stored must be positive")
        trimmed = False
        if len(conversation.messages) > limit:
            dropped = len(conversation.messages) - limit
            conversation.messages = conversation.messages[-limit:]
            conversation.last_trim_at = utc_now_iso()
            trimmed = True
            logger.debug("Trimmed %d messages for user %s", dropped, conversation.user_id)
        await asyncio.to_thread(self._dialogs.save, conversation)
        return trimmed

    async def clear(self, user_id: str) -> bool:
        """Empty the user's history but keep the record. False if there is none."""
        conversation = await self.load(user_id)
        if conversation is None:
            return False
        conversation.messages = []
        conversation.last_trim_at = utc_now_iso()
        await asyncio.to_thread(self._dialogs.save, conversation)
        return True

"""
Group chat manager: the set of open chats plus the closed-chat bin.

An open chat is a live coordinator with running controllers. Closing a chat
saves it and shuts the coordinator down; the history stays in the store until
it is deleted, and can be reopened as long as every participant can be
re-attached.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional

from groupchat import config
from groupchat.adapters.base import AgentAdapter
from groupchat.controller import ControllerSettings
from groupchat.coordinator import GroupChatCoordinator
from groupchat.db.history import HistoryStore
from groupchat.debug_log import GroupChatDebugLog
from groupchat.models import ChatSummary, Message
from groupchat.prompt_config import PromptConfig
from groupchat.session import Session

logger = logging.getLogger(__name__)

MIN_RESTORE_PARTICIPANTS = 2


class ChatNotFoundError(KeyError):
    """No open (or closed, depending on the call) chat with this id."""

    def __init__(self, chat_id: str) -> None:
        self.chat_id = chat_id
        super().__init__(chat_id)

    def __str__(self) -> str:
        return f"Chat not found: {self.chat_id}"


class RestoreError(ValueError):
    """A closed chat exists but cannot be reopened."""


class GroupChatManager:
    def __init__(
        self,
        store: HistoryStore,
        prompt_config: PromptConfig,
        settings: Optional[ControllerSettings] = None,
        debug_log: Optional[GroupChatDebugLog] = None,
    ) -> None:
        self.store = store
        self.prompt_config = prompt_config
        self.settings = settings or ControllerSettings()
        self.debug_log = debug_log or GroupChatDebugLog(store.transcript_dir, enabled=config.DEBUG_LOG_ENABLED)
        self._chats: dict[str, GroupChatCoordinator] = {}

    # ─────────────────────────────────────────────
    # Open chats
    # ─────────────────────────────────────────────

    async def create_group_chat(
        self,
        title: str,
        adapters: Iterable[AgentAdapter],
        chat_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        messages: Iterable[Message] = (),
    ) -> GroupChatCoordinator:
        adapters = list(adapters)
        if chat_id is not None and chat_id in self._chats:
            raise ValueError(f"Chat {chat_id} is already open")
        session = Session(
            title=title,
            participant_ids=[a.participant_id for a in adapters],
            id=chat_id,
            created_at=created_at,
            messages=messages,
        )
        coordinator = GroupChatCoordinator(
            session=session,
            adapters=adapters,
            prompt_config=self.prompt_config,
            history_store=self.store,
            settings=self.settings,
            debug_log=self.debug_log,
        )
        coordinator.setup_controllers()
        self._chats[session.id] = coordinator
        try:
            await self.store.save(session)
        except Exception as e:
            logger.warning(f"History save failed for chat {session.id}: {type(e).__name__}: {e}")
        logger.info(f"Chat opened: {session.id} '{title}' with {len(adapters)} participants")
        return coordinator

    def coordinator(self, chat_id: str) -> GroupChatCoordinator:
        coordinator = self._chats.get(chat_id)
        if coordinator is None:
            raise ChatNotFoundError(chat_id)
        return coordinator

    def active_chats(self) -> list[GroupChatCoordinator]:
        return list(self._chats.values())

    async def close_group_chat(self, chat_id: str) -> None:
        coordinator = self._chats.pop(chat_id, None)
        if coordinator is None:
            raise ChatNotFoundError(chat_id)
        coordinator.shutdown()
        try:
            await self.store.save(coordinator.session)
        except Exception as e:
            logger.warning(f"History save failed for chat {chat_id}: {type(e).__name__}: {e}")
        logger.info(f"Chat closed: {chat_id}")

    # ─────────────────────────────────────────────
    # Closed-chat bin
    # ─────────────────────────────────────────────

    async def list_closed(self) -> list[ChatSummary]:
        return [s for s in await self.store.list_all() if s.id not in self._chats]

    def _restore_problem(self, session: Optional[Session], adapters: dict[str, AgentAdapter]) -> Optional[str]:
        if session is None:
            return "no saved history"
        if session.id in self._chats:
            return "chat is already open"
        if len(session.participant_ids) < MIN_RESTORE_PARTICIPANTS:
            return f"needs at least {MIN_RESTORE_PARTICIPANTS} participants"
        missing = [pid for pid in session.participant_ids if pid not in adapters]
        if missing:
            return f"missing adapters for {', '.join(missing)}"
        return None

    async def can_restore(self, chat_id: str, adapters: Iterable[AgentAdapter]) -> bool:
        session = await self.store.load(chat_id)
        return self._restore_problem(session, {a.participant_id: a for a in adapters}) is None

    async def restore_closed(self, chat_id: str, adapters: Iterable[AgentAdapter]) -> GroupChatCoordinator:
        by_id = {a.participant_id: a for a in adapters}
        session = await self.store.load(chat_id)
        if session is None:
            raise ChatNotFoundError(chat_id)
        problem = self._restore_problem(session, by_id)
        if problem:
            raise RestoreError(f"Cannot restore chat {chat_id}: {problem}")
        coordinator = await self.create_group_chat(
            title=session.title,
            adapters=[by_id[pid] for pid in session.participant_ids],
            chat_id=session.id,
            created_at=session.created_at,
            messages=session.messages,
        )
        logger.info(f"Chat restored: {chat_id} at seq={coordinator.session.sequence}")
        return coordinator

    async def delete_closed(self, chat_id: str) -> None:
        if chat_id in self._chats or not await self.store.delete(chat_id):
            raise ChatNotFoundError(chat_id)

    async def clear_closed(self) -> int:
        closed = await self.list_closed()
        for summary in closed:
            await self.store.delete(summary.id)
        logger.info(f"Cleared {len(closed)} closed chats")
        return len(closed)

    async def shutdown(self) -> None:
        for chat_id in list(self._chats):
            await self.close_group_chat(chat_id)
        self.debug_log.close()

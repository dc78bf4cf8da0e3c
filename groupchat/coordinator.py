"""
Group chat coordinator.

Owns the participant controllers of one conversation, fans every appended
message out to all participants except its author, and folds pass/reply
signals into the conversation-level stall flag.
"""
import logging
import time
from typing import Callable, Iterable, Optional

from groupchat.adapters.base import AgentAdapter
from groupchat.controller import ControllerSettings, ParticipantController
from groupchat.debug_log import GroupChatDebugLog
from groupchat.models import Message, MessageEvent, MessageSource, ParticipantStatus
from groupchat.prompt_config import PromptConfig
from groupchat.session import Session

logger = logging.getLogger(__name__)


class GroupChatCoordinator:
    def __init__(
        self,
        session: Session,
        adapters: Iterable[AgentAdapter],
        prompt_config: PromptConfig,
        history_store=None,
        settings: Optional[ControllerSettings] = None,
        debug_log: Optional[GroupChatDebugLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.prompt_config = prompt_config
        self.history_store = history_store
        self.settings = settings or ControllerSettings()
        self.debug_log = debug_log
        self._clock = clock

        self.adapters: dict[str, AgentAdapter] = {}
        for adapter in adapters:
            self.adapters[adapter.participant_id] = adapter
            session.add_participant(adapter.participant_id)

        self.controllers: dict[str, ParticipantController] = {}
        # participant id -> has passed since the last real message
        self._passed: dict[str, bool] = {}
        self.is_stalled = False
        self._unsubscribe = None
        self._started = False
        self._shut_down = False

    # ─────────────────────────────────────────────
    # Controllers
    # ─────────────────────────────────────────────

    def setup_controllers(self, start: bool = True) -> None:
        """Create one controller per adapter and subscribe to the log.

        With start=False the polling loops are not launched and the caller
        drives the controllers' ticks itself.
        """
        self._started = start
        self.sync_controllers_to_participants()
        if self._unsubscribe is None:
            self._unsubscribe = self.session.subscribe(self._on_message)

    def sync_controllers_to_participants(self) -> None:
        """Create controllers for new participants, shut down those of departed ones."""
        for pid in list(self.controllers):
            if pid not in self.session.participant_ids or pid not in self.adapters:
                self._drop_controller(pid)
        for pid in self.session.participant_ids:
            adapter = self.adapters.get(pid)
            if adapter is None or pid in self.controllers:
                continue
            controller = ParticipantController(
                session=self.session,
                adapter=adapter,
                prompt_config=self.prompt_config,
                host=self,
                history_store=self.history_store,
                settings=self.settings,
                debug_log=self.debug_log,
                clock=self._clock,
            )
            # A newcomer (or a restored chat) starts from the current end of the log
            controller.last_seen_sequence = self.session.sequence
            self.controllers[pid] = controller
            self._passed[pid] = False
            if self._started:
                controller.start()

    def add_participant(self, adapter: AgentAdapter) -> ParticipantController:
        if self._shut_down:
            raise RuntimeError(f"Chat {self.session.id} is shut down")
        self.adapters[adapter.participant_id] = adapter
        self.session.add_participant(adapter.participant_id)
        self.sync_controllers_to_participants()
        logger.info(f"Participant joined: {adapter.name} ({adapter.participant_id}) chat={self.session.id}")
        return self.controllers[adapter.participant_id]

    def remove_participant(self, participant_id: str) -> None:
        self.adapters.pop(participant_id, None)
        self.session.remove_participant(participant_id)
        self._drop_controller(participant_id)
        self._update_stall()
        logger.info(f"Participant left: {participant_id} chat={self.session.id}")

    def _drop_controller(self, participant_id: str) -> None:
        controller = self.controllers.pop(participant_id, None)
        if controller is not None:
            controller.shutdown()
        self._passed.pop(participant_id, None)

    # ─────────────────────────────────────────────
    # Fan-out
    # ─────────────────────────────────────────────

    def _on_message(self, event: MessageEvent) -> None:
        author = event.message.source.participant_id
        for pid, controller in list(self.controllers.items()):
            if pid == author:
                continue
            controller.deliver_message(event.sequence)

    # ─────────────────────────────────────────────
    # Stall aggregation
    # ─────────────────────────────────────────────

    def handle_pass_state_change(self, participant_id: str, did_pass: bool) -> None:
        if participant_id not in self._passed:
            return
        if did_pass:
            self._passed[participant_id] = True
        else:
            # Any real reply re-engages everyone
            for pid in self._passed:
                self._passed[pid] = False
        self._update_stall()

    def _update_stall(self) -> None:
        stalled = bool(self._passed) and all(self._passed.values())
        if stalled and not self.is_stalled:
            logger.info(f"Chat {self.session.id} stalled: every participant passed")
        self.is_stalled = stalled

    def _reset_stall(self) -> None:
        for pid in self._passed:
            self._passed[pid] = False
        self.is_stalled = False

    # ─────────────────────────────────────────────
    # Public surface
    # ─────────────────────────────────────────────

    async def send_user_message(self, text: str) -> int:
        if self._shut_down:
            raise RuntimeError(f"Chat {self.session.id} is shut down")
        self._reset_stall()
        for controller in self.controllers.values():
            controller.consecutive_pass_count = 0
        seq = self.session.append(Message(source=MessageSource.user(), content=text))
        if self.history_store is not None:
            try:
                await self.history_store.save(self.session)
            except Exception as e:
                logger.warning(f"History save failed for chat {self.session.id}: {type(e).__name__}: {e}")
        return seq

    def stop_all(self) -> None:
        for controller in self.controllers.values():
            controller.stop()
        logger.info(f"Chat {self.session.id}: all participants stopped")

    def reset_all(self) -> None:
        for controller in self.controllers.values():
            controller.reset()
        self._reset_stall()
        logger.info(f"Chat {self.session.id}: all participants reset")

    def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for controller in self.controllers.values():
            controller.shutdown()
        if self.debug_log is not None:
            self.debug_log.close(self.session.id)
        logger.info(f"Chat {self.session.id} coordinator shut down")

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    @property
    def is_conversation_active(self) -> bool:
        """True while any participant has a turn in flight or a delivery queued."""
        return any(c.is_processing or c.pending_delivery is not None for c in self.controllers.values())

    def participant_names(self) -> dict[str, str]:
        return {pid: adapter.name for pid, adapter in self.adapters.items()}

    def participant_labels(self) -> dict[str, str]:
        tags = {pid: adapter.kind for pid, adapter in self.adapters.items()}
        return self.session.participant_display_names(self.participant_names(), tags)

    def statuses(self) -> list[ParticipantStatus]:
        return [self.controllers[pid].status() for pid in self.session.participant_ids if pid in self.controllers]

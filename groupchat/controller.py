"""
Per-participant turn controller.

One controller owns one agent adapter and runs two polling loops on the chat's
event loop:

  * the input loop waits for the agent to be stably idle, looks for new log
    messages written by someone else, and queues a prompt for delivery;
  * the capture loop waits for the agent to become stably idle again after an
    injection, reads what it printed, and posts the cleaned reply (or records
    a pass).

At most one turn is in flight and at most one payload waits for delivery.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from groupchat import config
from groupchat.adapters.base import AdapterGoneError, AgentAdapter, IdleTracker
from groupchat.debug_log import GroupChatDebugLog
from groupchat.models import (
    ActiveTurn,
    Message,
    MessageSource,
    ParticipantPhase,
    ParticipantStatus,
    PendingDelivery,
    utc_now,
)
from groupchat.output_filter import OutputKind, classify_output, clean_output, content_fingerprint
from groupchat.prompt_config import PromptConfig
from groupchat.session import Session

logger = logging.getLogger(__name__)

AUTO_RESPONSE_CAP_REACHED = "auto-response cap reached"


@dataclass
class ControllerSettings:
    poll_interval: float = config.POLL_INTERVAL
    stability_threshold: float = config.IDLE_STABILITY_THRESHOLD
    retry_base_interval: float = config.RETRY_BASE_INTERVAL
    retry_max_interval: float = config.RETRY_MAX_INTERVAL
    max_auto_responses: int = config.MAX_AUTO_RESPONSES     # 0 = unlimited
    capture_timeout: float = config.CAPTURE_TIMEOUT         # 0 = wait forever
    echo_max_span: int = config.ECHO_MAX_SPAN


def retry_delay(attempt: int, base: float, cap: float) -> float:
    """Backoff before retry number `attempt` (1-based): min(cap, base * 2^(attempt-1))."""
    return min(cap, base * (2 ** max(attempt - 1, 0)))


class ControllerHost(Protocol):
    """What a controller needs from the coordinator that owns it."""

    def handle_pass_state_change(self, participant_id: str, did_pass: bool) -> None:
        ...

    def participant_labels(self) -> dict[str, str]:
        ...


class HistorySaver(Protocol):
    async def save(self, session: Session) -> None:
        ...

    def transcript_path(self, chat_id: str) -> str:
        ...


class ParticipantController:
    def __init__(
        self,
        session: Session,
        adapter: AgentAdapter,
        prompt_config: PromptConfig,
        host: Optional[ControllerHost] = None,
        history_store: Optional[HistorySaver] = None,
        settings: Optional[ControllerSettings] = None,
        debug_log: Optional[GroupChatDebugLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.adapter = adapter
        self.participant_id = adapter.participant_id
        self.prompt_config = prompt_config
        self.host = host
        self.history_store = history_store
        self.settings = settings or ControllerSettings()
        self.debug_log = debug_log
        self._clock = clock

        # Highest log sequence this participant has fully processed
        self.last_seen_sequence = 0
        self.is_processing = False
        self.active_turn: Optional[ActiveTurn] = None
        self.pending_delivery: Optional[PendingDelivery] = None
        self.consecutive_pass_count = 0
        self.auto_response_count = 0
        self.posted_turn_ids: set[str] = set()
        self.posted_fingerprints: set[str] = set()
        self._passed_turn_ids: set[str] = set()

        self.phase = ParticipantPhase.IDLE
        self.last_failure: Optional[str] = None
        self.next_retry_delay: Optional[float] = None
        self._updated_at = utc_now()

        self._idle = IdleTracker(self.settings.stability_threshold, clock)
        self._pending_notification: Optional[int] = None
        self._turn_counter = 0
        self._input_lock = asyncio.Lock()
        self._capture_lock = asyncio.Lock()
        self._delivery_lock = asyncio.Lock()
        self._loop_tasks: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()
        self._retry_task: Optional[asyncio.Task] = None
        self._shut_down = False

    # ─────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────

    def start(self) -> None:
        """Start both polling loops on the running event loop."""
        if self._shut_down:
            raise RuntimeError(f"Controller {self.participant_id} was shut down")
        if self._loop_tasks:
            return
        self._loop_tasks = [
            asyncio.create_task(self._run_loop(self._capture_tick), name=f"capture-{self.participant_id}"),
            asyncio.create_task(self._run_loop(self._input_tick), name=f"input-{self.participant_id}"),
        ]
        logger.info(f"Controller started: participant={self.participant_id} ({self.adapter.name}) chat={self.session.id}")

    def stop(self) -> None:
        """Abandon the current turn and pending delivery. Polling keeps running."""
        self._cancel_retry()
        self.pending_delivery = None
        if self.active_turn is not None:
            self.active_turn.abandoned = True
        self.active_turn = None
        self.is_processing = False
        self._pending_notification = None
        self.next_retry_delay = None
        self._idle.reset()
        self._set_phase(ParticipantPhase.IDLE)
        self._debug("stop", "stopped")

    def reset(self) -> None:
        """Stop, then start a fresh round from the current end of the log."""
        self.stop()
        self.last_seen_sequence = self.session.sequence
        self.consecutive_pass_count = 0
        self.auto_response_count = 0
        self.last_failure = None

    def shutdown(self) -> None:
        """Terminal: stop, cancel every loop, timer and background task."""
        if self._shut_down:
            return
        self.stop()
        self._shut_down = True
        for task in [*self._loop_tasks, *self._background]:
            task.cancel()
        self._loop_tasks = []
        self._background.clear()
        self._set_phase(ParticipantPhase.STOPPED)
        logger.info(f"Controller shut down: participant={self.participant_id} chat={self.session.id}")

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    async def _run_loop(self, tick: Callable) -> None:
        while True:
            try:
                await tick()
            except Exception:
                logger.exception(f"[{self.adapter.name}] {tick.__name__} failed")
            await asyncio.sleep(self.settings.poll_interval)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self.adapter.name}] background task failed: {task.exception()!r}")

    # ─────────────────────────────────────────────
    # Idle detection
    # ─────────────────────────────────────────────

    async def _stably_idle(self) -> bool:
        raw = await self.adapter.is_idle()
        return self._idle.update(raw)

    # ─────────────────────────────────────────────
    # Input side
    # ─────────────────────────────────────────────

    def deliver_message(self, sequence: int) -> None:
        """Fan-out signal from the coordinator: the log now ends at `sequence`."""
        if self._shut_down:
            return
        if self.is_processing:
            self._pending_notification = max(self._pending_notification or 0, sequence)
            return
        self._spawn(self._input_tick())

    async def _input_tick(self) -> None:
        if self._input_lock.locked():
            return
        async with self._input_lock:
            if self.is_processing or self._shut_down:
                return
            try:
                stable = await self._stably_idle()
            except AdapterGoneError as e:
                self._record_failure(e.reason)
                return
            if stable and not self.is_processing:
                self.check_for_new_messages()

    def check_for_new_messages(self) -> None:
        """Queue a prompt if someone else wrote to the log since our last turn."""
        if self._shut_down:
            return
        if self.is_processing:
            self._pending_notification = self.session.sequence
            return

        new_messages = self.session.messages_after(self.last_seen_sequence)
        if not new_messages:
            return

        relevant = [m for m in new_messages if m.source.participant_id != self.participant_id]
        if not relevant:
            # Only our own echoes: never look at them again
            self.last_seen_sequence = self.session.sequence
            self._debug("check", "skip_self_only", seq=self.session.sequence)
            return

        if any(m.source.kind == "user" for m in relevant):
            self.auto_response_count = 0
        cap = self.settings.max_auto_responses
        if cap and self.auto_response_count >= cap:
            if self.last_failure != AUTO_RESPONSE_CAP_REACHED:
                self.last_failure = AUTO_RESPONSE_CAP_REACHED
                self._debug("check", "capped", count=self.auto_response_count)
            return

        pending = self.pending_delivery
        if pending is not None and pending.covers_sequence >= self.session.sequence:
            return

        self._set_phase(ParticipantPhase.CHECKING)
        payload = self.build_payload(len(relevant))
        self._debug("check", "enqueue", new=len(relevant), seq=self.session.sequence)
        self._enqueue_delivery(payload)

    def build_payload(self, new_message_count: int) -> str:
        labels = self._labels()
        my_name = labels.get(self.participant_id) or self.adapter.name
        others = [labels[pid] for pid in self.session.participant_ids if pid != self.participant_id and pid in labels]
        transcript_path = str(self.history_store.transcript_path(self.session.id)) if self.history_store else ""
        return self.prompt_config.render(
            my_name=my_name,
            participants=", ".join(others),
            transcript_path=transcript_path,
            new_message_count=new_message_count,
        )

    def _labels(self) -> dict[str, str]:
        if self.host is not None:
            return self.host.participant_labels()
        return self.session.participant_display_names({self.participant_id: self.adapter.name})

    # ─────────────────────────────────────────────
    # Delivery (one-slot queue with backoff)
    # ─────────────────────────────────────────────

    def _enqueue_delivery(self, payload: str) -> None:
        self._cancel_retry()
        self.pending_delivery = PendingDelivery(payload=payload, covers_sequence=self.session.sequence)
        self.next_retry_delay = None
        self._set_phase(ParticipantPhase.DELIVERING)
        self._spawn(self._attempt_delivery())

    async def _attempt_delivery(self) -> None:
        if self._delivery_lock.locked():
            return
        async with self._delivery_lock:
            if self.pending_delivery is None or self.is_processing or self._shut_down:
                return
            failure = None
            try:
                ready = await self.adapter.can_accept_input()
                if not ready:
                    failure = "adapter not ready"
            except AdapterGoneError as e:
                ready = False
                failure = e.reason

            # A newer payload may have replaced the one we checked for
            pending = self.pending_delivery
            if pending is None or self.is_processing or self._shut_down:
                return
            pending.attempts += 1
            if not ready:
                pending.last_failure = failure
                self._record_failure(failure)
                delay = retry_delay(pending.attempts, self.settings.retry_base_interval, self.settings.retry_max_interval)
                self._debug("deliver", "retry", attempt=pending.attempts, delay=delay, reason=failure)
                self._schedule_retry(delay)
                return
            await self._inject(pending)

    def _schedule_retry(self, delay: float) -> None:
        self._cancel_retry()
        self.next_retry_delay = delay
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._retry_task is asyncio.current_task():
            self._retry_task = None
        await self._attempt_delivery()

    def _cancel_retry(self) -> None:
        task = self._retry_task
        self._retry_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _inject(self, pending: PendingDelivery) -> None:
        self._set_phase(ParticipantPhase.INJECTING)
        try:
            marker = await self.adapter.current_marker()
        except AdapterGoneError as e:
            self._record_failure(e.reason)
            self._set_phase(ParticipantPhase.DELIVERING)
            self._schedule_retry(retry_delay(pending.attempts, self.settings.retry_base_interval, self.settings.retry_max_interval))
            return

        pending = self.pending_delivery
        if pending is None or self.is_processing or self._shut_down:
            return

        self._turn_counter += 1
        injected_at = self.session.sequence
        turn = ActiveTurn(
            token=uuid.uuid4().hex,
            turn_id=f"{self.participant_id}:{injected_at}:{self._turn_counter}",
            run_id=str(uuid.uuid4()),
            injected_at_sequence=injected_at,
            payload=pending.payload,
            output_marker=marker,
            started_at=self._clock(),
            previous_seen_sequence=self.last_seen_sequence,
            delivery_attempts=pending.attempts,
        )
        self.active_turn = turn
        self.is_processing = True
        self.last_seen_sequence = injected_at
        self.pending_delivery = None
        self.next_retry_delay = None
        self._idle.reset()

        failure = "inject failed"
        try:
            ok = await self.adapter.inject(turn.payload)
        except AdapterGoneError as e:
            ok = False
            failure = e.reason
        if turn.abandoned:
            return
        if not ok:
            self._requeue(turn, failure)
            return

        self.last_failure = None
        self._set_phase(ParticipantPhase.AWAITING_OUTPUT)
        self._debug("inject", "injected", turn=turn.turn_id, seq=injected_at)
        logger.debug(f"[{self.adapter.name}] injected turn {turn.turn_id}")

    def _requeue(self, turn: ActiveTurn, failure: str) -> None:
        """Put an undelivered or lost turn's payload back into the delivery slot."""
        turn.abandoned = True
        if self.active_turn is turn:
            self.active_turn = None
            self.is_processing = False
        self.last_seen_sequence = turn.previous_seen_sequence
        self._record_failure(failure)
        if self.pending_delivery is None:
            self.pending_delivery = PendingDelivery(
                payload=turn.payload,
                covers_sequence=turn.injected_at_sequence,
                attempts=turn.delivery_attempts,
                last_failure=failure,
            )
        self._set_phase(ParticipantPhase.DELIVERING)
        self._debug("deliver", "requeued", turn=turn.turn_id, reason=failure)
        self._schedule_retry(retry_delay(
            self.pending_delivery.attempts, self.settings.retry_base_interval, self.settings.retry_max_interval
        ))

    # ─────────────────────────────────────────────
    # Capture side
    # ─────────────────────────────────────────────

    async def _capture_tick(self) -> None:
        if self._capture_lock.locked():
            return
        async with self._capture_lock:
            turn = self.active_turn
            if turn is None or self.phase is not ParticipantPhase.AWAITING_OUTPUT:
                return

            timeout = self.settings.capture_timeout
            if timeout and self._clock() - turn.started_at > timeout:
                logger.warning(f"[{self.adapter.name}] no output for turn {turn.turn_id} after {timeout}s, abandoning")
                self._debug("capture", "timeout", turn=turn.turn_id)
                self._abandon_turn(turn, "capture timeout")
                self._after_turn()
                return

            try:
                if not await self._stably_idle():
                    return
                await self.capture(turn)
            except AdapterGoneError as e:
                logger.warning(f"[{self.adapter.name}] adapter lost during turn {turn.turn_id}: {e.reason}")
                if not turn.abandoned:
                    self._requeue(turn, e.reason)

    async def capture(self, turn: Optional[ActiveTurn] = None) -> Optional[OutputKind]:
        """Read, clean and classify the output of `turn` (default: the active one)."""
        turn = turn or self.active_turn
        if turn is None or turn.abandoned:
            return None

        if self.active_turn is turn:
            self._set_phase(ParticipantPhase.CAPTURING)
        raw = await self.adapter.read_output_since(turn.output_marker)
        if turn.abandoned:
            return None

        keyword = self.prompt_config.pass_keyword
        cleaned = clean_output(raw, turn.payload, keyword, self.settings.echo_max_span)
        kind = classify_output(cleaned, keyword)
        self._debug("capture", kind.value, turn=turn.turn_id, output=raw)

        if kind is OutputKind.EMPTY:
            if self.active_turn is turn:
                self._set_phase(ParticipantPhase.AWAITING_OUTPUT)
            return kind

        if turn.turn_id in self._passed_turn_ids or turn.turn_id in self.posted_turn_ids:
            self._debug("classify", "duplicate_turn", turn=turn.turn_id)
            return kind

        if kind is OutputKind.PASS:
            self._record_pass(turn)
        else:
            await self._post_reply(turn, cleaned)
        self._after_turn()
        return kind

    def _record_pass(self, turn: ActiveTurn) -> None:
        self._passed_turn_ids.add(turn.turn_id)
        self.consecutive_pass_count += 1
        self._finish_turn(turn)
        self._debug("classify", "pass", turn=turn.turn_id, consecutive=self.consecutive_pass_count)
        logger.info(f"[{self.adapter.name}] passed (consecutive={self.consecutive_pass_count})")
        self._notify_host(did_pass=True)

    async def _post_reply(self, turn: ActiveTurn, content: str) -> None:
        fingerprint = f"{turn.injected_at_sequence}:{content_fingerprint(content)}"
        if turn.turn_id in self.posted_turn_ids or fingerprint in self.posted_fingerprints:
            self._debug("post", "duplicate", turn=turn.turn_id)
            self._finish_turn(turn)
            return
        self.posted_turn_ids.add(turn.turn_id)
        self.posted_fingerprints.add(fingerprint)

        self.consecutive_pass_count = 0
        self._finish_turn(turn)
        self._notify_host(did_pass=False)

        message = Message(
            source=MessageSource.agent(self.adapter.name, self.participant_id, self.adapter.color),
            content=content,
        )
        seq = self.session.append(message)
        self.auto_response_count += 1
        self._debug("post", "posted", turn=turn.turn_id, seq=seq, chars=len(content))
        logger.info(f"[{self.adapter.name}] posted reply seq={seq} chat={self.session.id}")
        await self._persist()

    async def _persist(self) -> None:
        if self.history_store is None:
            return
        try:
            await self.history_store.save(self.session)
        except Exception as e:
            logger.warning(f"History save failed for chat {self.session.id}: {type(e).__name__}: {e}")

    def _finish_turn(self, turn: ActiveTurn) -> None:
        if self.active_turn is turn:
            self.active_turn = None
            self.is_processing = False
            self._set_phase(ParticipantPhase.IDLE)

    def _abandon_turn(self, turn: ActiveTurn, reason: str) -> None:
        turn.abandoned = True
        self._finish_turn(turn)
        self._record_failure(reason)

    def _after_turn(self) -> None:
        """Pick up whatever arrived while the turn was running."""
        self._pending_notification = None
        if not self.is_processing and not self._shut_down:
            self.check_for_new_messages()

    def _notify_host(self, did_pass: bool) -> None:
        if self.host is not None:
            self.host.handle_pass_state_change(self.participant_id, did_pass)

    # ─────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────

    def _set_phase(self, phase: ParticipantPhase) -> None:
        if self._shut_down and phase is not ParticipantPhase.STOPPED:
            return
        self.phase = phase
        self._updated_at = utc_now()

    def _record_failure(self, reason: Optional[str]) -> None:
        self.last_failure = reason
        self._updated_at = utc_now()

    def _debug(self, category: str, decision: str, output: Optional[str] = None, **metadata) -> None:
        if self.debug_log is not None:
            self.debug_log.log(self.session.id, self.participant_id, category, decision, output=output, **metadata)

    def status(self) -> ParticipantStatus:
        pending = self.pending_delivery
        return ParticipantStatus(
            participant_id=self.participant_id,
            name=self.adapter.name,
            phase=self.phase,
            is_processing=self.is_processing,
            last_seen_sequence=self.last_seen_sequence,
            consecutive_pass_count=self.consecutive_pass_count,
            auto_response_count=self.auto_response_count,
            pending_attempts=pending.attempts if pending else 0,
            next_retry_delay=self.next_retry_delay,
            last_failure=self.last_failure,
            active_turn_id=self.active_turn.turn_id if self.active_turn else None,
            updated_at=self._updated_at,
        )

"""
Unit tests for the group chat coordinator: fan-out, stall aggregation and participant changes.
"""
import asyncio

import pytest

from conftest import FakeAdapter, settle, stable_input_tick
from groupchat.coordinator import GroupChatCoordinator
from groupchat.models import Message, MessageSource
from groupchat.prompt_config import PromptConfig
from groupchat.session import Session


def _coordinator(adapters, settings, clock, start=False):
    session = Session("group")
    coordinator = GroupChatCoordinator(session, adapters, PromptConfig(), settings=settings, clock=clock)
    coordinator.setup_controllers(start=start)
    return coordinator, session


async def _inject_all(coordinator, clock):
    clock.advance(coordinator.settings.stability_threshold)
    for controller in coordinator.controllers.values():
        await controller._input_tick()
    await settle()


# ─────────────────────────────────────────────
# Fan-out
# ─────────────────────────────────────────────

class TestFanOut:
    @pytest.mark.asyncio
    async def test_author_is_not_notified(self, settings, clock):
        a, b = FakeAdapter("A"), FakeAdapter("B")
        coordinator, session = _coordinator([a, b], settings, clock)
        notified = []
        for pid, controller in coordinator.controllers.items():
            controller.deliver_message = lambda seq, pid=pid: notified.append((pid, seq))

        session.append(Message(source=MessageSource.agent("A", a.participant_id), content="hi"))

        assert notified == [(b.participant_id, 1)]
        coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_user_message_reaches_everyone(self, settings, clock):
        a, b = FakeAdapter("A"), FakeAdapter("B")
        coordinator, session = _coordinator([a, b], settings, clock)

        seq = await coordinator.send_user_message("hello")
        await settle()
        await _inject_all(coordinator, clock)

        assert seq == 1
        assert len(a.injected) == 1 and len(b.injected) == 1
        assert coordinator.is_conversation_active
        coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_payload_names_other_participants(self, settings, clock):
        a, b, c = FakeAdapter("Codex"), FakeAdapter("Codex"), FakeAdapter("Claude")
        coordinator, session = _coordinator([a, b, c], settings, clock)

        await coordinator.send_user_message("hello")
        await settle()
        await _inject_all(coordinator, clock)

        payload = c.injected[0]
        assert f"Codex@fake-{a.participant_id.replace('-', '')[:6]}" in payload
        assert f"Codex@fake-{b.participant_id.replace('-', '')[:6]}" in payload
        assert '"Claude"' in payload
        coordinator.shutdown()


# ─────────────────────────────────────────────
# Stall aggregation
# ─────────────────────────────────────────────

class TestStall:
    @pytest.mark.asyncio
    async def test_all_pass_stalls_until_user_speaks(self, settings, clock):
        a, b = FakeAdapter("A", replies=["[PASS]"]), FakeAdapter("B", replies=["[PASS]"])
        coordinator, session = _coordinator([a, b], settings, clock)
        await coordinator.send_user_message("anyone?")
        await settle()
        await _inject_all(coordinator, clock)

        await coordinator.controllers[a.participant_id].capture()
        assert coordinator.is_stalled is False
        await coordinator.controllers[b.participant_id].capture()
        assert coordinator.is_stalled is True

        await coordinator.send_user_message("wake up")
        assert coordinator.is_stalled is False
        assert all(c.consecutive_pass_count == 0 for c in coordinator.controllers.values())
        coordinator.shutdown()

    def test_real_reply_clears_stall(self, settings, clock):
        a, b = FakeAdapter("A"), FakeAdapter("B")
        coordinator = GroupChatCoordinator(Session("group"), [a, b], PromptConfig(), settings=settings, clock=clock)
        coordinator.sync_controllers_to_participants()

        coordinator.handle_pass_state_change(a.participant_id, True)
        coordinator.handle_pass_state_change(b.participant_id, True)
        assert coordinator.is_stalled
        coordinator.handle_pass_state_change(a.participant_id, False)
        assert coordinator.is_stalled is False

    @pytest.mark.asyncio
    async def test_three_participant_round(self, settings, clock):
        a = FakeAdapter("A", replies=["[PASS]"])
        b = FakeAdapter("B", replies=["[PASS]"])
        c = FakeAdapter("C", replies=["hi"])
        coordinator, session = _coordinator([a, b, c], settings, clock)
        ctrl = coordinator.controllers

        await coordinator.send_user_message("hello")
        await settle()
        await _inject_all(coordinator, clock)

        await ctrl[a.participant_id].capture()
        await ctrl[b.participant_id].capture()
        await ctrl[c.participant_id].capture()
        await settle()

        assert session.sequence == 2
        assert session.messages[-1].content == "hi"
        assert coordinator.is_stalled is False
        assert ctrl[a.participant_id].consecutive_pass_count == 1
        assert ctrl[b.participant_id].consecutive_pass_count == 1
        assert ctrl[a.participant_id].last_seen_sequence == 1
        assert ctrl[b.participant_id].last_seen_sequence == 1

        # next poll picks up C's reply
        await stable_input_tick(ctrl[a.participant_id], clock)
        await stable_input_tick(ctrl[b.participant_id], clock)
        assert len(a.injected) == 2 and len(b.injected) == 2
        assert len(c.injected) == 1
        coordinator.shutdown()


# ─────────────────────────────────────────────
# Participants and lifecycle
# ─────────────────────────────────────────────

class TestParticipants:
    @pytest.mark.asyncio
    async def test_add_and_remove(self, settings, clock):
        a, b = FakeAdapter("A"), FakeAdapter("B")
        coordinator, session = _coordinator([a], settings, clock)
        await coordinator.send_user_message("before b joined")

        controller = coordinator.add_participant(b)
        assert controller.last_seen_sequence == 1
        assert session.participant_ids == [a.participant_id, b.participant_id]
        assert coordinator.participant_names() == {a.participant_id: "A", b.participant_id: "B"}

        coordinator.remove_participant(a.participant_id)
        assert list(coordinator.controllers) == [b.participant_id]
        assert session.participant_ids == [b.participant_id]
        coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_stop_all_keeps_loops_running(self, settings, clock):
        a = FakeAdapter("A")
        coordinator, session = _coordinator([a], settings, clock, start=True)
        controller = coordinator.controllers[a.participant_id]
        await coordinator.send_user_message("hello")
        await settle()
        await _inject_all(coordinator, clock)

        coordinator.stop_all()

        assert controller.active_turn is None
        assert not controller.is_shut_down
        assert all(not t.done() for t in controller._loop_tasks)
        coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_unsubscribes(self, settings, clock):
        a = FakeAdapter("A")
        coordinator, session = _coordinator([a], settings, clock, start=True)
        coordinator.shutdown()
        await asyncio.sleep(0)

        session.append(Message(source=MessageSource.user(), content="anyone?"))
        await settle()

        assert coordinator.controllers[a.participant_id].is_shut_down
        assert a.injected == []
        with pytest.raises(RuntimeError):
            await coordinator.send_user_message("too late")

    @pytest.mark.asyncio
    async def test_statuses_follow_participant_order(self, settings, clock):
        a, b = FakeAdapter("A"), FakeAdapter("B")
        coordinator, session = _coordinator([a, b], settings, clock)

        names = [s.name for s in coordinator.statuses()]

        assert names == ["A", "B"]
        coordinator.shutdown()

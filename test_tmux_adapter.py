"""
Unit tests for the tmux adapter. tmux itself is never executed.
"""
import pytest

from groupchat.adapters.base import AdapterGoneError, AgentAdapter
from groupchat.adapters.tmux import TmuxAdapter


class FakeProcess:
    def __init__(self, returncode=0, stdout=b"", stderr=b""):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr
        self.stdin_data = None

    async def communicate(self, data=None):
        self.stdin_data = data
        return self._stdout, self._stderr


def _adapter():
    return TmuxAdapter("pid-1", "Codex", "work:0.1")


def _script(adapter, responses):
    """Replace the tmux call with a scripted one; returns the list of recorded calls."""
    calls = []

    async def fake_tmux(*args, stdin=None):
        calls.append((args, stdin))
        result = responses.pop(0) if responses else ""
        if isinstance(result, Exception):
            raise result
        return result

    adapter._tmux = fake_tmux
    return calls


def test_satisfies_adapter_protocol():
    assert isinstance(_adapter(), AgentAdapter)


def test_from_spec_requires_target():
    with pytest.raises(ValueError):
        TmuxAdapter.from_spec({"name": "Codex"})
    adapter = TmuxAdapter.from_spec({"name": "Codex", "target": "s:1", "id": "x", "color": "#fff"})
    assert (adapter.participant_id, adapter.target, adapter.color) == ("x", "s:1", "#fff")


# ─────────────────────────────────────────────
# Idle detection
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_idle_needs_unchanged_tail():
    adapter = _adapter()
    _script(adapter, ["❯ \n", "❯ \n", "new output\n❯ \n"])
    assert await adapter.is_idle() is False
    assert await adapter.is_idle() is True
    assert await adapter.is_idle() is False


@pytest.mark.asyncio
async def test_busy_marker_is_not_idle():
    adapter = _adapter()
    screen = "✻ Thinking… (4s · esc to interrupt)\n"
    _script(adapter, [screen, screen])
    await adapter.is_idle()
    assert await adapter.is_idle() is False


@pytest.mark.asyncio
async def test_capture_failure_is_not_idle():
    adapter = _adapter()
    _script(adapter, [RuntimeError("tmux capture-pane failed")])
    assert await adapter.is_idle() is False


# ─────────────────────────────────────────────
# Input / output
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_inject_pastes_then_submits():
    adapter = _adapter()
    calls = _script(adapter, [])
    assert await adapter.inject("line one\nline two") is True
    assert [c[0][0] for c in calls] == ["load-buffer", "paste-buffer", "send-keys"]
    assert calls[0][1] == "line one\nline two"
    assert calls[2][0][-1] == "Enter"


@pytest.mark.asyncio
async def test_inject_failure_returns_false():
    adapter = _adapter()
    _script(adapter, [RuntimeError("tmux load-buffer failed")])
    assert await adapter.inject("hi") is False


@pytest.mark.asyncio
async def test_marker_and_output_since():
    adapter = _adapter()
    _script(adapter, ["120 5\n", "l0\nl1\nl2\nl3"])
    assert await adapter.current_marker() == 125
    assert await adapter.read_output_since(2) == "l2\nl3"


# ─────────────────────────────────────────────
# Subprocess errors
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_missing_pane_raises_adapter_gone(monkeypatch):
    async def fake_exec(*args, **kwargs):
        return FakeProcess(returncode=1, stderr=b"can't find pane: %7")

    monkeypatch.setattr("groupchat.adapters.tmux.asyncio.create_subprocess_exec", fake_exec)
    with pytest.raises(AdapterGoneError) as exc_info:
        await _adapter().current_marker()
    assert exc_info.value.participant_id == "pid-1"


@pytest.mark.asyncio
async def test_other_tmux_errors_are_runtime_errors(monkeypatch):
    async def fake_exec(*args, **kwargs):
        return FakeProcess(returncode=1, stderr=b"unknown option")

    monkeypatch.setattr("groupchat.adapters.tmux.asyncio.create_subprocess_exec", fake_exec)
    assert await _adapter().inject("hi") is False


@pytest.mark.asyncio
async def test_stdin_is_passed_to_tmux(monkeypatch):
    procs = []

    async def fake_exec(*args, **kwargs):
        procs.append((args, FakeProcess(stdout=b"ok")))
        return procs[-1][1]

    monkeypatch.setattr("groupchat.adapters.tmux.asyncio.create_subprocess_exec", fake_exec)
    assert await _adapter()._tmux("load-buffer", "-b", "buf", "-", stdin="héllo") == "ok"
    args, proc = procs[0]
    assert args[:2] == ("tmux", "load-buffer")
    assert proc.stdin_data == "héllo".encode("utf-8")

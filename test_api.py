"""
HTTP API tests using FastAPI's TestClient.
The history store runs on an in-memory database; participants are scripted fake adapters.
"""
import json

import pytest
from fastapi.testclient import TestClient

import groupchat.main as main_mod
from conftest import FakeAdapter
from groupchat.models import Message, MessageEvent, MessageSource

PARTICIPANTS = [
    {"kind": "fake", "name": "Codex", "id": "p-codex"},
    {"kind": "fake", "name": "Claude", "id": "p-claude"},
]


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(main_mod, "DB_PATH", ":memory:")
    monkeypatch.setattr(main_mod, "TRANSCRIPT_DIR", tmp_path / "transcripts")
    monkeypatch.setattr(main_mod, "PROMPT_CONFIG_PATH", tmp_path / "prompt.json")
    monkeypatch.setitem(
        main_mod.ADAPTER_FACTORIES, "fake",
        lambda spec: FakeAdapter(spec["name"], participant_id=spec.get("id"), color=spec.get("color")),
    )
    with TestClient(main_mod.app) as c:
        yield c


def _create(client, title="design review"):
    resp = client.post("/api/chats", json={"title": title, "participants": PARTICIPANTS})
    assert resp.status_code == 201
    return resp.json()


# ─────────────────────────────────────────────
# Chats
# ─────────────────────────────────────────────

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_create_and_list(client):
    chat = _create(client)
    assert chat["title"] == "design review"
    assert [p["name"] for p in chat["participants"]] == ["Codex", "Claude"]
    assert chat["sequence"] == 0
    assert chat["is_stalled"] is False

    listed = client.get("/api/chats").json()
    assert [c["id"] for c in listed] == [chat["id"]]


def test_unknown_participant_kind_rejected(client):
    resp = client.post("/api/chats", json={"title": "x", "participants": [{"kind": "carrier-pigeon", "name": "P"}]})
    assert resp.status_code == 400


def test_tmux_participant_requires_target(client):
    resp = client.post("/api/chats", json={"title": "x", "participants": [{"kind": "tmux", "name": "Codex"}]})
    assert resp.status_code == 400


def test_unknown_chat_is_404(client):
    assert client.get("/api/chats/nope/messages").status_code == 404
    assert client.post("/api/chats/nope/messages", json={"content": "hi"}).status_code == 404
    assert client.delete("/api/chats/nope").status_code == 404


# ─────────────────────────────────────────────
# Messages and controls
# ─────────────────────────────────────────────

def test_post_and_read_messages(client):
    chat = _create(client)
    resp = client.post(f"/api/chats/{chat['id']}/messages", json={"content": "hello team"})
    assert resp.status_code == 201
    body = resp.json()
    assert body["seq"] == 1
    assert body["source"] == {"kind": "user"}

    msgs = client.get(f"/api/chats/{chat['id']}/messages", params={"after_seq": 0}).json()
    assert [(m["seq"], m["content"]) for m in msgs] == [(1, "hello team")]
    assert client.get(f"/api/chats/{chat['id']}/messages", params={"after_seq": 1}).json() == []


def test_status_stop_reset(client):
    chat = _create(client)
    status = client.get(f"/api/chats/{chat['id']}/status").json()
    assert [s["name"] for s in status["statuses"]] == ["Codex", "Claude"]

    assert client.post(f"/api/chats/{chat['id']}/stop").json() == {"ok": True}
    assert client.post(f"/api/chats/{chat['id']}/reset").json() == {"ok": True}


def test_sse_frame_format():
    event = MessageEvent(message=Message(source=MessageSource.user(), content="hi"), sequence=4)
    frame = main_mod._sse(event)
    lines = frame.split("\n")
    assert lines[:2] == ["id: 4", "event: message"]
    data_line = lines[2]
    assert data_line.startswith("data: ")
    payload = json.loads(data_line[len("data: "):])
    assert payload["seq"] == 4
    assert payload["content"] == "hi"
    assert frame.endswith("\n\n")


# ─────────────────────────────────────────────
# Closed-chat bin
# ─────────────────────────────────────────────

def test_close_restore_delete(client):
    chat = _create(client)
    client.post(f"/api/chats/{chat['id']}/messages", json={"content": "remember this"})

    assert client.delete(f"/api/chats/{chat['id']}").status_code == 200
    closed = client.get("/api/chats/closed").json()
    assert [(c["id"], c["message_count"]) for c in closed] == [(chat["id"], 1)]

    resp = client.post(f"/api/chats/closed/{chat['id']}/restore", json={"participants": PARTICIPANTS[:1]})
    assert resp.status_code == 409

    resp = client.post(f"/api/chats/closed/{chat['id']}/restore", json={"participants": PARTICIPANTS})
    assert resp.status_code == 201
    assert resp.json()["sequence"] == 1
    assert client.delete(f"/api/chats/closed/{chat['id']}").status_code == 404

    client.delete(f"/api/chats/{chat['id']}")
    assert client.delete(f"/api/chats/closed/{chat['id']}").status_code == 200
    assert client.get("/api/chats/closed").json() == []


# ─────────────────────────────────────────────
# Prompt configuration
# ─────────────────────────────────────────────

def test_prompt_config_update_and_reset(client, tmp_path):
    default = client.get("/api/prompt-config").json()
    assert default["pass_keyword"] == "[PASS]"

    updated = client.put("/api/prompt-config", json={"pass_keyword": " [SKIP] "}).json()
    assert updated["pass_keyword"] == "[SKIP]"
    assert json.loads((tmp_path / "prompt.json").read_text(encoding="utf-8"))["pass_keyword"] == "[SKIP]"

    assert client.put("/api/prompt-config", json={"pass_keyword": "  "}).status_code == 400

    reset = client.post("/api/prompt-config/reset").json()
    assert reset == default


def test_settings_saved_for_next_start(client, tmp_path, monkeypatch):
    import groupchat.config as config_mod
    monkeypatch.setattr(config_mod, "CONFIG_FILE", tmp_path / "config.json")

    current = client.get("/api/settings").json()
    assert "MAX_AUTO_RESPONSES" in current and "PORT" in current

    resp = client.put("/api/settings", json={"MAX_AUTO_RESPONSES": 3})
    assert resp.status_code == 200
    assert resp.json()["restart_required"] is True
    assert json.loads((tmp_path / "config.json").read_text(encoding="utf-8")) == {"MAX_AUTO_RESPONSES": 3}

    assert client.put("/api/settings", json={}).status_code == 400
    assert client.put("/api/settings", json={"MAX_AUTO_RESPONSES": -1}).status_code == 400

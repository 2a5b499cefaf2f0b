import json
import os
import time

import pytest
from fastapi.testclient import TestClient

from carememo.main import create_app

BASE = "/api/offline/conversations"


def _write_config(tmp_path, **overrides) -> str:
    config = {
        "retention": {"enabled": False},
        "watcher": {"enabled": False},
        "max_audio_bytes": 1000,
    }
    config.update(overrides)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return str(path)


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    app = create_app(_write_config(tmp_path), str(tmp_path / "storage"), env={})
    with TestClient(app) as client:
        yield client


def _upload(client, data=b"\x00" * 800, filename="talk.wav", **fields):
    form = {"user_id": "user1", "person_name": "Alice", "notes": "Sunday visit"}
    form.update(fields)
    return client.post(
        f"{BASE}/upload", files={"audio": (filename, data, "audio/wav")}, data=form
    )


def _wait_for_conversations(client, user_id="user1", expected=1) -> list[dict]:
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        body = client.get(f"{BASE}/{user_id}").json()
        if body["pagination"]["totalItems"] >= expected:
            return body["conversations"]
        time.sleep(0.05)
    raise AssertionError("conversation was not processed in time")


def test_health_reports_capabilities(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["capabilities"]["transcription"] == "fallback"
    assert body["capabilities"]["summarization"] == "fallback"
    assert body["watcher"] is False


def test_upload_is_processed_in_background(client):
    response = _upload(client)
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "processing"
    assert body["personName"] == "Alice"
    assert body["filename"].startswith("conversation_")
    assert body["filename"].endswith(".wav")

    [conversation] = _wait_for_conversations(client)
    assert conversation["personName"] == "Alice"
    assert conversation["notes"] == "Sunday visit"
    assert conversation["processingStatus"] == "completed"
    assert conversation["transcriptionTier"] == "fallback"
    assert conversation["metadata"]["source"] == "upload"
    assert conversation["timestamp"].endswith("Z")


def test_conversation_lifecycle(client):
    _upload(client)
    [conversation] = _wait_for_conversations(client)
    url = f"{BASE}/user1/{conversation['id']}"

    assert client.get(url).json()["id"] == conversation["id"]

    patched = client.patch(url, json={"notes": "Remember the cake", "tags": ["family"]})
    assert patched.status_code == 200
    assert patched.json()["tags"] == ["family"]
    assert client.get(url).json()["notes"] == "Remember the cake"

    audio = client.get(f"{BASE}/user1/audio/{conversation['id']}")
    assert audio.status_code == 200
    assert audio.content == b"\x00" * 800

    by_person = client.get(f"{BASE}/user1/by-person/Alice").json()
    assert by_person["total"] == 1

    stats = client.get(f"{BASE}/user1/stats").json()
    assert stats["stats"]["totalConversations"] == 1
    assert "Alice" in stats["personStats"]

    assert client.delete(url).status_code == 200
    assert client.get(url).status_code == 404
    assert client.get(f"{BASE}/user1/audio/{conversation['id']}").status_code == 404

def test_colliding_upload_claims_the_path_it_writes(client, tmp_path, monkeypatch):
    monkeypatch.setattr(
        "carememo.routers.conversations._upload_filename", lambda original: "conversation_1_1.wav"
    )
    user_audio = tmp_path / "storage" / "audio" / "user1"
    user_audio.mkdir(parents=True, exist_ok=True)
    existing = user_audio / "conversation_1_1.wav"
    existing.write_bytes(b"older recording")

    processor = client.app.state.processor
    original_claim = processor.claim
    claims = []

    def recording_claim(path):
        claims.append((os.path.basename(path), os.path.exists(path)))
        return original_claim(path)

    monkeypatch.setattr(processor, "claim", recording_claim)

    assert _upload(client).status_code == 201
    [conversation] = _wait_for_conversations(client)

    stored_name = os.path.basename(conversation["audioPath"])
    assert stored_name.endswith("_conversation_1_1.wav")
    assert (stored_name, False) in claims
    assert not processor.is_claimed(str(existing))
    assert existing.read_bytes() == b"older recording"



def test_upload_validation(client):
    assert _upload(client, data=b"\x00" * 1001).status_code == 413
    assert _upload(client, filename="notes.txt").status_code == 400
    assert _upload(client, person_name="   ").status_code == 400
    assert _upload(client, user_id="bad user").status_code == 400


def test_unknown_records(client):
    assert client.get(f"{BASE}/user1/conv_missing").status_code == 404
    assert client.delete(f"{BASE}/user1/conv_missing").status_code == 404
    assert client.get(f"{BASE}/nobody").json()["conversations"] == []
    assert client.get(f"{BASE}/bad user").status_code == 400


def test_daily_summary(client):
    empty = client.post(f"{BASE}/user1/daily-summary", json={"date": "2020-01-01"})
    assert empty.status_code == 200
    assert empty.json()["dailySummary"] == "No conversations were recorded today."
    assert empty.json()["tier"] == "fallback"

    _upload(client)
    _wait_for_conversations(client)
    today = client.post(f"{BASE}/user1/daily-summary").json()
    assert today["conversationCount"] == 1
    assert today["dailySummary"].startswith("You had 1 conversation today with Alice.")

    assert client.post(f"{BASE}/user1/daily-summary", json={"date": "soon"}).status_code == 400


def test_cleanup_endpoints(client):
    status = client.get("/api/offline/cleanup/status").json()
    assert status["isRunning"] is False
    assert status["retentionMonths"] == 1

    run = client.post("/api/offline/cleanup/run")
    assert run.status_code == 200
    assert run.json()["failedUsers"] == []

    user = client.post("/api/offline/cleanup/users/user1", json={"months": 2})
    assert user.status_code == 200
    assert user.json()["deletedConversations"] == 0

    updated = client.put("/api/offline/cleanup/settings", json={"months": 4})
    assert updated.json()["retentionMonths"] == 4
    assert client.put("/api/offline/cleanup/settings", json={"schedule": "whenever"}).status_code == 400


def test_lifespan_starts_and_stops_background_services(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = _write_config(tmp_path, retention={"enabled": True}, watcher={"enabled": True})
    app = create_app(config, str(tmp_path / "storage"), env={})

    with TestClient(app) as client:
        assert app.state.scheduler.running
        assert app.state.watcher.running
        assert client.get("/api/health").json()["retention"] is True

    assert not app.state.scheduler.running
    assert not app.state.watcher.running

"""Tests for the operator JSON API."""

import asyncio
import threading
from types import SimpleNamespace

import pytest

import dashboard
from channel_cache import JoinedChannel
from constants import USER_FRIENDLY_ERRORS
from errors import AlreadyActive, BackendUnavailable, NotFound


class FakeBridge:
    name = "discord"
    is_running = True

    def __init__(self, outcome=True):
        channel = JoinedChannel(id=100, label="Home/#general")
        channel.add_user(1, "Alice")
        self.text_channels = (channel,)
        self.dialogue = SimpleNamespace(remaining=0)
        self.platform = SimpleNamespace(parse_id=int)
        self.outcome = outcome
        self.calls = []

    async def start_proactive_dialogue(self, channel_id, user_id, count):
        self.calls.append((channel_id, user_id, count))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=1)
    loop.close()


@pytest.fixture
def client(loop, monkeypatch):
    bridge = FakeBridge()
    monkeypatch.setattr(dashboard, "bridges", {"discord": bridge})
    monkeypatch.setattr(dashboard, "event_loop", loop)
    dashboard.app.config["TESTING"] = True
    with dashboard.app.test_client() as c:
        c.bridge = bridge
        yield c


class TestStatus:

    def test_status(self, client):
        data = client.get("/api/status").get_json()
        assert data == {"bridges": [{
            "platform": "discord", "running": True, "channels": 1, "users": 1, "dialogue_remaining": 0,
        }]}

    def test_channels(self, client):
        data = client.get("/api/channels/discord").get_json()
        assert data["channels"][0]["users"][0]["canonical_name"] == "Alice"
        assert client.get("/api/channels/matrix").status_code == 404


class TestDialogue:

    def test_starts_dialogue(self, client):
        response = client.post("/api/dialogue", json={
            "platform": "discord", "channel_id": "100", "user_id": "1", "count": 3,
        })
        assert response.status_code == 200
        assert response.get_json() == {"started": True, "opening_sent": True, "count": 3}
        assert client.bridge.calls == [(100, 1, 3)]

    @pytest.mark.parametrize("error,status,key", [
        (AlreadyActive("busy"), 409, "already_active"),
        (NotFound("who"), 404, "not_found"),
        (BackendUnavailable("down"), 503, "unavailable"),
    ])
    def test_errors_map_to_status(self, client, error, status, key):
        client.bridge.outcome = error
        response = client.post("/api/dialogue", json={"platform": "discord", "channel_id": 100, "user_id": 1})
        assert response.status_code == status
        assert response.get_json()["error"] == USER_FRIENDLY_ERRORS[key]

    def test_bad_input(self, client):
        assert client.post("/api/dialogue", json={"platform": "discord", "user_id": 1}).status_code == 400
        assert client.post("/api/dialogue", json={"platform": "discord", "channel_id": "x", "user_id": 1}).status_code == 400
        assert client.post("/api/dialogue", json={"platform": "irc"}).status_code == 404
        assert client.post("/api/dialogue", data="nope").status_code == 404
        assert client.bridge.calls == []

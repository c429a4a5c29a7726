import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect, WebSocketState

from cyberdefense.core.auth import generate_tokens
from cyberdefense.services.notifications import NotificationManager


def test_rejects_missing_or_bad_token(client, user):
    for url in ("/ws", "/ws?token=garbage", f"/ws?token={user['refresh']}"):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(url) as ws:
                ws.receive_json()
        assert exc.value.code == 1008


def test_rejects_token_for_unknown_user(client):
    token = generate_tokens("ghost", "ghost@cyberlab.io", client.app.state.settings)["accessToken"]
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.receive_json()
    assert exc.value.code == 1008


def test_handshake_ping_and_subscribe(client, user):
    with client.websocket_connect(f"/ws?token={user['access']}") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connected"
        assert hello["data"] == {"message": "Connected to CyberDefense Simulator"}
        assert isinstance(hello["timestamp"], int)

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        ws.send_json({"type": "subscribe", "data": {"channels": ["achievements", "progress"]}})
        confirmed = ws.receive_json()
        assert confirmed["type"] == "subscription_confirmed"
        assert confirmed["data"] == {"channels": ["achievements", "progress"]}

        # Junk is ignored and the socket stays usable
        ws.send_text("{not json")
        ws.send_json({"type": "dance"})
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        stats = client.app.state.notifier.get_connection_stats()
        assert stats == {"connectedUsers": 1, "totalConnections": 1}

    assert client.app.state.notifier.get_connection_stats() == {"connectedUsers": 0, "totalConnections": 0}


def test_scenario_start_is_echoed_to_user(client, user):
    with client.websocket_connect(f"/ws?token={user['access']}") as ws:
        ws.receive_json()
        ws.send_json({"type": "scenario_start", "data": {"scenarioId": 2}})
        msg = ws.receive_json()
        assert msg["type"] == "scenario_started"
        assert msg["data"] == {"scenarioId": 2}

        ws.send_json({"type": "scenario_progress", "data": {"scenarioId": 2, "step": 3}})
        assert ws.receive_json()["type"] == "scenario_progress_update"


def test_completion_pushes_notifications(client, user):
    with client.websocket_connect(f"/ws?token={user['access']}") as ws:
        ws.receive_json()
        r = client.put(f"/api/users/{user['id']}/scenarios/2", headers=user["headers"],
                       json={"completed": True, "score": 70})
        assert r.status_code == 200

        completed = ws.receive_json()
        assert completed["type"] == "scenario_completed"
        assert completed["data"]["scenarioId"] == 2
        assert completed["data"]["xpEarned"] == 200

        progress = ws.receive_json()
        assert progress["type"] == "progress_update"
        assert progress["data"]["domainId"] == 4
        assert progress["data"]["progress"] == 100

        earned = {ws.receive_json()["data"]["name"] for _ in r.json()["data"]["newAchievements"]}
        assert earned == {a["name"] for a in r.json()["data"]["newAchievements"]}
        assert "First Steps" in earned

        board = ws.receive_json()
        assert board["type"] == "leaderboard_update"
        assert board["data"][0]["id"] == user["id"]
        assert board["data"][0]["xp"] == 200


class FakeSocket:
    """Stands in for a connected WebSocket whose sends can be made to fail."""

    def __init__(self, fail=False):
        self.client_state = WebSocketState.CONNECTED
        self.fail = fail
        self.sent = []

    async def accept(self):
        pass

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


def test_failed_sends_drop_the_socket():
    manager = NotificationManager()

    async def scenario():
        good = await manager.connect("u1", FakeSocket())
        bad = await manager.connect("u1", FakeSocket())
        bad.websocket.fail = True
        other = await manager.connect("u2", FakeSocket())

        sent = await manager.broadcast_to_user("u1", "progress_update", {"progress": 50})
        assert sent == 1
        assert manager.connections["u1"] == [good]

        assert await manager.broadcast_to_all("leaderboard_update", []) == 2
        assert other.websocket.sent[-1]["type"] == "leaderboard_update"

        manager.disconnect(good)
        assert "u1" not in manager.connections

    asyncio.run(scenario())


def test_token_from_authorization_header(client, user):
    with client.websocket_connect("/ws", headers={"Authorization": f"Bearer {user['access']}"}) as ws:
        assert ws.receive_json()["type"] == "connected"

"""
Per-user WebSocket notifications.

Every frame is JSON: {"type": ..., "data": ..., "timestamp": <epoch ms>}.
All methods run on the event loop; the connection map is never touched from
worker threads.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocket, WebSocketState

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def make_message(msg_type: str, data: Any = None) -> dict:
    return {"type": msg_type, "data": jsonable_encoder(data), "timestamp": now_ms()}


@dataclass(eq=False)
class Connection:
    user_id: str
    websocket: WebSocket
    subscriptions: List[str] = field(default_factory=list)


class NotificationManager:
    def __init__(self):
        self.connections: Dict[str, List[Connection]] = {}

    # ========== Connection lifecycle ==========
    async def connect(self, user_id: str, websocket: WebSocket) -> Connection:
        await websocket.accept()
        conn = Connection(user_id=user_id, websocket=websocket)
        self.connections.setdefault(user_id, []).append(conn)
        logger.info(f"WebSocket connected for user {user_id}", extra={"user_id": user_id})
        await self._send(conn, make_message("connected", {"message": "Connected to CyberDefense Simulator"}))
        return conn

    def disconnect(self, conn: Connection) -> None:
        user_conns = self.connections.get(conn.user_id)
        if not user_conns or conn not in user_conns:
            return
        user_conns.remove(conn)
        if not user_conns:
            del self.connections[conn.user_id]
        logger.info(f"WebSocket disconnected for user {conn.user_id}", extra={"user_id": conn.user_id})

    # ========== Incoming ==========
    async def handle_message(self, conn: Connection, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid WebSocket message from user {conn.user_id}")
            return
        if not isinstance(message, dict):
            logger.warning(f"Invalid WebSocket message from user {conn.user_id}")
            return

        msg_type = message.get("type")
        data = message.get("data")
        if msg_type == "ping":
            await self._send(conn, make_message("pong"))
        elif msg_type == "subscribe":
            channels = data.get("channels", []) if isinstance(data, dict) else []
            conn.subscriptions = [str(c) for c in channels]
            await self._send(conn, make_message("subscription_confirmed", {"channels": conn.subscriptions}))
        elif msg_type == "scenario_start":
            await self.broadcast_to_user(conn.user_id, "scenario_started", data)
        elif msg_type == "scenario_progress":
            await self.broadcast_to_user(conn.user_id, "scenario_progress_update", data)
        else:
            logger.warning(f"Unknown WebSocket message type: {msg_type}")

    # ========== Outgoing ==========
    async def _send(self, conn: Connection, message: dict) -> bool:
        if conn.websocket.client_state != WebSocketState.CONNECTED:
            self.disconnect(conn)
            return False
        try:
            await conn.websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"Dropping WebSocket for user {conn.user_id}: {e}")
            self.disconnect(conn)
            return False

    async def broadcast_to_user(self, user_id: str, msg_type: str, data: Any = None) -> int:
        """Send to every socket the user has open. Returns how many sends succeeded."""
        message = make_message(msg_type, data)
        sent = 0
        for conn in list(self.connections.get(user_id, [])):
            if await self._send(conn, message):
                sent += 1
        return sent

    async def broadcast_to_all(self, msg_type: str, data: Any = None) -> int:
        message = make_message(msg_type, data)
        sent = 0
        for user_conns in list(self.connections.values()):
            for conn in list(user_conns):
                if await self._send(conn, message):
                    sent += 1
        return sent

    async def notify_achievement_earned(self, user_id: str, achievement: dict) -> None:
        await self.broadcast_to_user(user_id, "achievement_earned", achievement)

    async def notify_progress_update(self, user_id: str, progress: dict) -> None:
        await self.broadcast_to_user(user_id, "progress_update", progress)

    async def notify_scenario_completed(self, user_id: str, result: dict) -> None:
        await self.broadcast_to_user(user_id, "scenario_completed", result)

    async def notify_leaderboard_update(self, leaderboard: Optional[list]) -> None:
        await self.broadcast_to_all("leaderboard_update", leaderboard)

    def get_connection_stats(self) -> dict:
        return {
            "connectedUsers": len(self.connections),
            "totalConnections": sum(len(c) for c in self.connections.values()),
        }

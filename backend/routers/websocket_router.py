# routers/websocket_router.py — Real-time leaderboard / rank push
import logging
from datetime import datetime, timezone
from typing import Dict, Set, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from jose import jwt, JWTError

import auth
from notifier import PushChannel

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("rankforge.ws")

CHANNELS = {"leaderboard", "rank"}


class ConnectionManager(PushChannel):
    """Tracks player connections and channel subscriptions.

    A player with no subscriptions receives every event; subscribing narrows
    delivery to the chosen channels ("leaderboard", "rank").
    """

    def __init__(self):
        self._connections: Dict[str, WebSocket] = {}  # player_id -> ws
        self._subscriptions: Dict[str, Set[str]] = {}  # channel -> {player_ids}

    async def connect(self, websocket: WebSocket, player_id: str):
        await websocket.accept()
        self._connections[player_id] = websocket
        logger.info(f"WS connected: player={player_id[:8]}")

    def disconnect(self, player_id: str):
        self._connections.pop(player_id, None)
        for channel in list(self._subscriptions.keys()):
            self._subscriptions[channel].discard(player_id)
        logger.info(f"WS disconnected: player={player_id[:8]}")

    def subscribe(self, player_id: str, channel: str):
        self._subscriptions.setdefault(channel, set()).add(player_id)

    def unsubscribe(self, player_id: str, channel: str):
        if channel in self._subscriptions:
            self._subscriptions[channel].discard(player_id)

    def _wants(self, player_id: str, channel: str) -> bool:
        subscribed = [c for c, members in self._subscriptions.items() if player_id in members]
        return not subscribed or channel in subscribed

    async def broadcast(self, event_type: str, payload: dict) -> None:
        channel = event_type.split(".", 1)[0]
        message = {
            "type": event_type,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        disconnected = []
        for player_id, ws in list(self._connections.items()):
            if not self._wants(player_id, channel):
                continue
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append(player_id)
        for player_id in disconnected:
            self.disconnect(player_id)

    def get_stats(self) -> dict:
        return {
            "total_connections": len(self._connections),
            "channels": {c: len(members) for c, members in self._subscriptions.items()},
        }


# Process-wide push channel, handed to the engine by main.lifespan
manager = ConnectionManager()


def _verify_ws_token(token: str) -> Optional[dict]:
    """Verify JWT token for WebSocket authentication"""
    try:
        payload = jwt.decode(token, auth.SECRET_KEY, algorithms=[auth.ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "access" or not payload.get("sub"):
        return None
    return payload


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
):
    """Push channel for leaderboard.update and rank.update events"""
    payload = _verify_ws_token(token)
    if not payload:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    player_id = payload["sub"]
    await manager.connect(websocket, player_id)
    await websocket.send_json({
        "type": "connected",
        "player_id": player_id,
        "channels": sorted(CHANNELS),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "")

            if msg_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})

            elif msg_type in ("subscribe", "unsubscribe"):
                channel = data.get("channel", "")
                if channel not in CHANNELS:
                    await websocket.send_json({"type": "error", "detail": f"Unknown channel: {channel}"})
                    continue
                if msg_type == "subscribe":
                    manager.subscribe(player_id, channel)
                else:
                    manager.unsubscribe(player_id, channel)
                await websocket.send_json({"type": f"{msg_type}d", "channel": channel})

    except WebSocketDisconnect:
        manager.disconnect(player_id)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        manager.disconnect(player_id)


@router.get("/ws/stats")
async def websocket_stats():
    """Get WebSocket connection statistics"""
    return manager.get_stats()

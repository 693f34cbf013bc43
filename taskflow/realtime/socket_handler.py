"""
WebSocket endpoint for live observers.

Clients send JSON frames shaped ``{"action": ..., ...}``:

- ``join`` / ``leave`` with ``topic`` (``project:{id}``, ``channel:{id}``, own ``user:{id}``)
- ``heartbeat``
- ``typing:start`` / ``typing:stop`` with ``channelId`` (and optionally ``userName``),
  relayed to the channel's other subscribers
"""
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from taskflow.reminders.metrics import live_connections
from .events import channel_topic, parse_topic, user_topic
from .presence import PresenceState

logger = logging.getLogger(__name__)

ws_router = APIRouter()


async def _send_error(websocket: Any, message: str) -> None:
    await websocket.send_json({"event": "error", "topic": None, "data": {"message": message}})


async def handle_client_message(components: Any, websocket: Any, user_id: str, frame: Dict[str, Any]) -> None:
    router = components.router
    action = frame.get("action")

    if action in ("join", "leave"):
        try:
            kind, ident = parse_topic(frame.get("topic", ""))
        except ValueError as e:
            await _send_error(websocket, str(e))
            return
        if kind == "user" and ident != user_id:
            await _send_error(websocket, "Cannot join another user's topic")
            return
        topic = f"{kind}:{ident}"
        if action == "join":
            router.subscribe(websocket, topic)
        else:
            router.unsubscribe(websocket, topic)
        ack = "subscribed" if action == "join" else "unsubscribed"
        await websocket.send_json({"event": ack, "topic": topic, "data": None})
        return

    if action == "heartbeat":
        previous = components.presence.heartbeat(user_id)
        if previous != PresenceState.ONLINE:
            await router.publish_presence(user_id, PresenceState.ONLINE)
        return

    if action in ("typing:start", "typing:stop"):
        channel_id = frame.get("channelId")
        if not channel_id:
            await _send_error(websocket, "channelId is required")
            return
        payload = {"userId": user_id, "channelId": channel_id}
        if action == "typing:start" and frame.get("userName"):
            payload["userName"] = frame["userName"]
        await router.publish(channel_topic(channel_id), action, payload, exclude=websocket)
        return

    await _send_error(websocket, f"Unknown action: {action}")


@ws_router.websocket("/ws/{user_id}")
async def observer_socket(websocket: WebSocket, user_id: str):
    components = websocket.app.state.reminders
    router = components.router
    presence = components.presence

    await websocket.accept()
    router.subscribe(websocket, user_topic(user_id))
    live_connections.inc()
    presence.connected(user_id)
    logger.info("🔌 [WebSocket] Observer %s connected", user_id)
    await websocket.send_json({"event": "presence:snapshot", "topic": None, "data": presence.snapshot()})
    await router.publish_presence(user_id, PresenceState.ONLINE)

    async def went_offline(observer_id: str) -> None:
        await router.publish_presence(observer_id, PresenceState.OFFLINE)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await _send_error(websocket, "Invalid JSON")
                continue
            if not isinstance(frame, dict):
                await _send_error(websocket, "Expected a JSON object")
                continue
            await handle_client_message(components, websocket, user_id, frame)
    except WebSocketDisconnect:
        logger.info("🔌 [WebSocket] Observer %s disconnected", user_id)
    finally:
        router.disconnect(websocket)
        live_connections.dec()
        presence.disconnected(user_id, on_offline=went_offline)

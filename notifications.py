"""
Live updates via WebSocket, fanned out to role groups.

Delivery is fire-and-forget: nothing is acknowledged, retried or stored,
and a subscriber that connects after an event never sees it.
"""
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from logging_config import get_logger

logger = get_logger("notifications")

GROUPS = ("student", "driver", "management")

# Outbound event names
FEEDBACK_RECEIVED = "feedbackReceived"
BUS_LOCATION_UPDATE = "busLocationUpdate"
BUS_REQUEST_RECEIVED = "busRequestReceived"

# Client messages that may be relayed, and the token roles allowed to send them
RELAY_ROLES = {
    "newFeedback": {"student", "management"},
    "locationUpdate": {"driver", "management"},
    "newBusRequest": {"student"},
}


class Broadcaster:
    def __init__(self):
        self.groups: Dict[str, Set[WebSocket]] = {g: set() for g in GROUPS}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()

    def join(self, websocket: WebSocket, group: str):
        self.groups[group].add(websocket)
        logger.info(f"Subscriber joined {group} room ({len(self.groups[group])} connected)")

    def disconnect(self, websocket: WebSocket):
        for members in self.groups.values():
            members.discard(websocket)

    def subscriber_count(self, group: Optional[str] = None) -> int:
        if group:
            return len(self.groups.get(group, ()))
        return sum(len(m) for m in self.groups.values())

    async def broadcast(self, group: str, event: str, data: Any) -> int:
        delivered = 0
        for connection in list(self.groups.get(group, ())):
            try:
                await connection.send_json({"event": event, "data": data})
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping dead subscriber from {group}: {e}")
                self.disconnect(connection)
        return delivered

    async def feedback_received(self, payload: dict) -> int:
        delivered = await self.broadcast("management", FEEDBACK_RECEIVED, payload)
        if payload.get("busId"):
            delivered += await self.broadcast("driver", FEEDBACK_RECEIVED, payload)
        return delivered

    async def location_update(self, payload: dict) -> int:
        return await self.broadcast("student", BUS_LOCATION_UPDATE, payload)

    async def bus_request_received(self, payload: dict) -> int:
        return await self.broadcast("management", BUS_REQUEST_RECEIVED, payload)

    async def handle_message(self, websocket: WebSocket, role: str, message: dict):
        """Dispatch one client frame from a connection authenticated as `role`"""
        if not isinstance(message, dict):
            await websocket.send_json({"event": "error", "data": {"message": "Frame must be a JSON object"}})
            return
        event = message.get("event")
        data = message.get("data") or {}
        if not isinstance(data, dict):
            await websocket.send_json({"event": "error", "data": {"message": "Event data must be a JSON object"}})
            return

        if event == "joinRoom":
            claimed = data.get("role")
            if claimed != role:
                logger.warning(f"Refused joinRoom for {claimed!r} from a {role} token")
                await websocket.send_json({"event": "error", "data": {"message": "Role does not match token"}})
                return
            self.join(websocket, role)
            await websocket.send_json({"event": "joined", "data": {"role": role}})
            return

        if event not in RELAY_ROLES:
            await websocket.send_json({"event": "error", "data": {"message": f"Unknown event {event!r}"}})
            return
        if role not in RELAY_ROLES[event]:
            await websocket.send_json({"event": "error", "data": {"message": f"{role} may not send {event}"}})
            return

        if event == "newFeedback":
            await self.feedback_received(data)
        elif event == "locationUpdate":
            await self.location_update(data)
        elif event == "newBusRequest":
            await self.bus_request_received(data)


broadcaster = Broadcaster()

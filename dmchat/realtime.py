"""
Realtime fan-out of chat updates over WebSockets.

Each chat id names a channel (room). Connections subscribe and unsubscribe
explicitly with joinChat / leaveChat frames; membership of the chat itself
plays no part. Updates are sent as chatUpdate events either to one room or,
for newly created chats, to every open connection.

Frames:
    client -> server: {"event": "joinChat" | "leaveChat", "data": "<chatId>"}
    server -> client: {"event": "chatUpdate", "data": {"chat": {...}, "type": "..."}}
"""

import logging
from typing import Dict, Optional, Protocol, Set

from fastapi import WebSocket

from dmchat.metrics import realtime_connections, record_chat_event
from dmchat.schemas import ChatResponse

logger = logging.getLogger(__name__)

CHAT_UPDATE_EVENT = "chatUpdate"
JOIN_CHAT_EVENT = "joinChat"
LEAVE_CHAT_EVENT = "leaveChat"


class ChatNotifier(Protocol):
    """What the chat handler needs from the realtime layer."""

    async def broadcast(self, event_type: str, chat: ChatResponse, room: Optional[str] = None) -> int:
        ...


class ConnectionManager:
    """
    Tracks open WebSocket connections and their room subscriptions.

    Attributes:
        connections: Every accepted connection
        rooms: Chat id -> connections subscribed to that chat
    """

    def __init__(self):
        self.connections: Set[WebSocket] = set()
        self.rooms: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.add(websocket)
        realtime_connections.set(len(self.connections))
        logger.info(f"Realtime connection opened ({len(self.connections)} open)")

    def disconnect(self, websocket: WebSocket) -> None:
        """Forget a connection and drop it from every room."""
        self.connections.discard(websocket)
        for room in list(self.rooms):
            self.leave(websocket, room)
        realtime_connections.set(len(self.connections))
        logger.info(f"Realtime connection closed ({len(self.connections)} open)")

    def join(self, websocket: WebSocket, chat_id) -> bool:
        """
        Subscribe a connection to a chat's room.

        Returns:
            False (and does nothing) when chat_id is not a string
        """
        if not isinstance(chat_id, str):
            return False
        self.rooms.setdefault(chat_id, set()).add(websocket)
        logger.debug(f"Connection joined chat {chat_id}")
        return True

    def leave(self, websocket: WebSocket, chat_id) -> bool:
        """Unsubscribe a connection from a chat's room. Non-string ids are ignored."""
        if not isinstance(chat_id, str):
            return False
        members = self.rooms.get(chat_id)
        if members is None:
            return True
        members.discard(websocket)
        if not members:
            del self.rooms[chat_id]
        logger.debug(f"Connection left chat {chat_id}")
        return True

    async def handle_frame(self, websocket: WebSocket, frame) -> None:
        """Apply one client frame. Unknown events and malformed frames are ignored."""
        if not isinstance(frame, dict):
            return
        event = frame.get("event")
        if event == JOIN_CHAT_EVENT:
            self.join(websocket, frame.get("data"))
        elif event == LEAVE_CHAT_EVENT:
            self.leave(websocket, frame.get("data"))

    async def broadcast(self, event_type: str, chat: ChatResponse, room: Optional[str] = None) -> int:
        """
        Send a chatUpdate event.

        Args:
            event_type: "created" or "newMessage"
            chat: Hydrated chat carried in the payload
            room: Chat id to scope the event to; None sends to every connection

        Returns:
            Number of connections the event was delivered to
        """
        targets = self.connections if room is None else self.rooms.get(room, set())
        frame = {
            "event": CHAT_UPDATE_EVENT,
            "data": {"chat": chat.to_json(), "type": event_type},
        }

        delivered = 0
        failed = []
        for websocket in list(targets):
            try:
                await websocket.send_json(frame)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping realtime connection after failed send: {e}")
                failed.append(websocket)
        for websocket in failed:
            self.disconnect(websocket)

        record_chat_event(event_type, "all" if room is None else "room")
        logger.info(
            f"Broadcast {event_type} for chat {chat.id} to {delivered} connection(s)",
            extra={"chat_id": chat.id, "room": room},
        )
        return delivered

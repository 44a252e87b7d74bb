from datetime import datetime, timezone
from typing import Any, Dict, Optional
import json
import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from connection_directory import ConnectionDirectory
from models.schemas import (
    SIGNAL_TYPES,
    ChatMessageEvent,
    ChatMessageRequest,
    ConnectedEvent,
    ErrorEvent,
    JoinRoomRequest,
    ParticipantInfo,
    RoomJoinedEvent,
    SignalEvent,
    SignalRequest,
    UserJoinedEvent,
    UserLeftEvent,
)
from room_manager import RoomRegistry

logger = logging.getLogger(__name__)
router = APIRouter()


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class SignalingRelay:
    """Routes signaling envelopes between websocket connections.

    Offer, answer and candidate payloads are forwarded untouched to the
    addressed connection; the relay only reads the fields it needs to route.
    Every envelope is handled to completion on the event loop before the next
    one, which keeps registry and directory updates serialized.
    """

    def __init__(self, registry: RoomRegistry, directory: ConnectionDirectory):
        self.registry = registry
        self.directory = directory
        self.connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        conn_id = uuid.uuid4().hex
        self.connections[conn_id] = websocket
        await self.send_to(conn_id, ConnectedEvent(id=conn_id))
        return conn_id

    async def disconnect(self, conn_id: str):
        self.connections.pop(conn_id, None)
        await self.leave(conn_id)

    async def handle(self, conn_id: str, message: Any):
        msg_type = message.get("type") if isinstance(message, dict) else None
        try:
            if msg_type == "join-room":
                await self.join(conn_id, JoinRoomRequest.model_validate(message))
            elif msg_type in SIGNAL_TYPES:
                await self.forward(conn_id, msg_type, SignalRequest.model_validate(message))
            elif msg_type == "chat-message":
                await self.relay_chat(conn_id, ChatMessageRequest.model_validate(message))
            elif msg_type == "leave-room":
                await self.leave(conn_id)
            else:
                await self.reject(conn_id, f"Unknown message type: {msg_type}")
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            await self.reject(conn_id, f"Invalid {msg_type} message: {fields}")

    async def join(self, conn_id: str, request: JoinRoomRequest):
        if self.directory.lookup(conn_id) is not None:
            # A connection sits in one room at a time
            await self.leave(conn_id)

        others = self.registry.list_participants(request.roomId)
        others.discard(conn_id)
        room = self.registry.add(request.roomId, conn_id)
        self.directory.register(conn_id, request.roomId, request.displayName)
        logger.info(f"{request.displayName} ({conn_id}) joined room {request.roomId}")

        await self.send_to(conn_id, RoomJoinedEvent(
            roomId=request.roomId,
            participants=[self.participant_info(pid) for pid in sorted(others)],
        ))
        await self.broadcast(request.roomId, UserJoinedEvent(
            id=conn_id,
            displayName=request.displayName,
            participantCount=len(room.participants),
        ), exclude=conn_id)

    async def forward(self, conn_id: str, msg_type: str, request: SignalRequest):
        target = request.targetParticipantId
        if target not in self.connections:
            logger.debug(f"Dropping {msg_type} from {conn_id}: {target} is not connected")
            return
        await self.send_to(target, SignalEvent(
            type=msg_type,
            fromParticipantId=conn_id,
            payload=request.payload,
        ))

    async def relay_chat(self, conn_id: str, request: ChatMessageRequest):
        entry = self.directory.lookup(conn_id)
        if entry is None:
            await self.reject(conn_id, "Join a room before sending chat messages")
            return
        await self.broadcast(entry.room_id, ChatMessageEvent(
            fromParticipantId=conn_id,
            displayName=entry.display_name,
            body=request.body,
            timestamp=utc_timestamp(),
        ), exclude=conn_id)

    async def leave(self, conn_id: str):
        entry = self.directory.lookup(conn_id)
        if entry is None:
            return
        self.registry.remove(entry.room_id, conn_id)
        self.directory.unregister(conn_id)
        logger.info(f"{entry.display_name} ({conn_id}) left room {entry.room_id}")

        remaining = self.registry.list_participants(entry.room_id)
        if remaining:
            await self.broadcast(entry.room_id, UserLeftEvent(
                id=conn_id,
                displayName=entry.display_name,
                participantCount=len(remaining),
            ))

    async def reject(self, conn_id: str, reason: str):
        logger.warning(f"Rejected message from {conn_id}: {reason}")
        await self.send_to(conn_id, ErrorEvent(message=reason))

    def participant_info(self, conn_id: str) -> ParticipantInfo:
        entry = self.directory.lookup(conn_id)
        return ParticipantInfo(id=conn_id, displayName=entry.display_name if entry else "Unknown")

    async def send_to(self, conn_id: str, event: BaseModel) -> bool:
        websocket = self.connections.get(conn_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(json.dumps(event.model_dump()))
            return True
        except Exception as e:
            logger.warning(f"Failed to send {getattr(event, 'type', 'message')} to {conn_id}: {e}")
            return False

    async def broadcast(self, room_id: str, event: BaseModel, exclude: Optional[str] = None):
        for conn_id in self.registry.list_participants(room_id):
            if conn_id != exclude:
                await self.send_to(conn_id, event)

    async def close(self):
        for conn_id, websocket in list(self.connections.items()):
            try:
                await websocket.close(code=1001)
            except Exception as e:
                logger.debug(f"Error closing connection {conn_id}: {e}")
        self.connections.clear()
        self.registry.clear()
        self.directory.clear()


@router.websocket("/ws")
async def signaling_endpoint(websocket: WebSocket):
    relay: SignalingRelay = websocket.app.state.relay
    await websocket.accept()
    conn_id = await relay.connect(websocket)
    logger.info(f"Connection opened: {conn_id}")

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await relay.reject(conn_id, "Malformed JSON")
                continue
            await relay.handle(conn_id, message)
    except WebSocketDisconnect:
        pass
    finally:
        logger.info(f"Connection closed: {conn_id}")
        await relay.disconnect(conn_id)

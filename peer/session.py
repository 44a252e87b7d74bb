"""Client-side chat session: signaling connection, peer mesh and chat routing.

`ChatSession` is what a UI embeds. It reports everything through a
`SessionObserver` and never touches UI code itself.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from config.signaling_config import get_api_url, get_ice_servers, get_signaling_url
from peer.dispatcher import MessageDispatcher
from peer.observer import Message, Participant, ParticipantChange, SessionObserver
from peer.orchestrator import PeerLinkOrchestrator
from peer.rtc import aiortc_transport_factory
from peer.signaling_client import SignalingConnectionError, WebSocketSignalingChannel
from peer.transport import TransportFactory

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[str], Awaitable[Any]]

GREETING_TIMEOUT = 10.0

# Envelopes that only make sense while we are in a room
ROOM_SCOPED = {"user-joined", "user-left", "offer", "answer", "ice-candidate", "chat-message"}


class ChatSession:
    def __init__(
        self,
        observer: SessionObserver,
        transport_factory: Optional[TransportFactory] = None,
        ice_servers: Optional[List[str]] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        self.observer = observer
        self.ice_servers = ice_servers if ice_servers is not None else get_ice_servers()
        self.transport_factory = transport_factory or aiortc_transport_factory(self.ice_servers)
        self.channel_factory = channel_factory or WebSocketSignalingChannel.open

        self.channel = None
        self.local_id = ""
        self.display_name = ""
        self.room_id = ""
        self.participants: Dict[str, Participant] = {}
        self.orchestrator: Optional[PeerLinkOrchestrator] = None
        self.dispatcher: Optional[MessageDispatcher] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.channel is not None

    @property
    def connection_state(self) -> str:
        if self.orchestrator is None:
            return "disconnected"
        return self.orchestrator.connection_state()

    @property
    def participant_count(self) -> int:
        # +1 for ourselves
        return len(self.participants) + 1

    async def connect(self, url: Optional[str] = None, timeout: float = GREETING_TIMEOUT):
        url = url or get_signaling_url()
        try:
            self.channel = await self.channel_factory(url)
            try:
                hello = await asyncio.wait_for(self.channel.receive(), timeout)
            except asyncio.TimeoutError:
                raise SignalingConnectionError(f"No greeting from signaling server within {timeout}s")
            if not hello or hello.get("type") != "connected":
                raise SignalingConnectionError(f"Unexpected greeting from signaling server: {hello}")
        except SignalingConnectionError as e:
            logger.error(f"Connection error: {e}")
            if self.channel is not None:
                await self.channel.close()
                self.channel = None
            self.observer.on_connection_state("disconnected")
            self.observer.on_failure("Failed to connect to server")
            raise

        self.local_id = hello["id"]
        self._closing = False
        self.orchestrator = PeerLinkOrchestrator(
            self.local_id,
            self._send,
            self.transport_factory,
            self.observer,
            self._on_channel_message,
        )
        self.dispatcher = MessageDispatcher(self.orchestrator, self._send, self.observer, self.local_id)
        self._reader = asyncio.create_task(self._read_loop(), name="signaling-reader")
        logger.info(f"Connected to signaling server as {self.local_id}")
        self.observer.on_connection_state("connected")

    async def create_room(self, api_url: Optional[str] = None) -> str:
        """Ask the server to allocate a fresh room id"""
        api_url = api_url or get_api_url()
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(f"{api_url}/api/rooms")
                response.raise_for_status()
                return response.json()["roomId"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"Failed to create room: {e}")
            self.observer.on_failure("Failed to create room")
            raise

    async def join_room(self, room_id: str, display_name: str):
        room_id, display_name = room_id.strip(), display_name.strip()
        if not room_id or not display_name:
            raise ValueError("Room id and display name are required")
        self._require_connection()
        if self.room_id:
            await self.leave_room()

        self.room_id = room_id
        self.display_name = display_name
        self.dispatcher.display_name = display_name
        await self._send({"type": "join-room", "roomId": room_id, "displayName": display_name})

    async def leave_room(self):
        # Clear the room first so envelopes arriving during teardown are dropped
        room_id, self.room_id = self.room_id, ""
        if room_id and self.channel is not None:
            await self._send({"type": "leave-room"})
        if self.orchestrator is not None:
            await self.orchestrator.close_all()
        self.participants.clear()
        if self.dispatcher is not None:
            self.dispatcher.names.clear()

    async def send_message(self, body: str) -> Message:
        if not body or not body.strip():
            raise ValueError("Message body must not be empty")
        self._require_connection()
        return await self.dispatcher.send(body)

    async def disconnect(self):
        self._closing = True
        self.room_id = ""
        if self.orchestrator is not None:
            await self.orchestrator.close_all()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self.channel is not None:
            await self.channel.close()
            self.channel = None
        self.room_id = ""
        self.participants.clear()
        self.observer.on_connection_state("disconnected")

    def _require_connection(self):
        if self.channel is None or self.dispatcher is None:
            raise SignalingConnectionError("Not connected to a signaling server")

    async def _send(self, message: Dict[str, Any]):
        if self.channel is None:
            logger.debug(f"Dropping {message.get('type')}: not connected")
            return
        try:
            await self.channel.send(message)
        except SignalingConnectionError as e:
            logger.warning(f"Could not send {message.get('type')}: {e}")

    async def _read_loop(self):
        while True:
            envelope = await self.channel.receive()
            if envelope is None:
                break
            try:
                await self._handle_envelope(envelope)
            except Exception as e:
                logger.error(f"Error handling {envelope.get('type')} envelope: {e}")

        if not self._closing:
            logger.warning("Signaling connection closed by server")
            self.channel = None
            self.room_id = ""
            self.participants.clear()
            await self.orchestrator.close_all()
            self.observer.on_connection_state("disconnected")

    async def _handle_envelope(self, envelope: Dict[str, Any]):
        msg_type = envelope.get("type")
        logger.debug(f"Received {msg_type}")

        if msg_type in ROOM_SCOPED and not self.room_id:
            logger.debug(f"Dropping {msg_type}: not in a room")
            return

        if msg_type == "room-joined":
            self.room_id = envelope["roomId"]
            for participant in envelope.get("participants", []):
                self._participant_joined(participant["id"], participant["displayName"])
        elif msg_type == "user-joined":
            self._participant_joined(envelope["id"], envelope["displayName"])
        elif msg_type == "user-left":
            await self._participant_left(envelope["id"], envelope.get("displayName", ""))
        elif msg_type == "offer":
            await self.orchestrator.handle_offer(envelope["fromParticipantId"], envelope["payload"])
        elif msg_type == "answer":
            self.orchestrator.handle_answer(envelope["fromParticipantId"], envelope["payload"])
        elif msg_type == "ice-candidate":
            self.orchestrator.handle_candidate(envelope["fromParticipantId"], envelope["payload"])
        elif msg_type == "chat-message":
            self.dispatcher.receive_relayed(envelope)
        elif msg_type == "error":
            logger.warning(f"Signaling server error: {envelope.get('message')}")
            self.observer.on_failure(envelope.get("message", "Signaling error"))
        else:
            logger.debug(f"Ignoring envelope of type {msg_type}")

    def _participant_joined(self, participant_id: str, display_name: str):
        if participant_id == self.local_id or participant_id in self.participants:
            return
        participant = Participant(id=participant_id, display_name=display_name)
        self.participants[participant_id] = participant
        self.dispatcher.names[participant_id] = display_name
        self.observer.on_participant_changed(ParticipantChange(kind="joined", participant=participant))
        # Full mesh: every member opens a link toward every other member
        self.orchestrator.peer_discovered(participant_id)

    async def _participant_left(self, participant_id: str, display_name: str):
        participant = self.participants.pop(participant_id, None)
        self.dispatcher.names.pop(participant_id, None)
        await self.orchestrator.peer_left(participant_id)
        if participant is None:
            logger.debug(f"Ignoring departure of unknown participant {participant_id} ({display_name})")
            return
        self.observer.on_participant_changed(ParticipantChange(kind="left", participant=participant))

    def _on_channel_message(self, remote_id: str, text: str):
        self.dispatcher.receive_direct(remote_id, text)

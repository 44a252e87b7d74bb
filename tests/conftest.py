import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from connection_directory import ConnectionDirectory
from peer.session import ChatSession
from room_manager import RoomRegistry
from signaling import SignalingRelay


class RecordingObserver:
    def __init__(self):
        self.messages = []
        self.changes = []
        self.states = []
        self.failures = []

    def on_message(self, message):
        self.messages.append(message)

    def on_participant_changed(self, change):
        self.changes.append(change)

    def on_connection_state(self, state):
        self.states.append(state)

    def on_failure(self, error):
        self.failures.append(error)


class FakeWebSocket:
    """Server-side socket stand-in that records what the relay sends"""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail
        self.closed = False

    async def send_text(self, text: str):
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000):
        self.closed = True

    def of_type(self, msg_type: str):
        return [m for m in self.sent if m["type"] == msg_type]


class LoopbackSocket:
    def __init__(self, inbox: asyncio.Queue):
        self.inbox = inbox

    async def send_text(self, text: str):
        self.inbox.put_nowait(json.loads(text))

    async def close(self, code: int = 1000):
        self.inbox.put_nowait(None)


class InMemorySignalingChannel:
    """Client channel wired straight into a SignalingRelay, no sockets involved"""

    def __init__(self, relay: SignalingRelay):
        self.relay = relay
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.outbound: List[Dict[str, Any]] = []
        self.received: List[Dict[str, Any]] = []
        self.conn_id: Optional[str] = None
        self.closed = False

    async def attach(self):
        self.conn_id = await self.relay.connect(LoopbackSocket(self.inbox))

    async def send(self, message):
        self.outbound.append(message)
        await self.relay.handle(self.conn_id, message)

    async def receive(self):
        message = await self.inbox.get()
        if message is not None:
            self.received.append(message)
        return message

    async def close(self):
        if not self.closed:
            self.closed = True
            await self.relay.disconnect(self.conn_id)

    async def drop(self):
        """Abrupt transport loss: the server notices, the client reader stops"""
        await self.close()
        self.inbox.put_nowait(None)

    def sent_of_type(self, msg_type: str):
        return [m for m in self.outbound if m["type"] == msg_type]

    def received_of_type(self, msg_type: str):
        return [m for m in self.received if m["type"] == msg_type]


class FakeTransport:
    def __init__(self, network: "FakeNetwork", remote_id: str, events):
        self.network = network
        self.remote_id = remote_id
        self.events = events
        self.peer: Optional["FakeTransport"] = None
        self.open = False
        self.closed = False
        self.sent: List[str] = []
        self.candidates: List[Dict[str, Any]] = []

    async def create_offer(self):
        if self.network.fail_offers:
            raise RuntimeError("could not create offer")
        token = self.network.register_offer(self)
        self.events.candidate_ready({"candidate": f"candidate:{token}", "sdpMid": "0", "sdpMLineIndex": 0})
        return {"type": "offer", "sdp": token}

    async def accept_offer(self, offer):
        if not isinstance(offer, dict) or offer.get("type") != "offer":
            raise ValueError("malformed remote description")
        self.network.answerers[offer["sdp"]] = self
        return {"type": "answer", "sdp": offer["sdp"]}

    async def accept_answer(self, answer):
        if not isinstance(answer, dict) or answer.get("type") != "answer":
            raise ValueError("malformed remote description")
        answerer = self.network.answerers.get(answer["sdp"])
        if answerer is None or answerer.closed:
            raise RuntimeError("remote side is gone")
        self.peer, answerer.peer = answerer, self
        if self.network.auto_link:
            self.open = answerer.open = True
            self.events.channel_open()
            answerer.events.channel_open()

    async def add_candidate(self, candidate):
        self.candidates.append(candidate)

    def send(self, text: str):
        if not self.open or self.peer is None:
            raise RuntimeError("data channel is not open")
        self.sent.append(text)
        self.peer.events.channel_message(text)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.open = False
        self.network.closed.append(self)
        if self.peer is not None and not self.peer.closed:
            self.peer.events.transport_closed("remote closed")


class FakeNetwork:
    """Pairs FakeTransports by offer token; links open when an answer lands"""

    def __init__(self, auto_link: bool = True):
        self.auto_link = auto_link
        self.fail_offers = False
        self.offers: Dict[str, FakeTransport] = {}
        self.answerers: Dict[str, FakeTransport] = {}
        self.transports: List[FakeTransport] = []
        self.closed: List[FakeTransport] = []

    def register_offer(self, transport: FakeTransport) -> str:
        token = f"offer-{len(self.offers)}"
        self.offers[token] = transport
        return token

    def factory(self, remote_id: str, events) -> FakeTransport:
        transport = FakeTransport(self, remote_id, events)
        self.transports.append(transport)
        return transport


async def drain_links(orchestrator):
    """Wait until every live link has applied its queued negotiation steps"""
    if orchestrator is None:
        return
    links = [link for link in list(orchestrator.links.values()) if not link.task.done()]
    await asyncio.gather(*(link.inbox.join() for link in links))


async def settle(*sessions, max_rounds: int = 200):
    """Run the event loop until no session has signaling or negotiation work left"""
    quiet = 0
    for _ in range(max_rounds):
        await asyncio.sleep(0.002)
        for session in sessions:
            await drain_links(session.orchestrator)
        busy = any(
            session.channel is not None and not session.channel.inbox.empty()
            for session in sessions
        )
        quiet = 0 if busy else quiet + 1
        if quiet >= 3:
            return


@pytest.fixture
def app_client():
    from main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def directory():
    return ConnectionDirectory()


@pytest.fixture
def relay(registry, directory):
    return SignalingRelay(registry, directory)


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
async def make_session(relay, network):
    sessions = []

    async def make() -> ChatSession:
        channel = InMemorySignalingChannel(relay)

        async def open_channel(url):
            await channel.attach()
            return channel

        session = ChatSession(
            RecordingObserver(),
            transport_factory=network.factory,
            ice_servers=[],
            channel_factory=open_channel,
        )
        await session.connect("memory://relay")
        sessions.append(session)
        return session

    yield make

    for session in sessions:
        if session.channel is not None:
            await session.disconnect()

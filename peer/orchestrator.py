"""Per-peer negotiation state machines for the full-mesh chat client.

Each remote participant gets one `PeerLink`. A link owns its transport and
an inbox drained by its own asyncio task, so negotiation envelopes for one
peer are applied in arrival order while different peers negotiate
concurrently.

Both sides of a pair start as initiators (the newcomer from the join reply,
existing members from the join broadcast), so offers routinely cross. The
side with the lower participant id keeps its offer; the other side drops
its own link and answers instead.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from peer.observer import SessionObserver
from peer.transport import TransportFactory

logger = logging.getLogger(__name__)

SendSignal = Callable[[Dict[str, Any]], Awaitable[None]]
ChannelMessageHandler = Callable[[str, str], None]


class LinkRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class LinkState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    LINKED = "linked"
    CLOSED = "closed"


STATE_ORDER = {
    LinkState.IDLE: 0,
    LinkState.NEGOTIATING: 1,
    LinkState.LINKED: 2,
    LinkState.CLOSED: 3,
}


class PeerLink:
    def __init__(self, orchestrator: "PeerLinkOrchestrator", remote_id: str, role: LinkRole):
        self.orchestrator = orchestrator
        self.remote_id = remote_id
        self.role = role
        self.state = LinkState.IDLE
        self.remote_description_set = False
        self.released = False
        self.pending_candidates: List[Dict[str, Any]] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.transport = orchestrator.transport_factory(remote_id, self)
        self.task = asyncio.create_task(self._run(), name=f"peer-link-{remote_id}")

    def __repr__(self):
        return f"PeerLink({self.remote_id!r}, {self.role.value}, {self.state.value})"

    def advance(self, state: LinkState) -> bool:
        # States only move forward; closed is terminal
        if STATE_ORDER[state] <= STATE_ORDER[self.state]:
            return False
        self.state = state
        return True

    def enqueue(self, kind: str, data: Any = None):
        if self.state is not LinkState.CLOSED:
            self.inbox.put_nowait((kind, data))

    # TransportEvents

    def candidate_ready(self, candidate: Dict[str, Any]) -> None:
        self.enqueue("local-candidate", candidate)

    def channel_open(self) -> None:
        self.enqueue("channel-open")

    def channel_message(self, text: str) -> None:
        if self.state is not LinkState.CLOSED:
            self.orchestrator.on_channel_message(self.remote_id, text)

    def transport_closed(self, reason: str) -> None:
        self.enqueue("transport-closed", reason)

    def send(self, text: str) -> bool:
        try:
            self.transport.send(text)
            return True
        except Exception as e:
            logger.warning(f"Failed to send to {self.remote_id}: {e}")
            return False

    async def _run(self):
        try:
            while self.state is not LinkState.CLOSED:
                kind, data = await self.inbox.get()
                try:
                    await self._process(kind, data)
                except Exception as e:
                    logger.error(f"Error processing {kind} for {self.remote_id}: {e}")
                    await self._shutdown()
                finally:
                    self.inbox.task_done()
        finally:
            # Leave nothing for inbox.join() to wait on
            while not self.inbox.empty():
                self.inbox.get_nowait()
                self.inbox.task_done()

    async def _process(self, kind: str, data: Any):
        if kind == "start":
            await self._start_offer()
        elif kind == "offer":
            await self._apply_offer(data)
        elif kind == "answer":
            await self._apply_answer(data)
        elif kind == "remote-candidate":
            await self._apply_candidate(data)
        elif kind == "local-candidate":
            await self.orchestrator.signal("ice-candidate", self.remote_id, data)
        elif kind == "channel-open":
            if self.advance(LinkState.LINKED):
                logger.info(f"Data channel open with {self.remote_id}")
                self.orchestrator.link_state_changed()
        elif kind == "transport-closed":
            logger.info(f"Link with {self.remote_id} closed by transport: {data}")
            await self._shutdown()

    async def _start_offer(self):
        try:
            offer = await self.transport.create_offer()
        except Exception as e:
            await self._abandon(f"Error creating offer for {self.remote_id}: {e}",
                                "Failed to establish P2P connection")
            return
        self.advance(LinkState.NEGOTIATING)
        await self.orchestrator.signal("offer", self.remote_id, offer)

    async def _apply_offer(self, offer: Any):
        try:
            answer = await self.transport.accept_offer(offer)
        except Exception as e:
            await self._abandon(f"Error handling offer from {self.remote_id}: {e}",
                                "Failed to handle connection offer")
            return
        self.remote_description_set = True
        self.advance(LinkState.NEGOTIATING)
        await self._flush_candidates()
        await self.orchestrator.signal("answer", self.remote_id, answer)

    async def _apply_answer(self, answer: Any):
        if self.role is not LinkRole.INITIATOR:
            logger.warning(f"Ignoring answer from {self.remote_id}: no offer was sent")
            return
        try:
            await self.transport.accept_answer(answer)
        except Exception as e:
            # Usually the remote side was torn down mid-negotiation
            await self._abandon(f"Error handling answer from {self.remote_id}: {e}", None)
            return
        self.remote_description_set = True
        await self._flush_candidates()

    async def _apply_candidate(self, candidate: Any):
        if not self.remote_description_set:
            self.pending_candidates.append(candidate)
            return
        try:
            await self.transport.add_candidate(candidate)
        except Exception as e:
            logger.error(f"Error adding ICE candidate from {self.remote_id}: {e}")

    async def _flush_candidates(self):
        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _abandon(self, detail: str, failure: Optional[str]):
        logger.warning(detail)
        if failure:
            self.orchestrator.observer.on_failure(failure)
        await self._shutdown()

    async def _shutdown(self):
        was_linked = self.state is LinkState.LINKED
        self.advance(LinkState.CLOSED)
        self.orchestrator.forget(self)
        if self.released:
            return
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport for {self.remote_id}: {e}")
        self.released = True
        if was_linked:
            self.orchestrator.link_state_changed()

    async def close(self, reason: str):
        if self.state is not LinkState.CLOSED:
            logger.info(f"Closing link with {self.remote_id}: {reason}")
        if asyncio.current_task() is not self.task:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)
        await self._shutdown()


class PeerLinkOrchestrator:
    """Owns every PeerLink of one client and routes negotiation envelopes to them."""

    def __init__(
        self,
        local_id: str,
        send_signal: SendSignal,
        transport_factory: TransportFactory,
        observer: SessionObserver,
        on_channel_message: ChannelMessageHandler,
    ):
        self.local_id = local_id
        self.send_signal = send_signal
        self.transport_factory = transport_factory
        self.observer = observer
        self.on_channel_message = on_channel_message
        self.links: Dict[str, PeerLink] = {}

    def get(self, remote_id: str) -> Optional[PeerLink]:
        return self.links.get(remote_id)

    def linked_links(self) -> List[PeerLink]:
        return [link for link in self.links.values() if link.state is LinkState.LINKED]

    def connection_state(self) -> str:
        states = {link.state for link in self.links.values()}
        if LinkState.LINKED in states:
            return "connected"
        if states & {LinkState.IDLE, LinkState.NEGOTIATING}:
            return "connecting"
        return "disconnected"

    def peer_discovered(self, remote_id: str) -> Optional[PeerLink]:
        """Start negotiating toward a participant we just learned about"""
        if remote_id == self.local_id:
            return None
        link = self.links.get(remote_id)
        if link is not None:
            return link
        link = self._create(remote_id, LinkRole.INITIATOR)
        link.enqueue("start")
        return link

    async def handle_offer(self, from_id: str, offer: Any):
        link = self.links.get(from_id)
        if link is not None and link.role is LinkRole.INITIATOR:
            if link.state is LinkState.LINKED or self.local_id < from_id:
                logger.info(f"Offer collision with {from_id}: keeping our own offer")
                return
            logger.info(f"Offer collision with {from_id}: answering theirs instead")
            await link.close("yielding to remote offer")
            link = None
        if link is None:
            link = self._create(from_id, LinkRole.RESPONDER)
        link.enqueue("offer", offer)

    def handle_answer(self, from_id: str, answer: Any):
        link = self.links.get(from_id)
        if link is None:
            logger.debug(f"No peer link for answer from {from_id}")
            return
        link.enqueue("answer", answer)

    def handle_candidate(self, from_id: str, candidate: Any):
        link = self.links.get(from_id)
        if link is None:
            logger.debug(f"Discarding ICE candidate from unknown peer {from_id}")
            return
        link.enqueue("remote-candidate", candidate)

    async def peer_left(self, remote_id: str):
        link = self.links.get(remote_id)
        if link is not None:
            await link.close("participant left")

    async def close_all(self):
        links = list(self.links.values())
        await asyncio.gather(*(link.close("leaving room") for link in links))
        self.links.clear()

    async def signal(self, kind: str, target_id: str, payload: Any):
        await self.send_signal({
            "type": kind,
            "targetParticipantId": target_id,
            "payload": payload,
        })

    def link_state_changed(self):
        self.observer.on_connection_state(self.connection_state())

    def forget(self, link: PeerLink):
        if self.links.get(link.remote_id) is link:
            del self.links[link.remote_id]

    def _create(self, remote_id: str, role: LinkRole) -> PeerLink:
        link = PeerLink(self, remote_id, role)
        self.links[remote_id] = link
        logger.debug(f"Created {role.value} link toward {remote_id}")
        return link

import logging
from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from peer.transport import TransportEvents, TransportFactory

logger = logging.getLogger(__name__)

CHANNEL_LABEL = "chat"


class AiortcTransport:
    """PeerTransport backed by an aiortc RTCPeerConnection and one data channel.

    aiortc gathers candidates while setting the local description and embeds
    them in the SDP, so `candidate_ready` is never fired; remote candidates
    trickled by browsers are still accepted.
    """

    def __init__(self, remote_id: str, events: TransportEvents, ice_servers: Optional[List[str]] = None):
        self.remote_id = remote_id
        self.events = events
        self.channel = None
        self.closed = False
        self.pc = RTCPeerConnection(RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers or []]
        ))

        @self.pc.on("datachannel")
        def on_datachannel(channel):
            self._wire_channel(channel)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = self.pc.connectionState
            logger.debug(f"Connection with {self.remote_id} is {state}")
            if state in ("failed", "closed"):
                self._report_closed(f"connection {state}")

    def _wire_channel(self, channel):
        self.channel = channel

        @channel.on("open")
        def on_open():
            self.events.channel_open()

        @channel.on("message")
        def on_message(message):
            if isinstance(message, str):
                self.events.channel_message(message)

        @channel.on("close")
        def on_close():
            self._report_closed("data channel closed")

        # Channels announced by the remote side arrive already open
        if channel.readyState == "open":
            self.events.channel_open()

    def _report_closed(self, reason: str):
        if self.closed:
            return
        self.closed = True
        self.events.transport_closed(reason)

    def _local_description(self) -> Dict[str, Any]:
        description = self.pc.localDescription
        return {"sdp": description.sdp, "type": description.type}

    async def create_offer(self) -> Dict[str, Any]:
        self._wire_channel(self.pc.createDataChannel(CHANNEL_LABEL, ordered=True))
        await self.pc.setLocalDescription(await self.pc.createOffer())
        return self._local_description()

    async def accept_offer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        await self.pc.setLocalDescription(await self.pc.createAnswer())
        return self._local_description()

    async def accept_answer(self, answer: Dict[str, Any]) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        text = candidate.get("candidate")
        if not text:
            # end-of-candidates marker
            return
        if text.startswith("candidate:"):
            text = text.split(":", 1)[1]
        ice_candidate = candidate_from_sdp(text)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    def send(self, text: str) -> None:
        if self.channel is None or self.channel.readyState != "open":
            raise RuntimeError(f"Data channel with {self.remote_id} is not open")
        self.channel.send(text)

    async def close(self) -> None:
        self.closed = True
        await self.pc.close()


def aiortc_transport_factory(ice_servers: Optional[List[str]] = None) -> TransportFactory:
    def factory(remote_id: str, events: TransportEvents) -> AiortcTransport:
        return AiortcTransport(remote_id, events, ice_servers)
    return factory

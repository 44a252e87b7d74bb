"""Peer transport capability used by the orchestrator.

The orchestrator never talks to a WebRTC stack directly. It asks a
`TransportFactory` for one `PeerTransport` per remote participant and
receives transport events through the `TransportEvents` it passes in.
Session descriptions and candidates travel as plain JSON-ready dicts
(`{"sdp", "type"}` and `{"candidate", "sdpMid", "sdpMLineIndex"}`), the
same shapes browsers put on the wire.
"""

from typing import Any, Callable, Dict, Protocol


class TransportEvents(Protocol):
    def candidate_ready(self, candidate: Dict[str, Any]) -> None: ...

    def channel_open(self) -> None: ...

    def channel_message(self, text: str) -> None: ...

    def transport_closed(self, reason: str) -> None: ...


class PeerTransport(Protocol):
    async def create_offer(self) -> Dict[str, Any]:
        """Open the chat data channel and return the local offer."""

    async def accept_offer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a remote offer and return the local answer."""

    async def accept_answer(self, answer: Dict[str, Any]) -> None: ...

    async def add_candidate(self, candidate: Dict[str, Any]) -> None: ...

    def send(self, text: str) -> None: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[str, TransportEvents], PeerTransport]

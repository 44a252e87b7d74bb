import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

from peer.observer import Message, SessionObserver
from peer.orchestrator import PeerLinkOrchestrator

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_message_id() -> str:
    return uuid.uuid4().hex


class MessageDispatcher:
    """Routes outgoing chat over open peer links, or the relay when none is open.

    The choice is made per call. With at least one linked peer the message goes
    to every linked peer and nowhere else, so members without a direct link
    to this client miss it. The local echo is handed to the observer at once
    and is never reconciled with what peers received.
    """

    def __init__(
        self,
        orchestrator: PeerLinkOrchestrator,
        relay_send: Callable[[Dict[str, Any]], Awaitable[None]],
        observer: SessionObserver,
        local_id: str,
        display_name: str = "",
    ):
        self.orchestrator = orchestrator
        self.relay_send = relay_send
        self.observer = observer
        self.local_id = local_id
        self.display_name = display_name
        self.names: Dict[str, str] = {}

    async def send(self, body: str) -> Message:
        if not body or not body.strip():
            raise ValueError("Message body must not be empty")

        timestamp = utc_timestamp()
        links = self.orchestrator.linked_links()
        if links:
            wire = json.dumps({
                "displayName": self.display_name,
                "body": body,
                "timestamp": timestamp,
            })
            delivered = sum(1 for link in links if link.send(wire))
            logger.debug(f"Sent message directly to {delivered}/{len(links)} peers")
        else:
            await self.relay_send({"type": "chat-message", "body": body})
            logger.debug("No open peer links, sent message through the relay")

        message = Message(
            id=new_message_id(),
            sender_id=self.local_id,
            sender_name=self.display_name,
            body=body,
            timestamp=timestamp,
            is_local=True,
        )
        self.observer.on_message(message)
        return message

    def receive_direct(self, remote_id: str, text: str):
        try:
            data = json.loads(text)
            body = data["body"]
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"Error parsing message from {remote_id}: {e}")
            return
        self.observer.on_message(Message(
            id=new_message_id(),
            sender_id=remote_id,
            sender_name=data.get("displayName") or self.names.get(remote_id, "Unknown"),
            body=body,
            timestamp=data.get("timestamp") or utc_timestamp(),
        ))

    def receive_relayed(self, envelope: Dict[str, Any]):
        sender_id = envelope.get("fromParticipantId", "")
        self.observer.on_message(Message(
            id=new_message_id(),
            sender_id=sender_id,
            sender_name=envelope.get("displayName") or self.names.get(sender_id, "Unknown"),
            body=envelope.get("body", ""),
            timestamp=envelope.get("timestamp") or utc_timestamp(),
        ))

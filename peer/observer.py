"""Values the chat core hands to its UI layer, and the interface it uses."""

from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict


class Participant(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str


class ParticipantChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["joined", "left"]
    participant: Participant


class Message(BaseModel):
    """One chat line. Never mutated after dispatch."""

    model_config = ConfigDict(frozen=True)

    id: str
    sender_id: str
    sender_name: str
    body: str
    timestamp: str
    is_local: bool = False


class SessionObserver(Protocol):
    def on_message(self, message: Message) -> None: ...

    def on_participant_changed(self, change: ParticipantChange) -> None: ...

    def on_connection_state(self, state: str) -> None: ...

    def on_failure(self, error: str) -> None: ...

import asyncio

import httpx
import pytest

from peer.orchestrator import LinkRole, LinkState
from peer.session import ChatSession
from peer.signaling_client import SignalingConnectionError
from tests.conftest import RecordingObserver, settle


async def join(session, room_id, name):
    await session.join_room(room_id, name)
    await settle(session)


async def test_two_participants_discover_each_other_and_link(make_session):
    alice, bob = await make_session(), await make_session()
    await join(alice, "R", "alice")
    await join(bob, "R", "bob")
    await settle(alice, bob)

    a_received = [m for m in alice.channel.received if m["type"] in ("room-joined", "user-joined")]
    assert a_received == [
        {"type": "room-joined", "roomId": "R", "participants": []},
        {"type": "user-joined", "id": bob.local_id, "displayName": "bob", "participantCount": 2},
    ]
    assert bob.channel.received_of_type("room-joined") == [{
        "type": "room-joined",
        "roomId": "R",
        "participants": [{"id": alice.local_id, "displayName": "alice"}],
    }]

    # The existing member starts an offer as soon as the join broadcast arrives
    [offer] = alice.channel.sent_of_type("offer")
    assert offer["targetParticipantId"] == bob.local_id

    assert [(c.kind, c.participant.display_name) for c in alice.observer.changes] == [("joined", "bob")]
    assert [(c.kind, c.participant.display_name) for c in bob.observer.changes] == [("joined", "alice")]
    assert alice.participant_count == bob.participant_count == 2

    a_link = alice.orchestrator.get(bob.local_id)
    b_link = bob.orchestrator.get(alice.local_id)
    assert a_link.state is b_link.state is LinkState.LINKED
    assert {a_link.role, b_link.role} == {LinkRole.INITIATOR, LinkRole.RESPONDER}
    assert alice.connection_state == bob.connection_state == "connected"


async def test_linked_peers_chat_directly_without_relay(make_session):
    alice, bob = await make_session(), await make_session()
    await join(alice, "R", "alice")
    await join(bob, "R", "bob")
    await settle(alice, bob)

    sent = await alice.send_message("hi")
    await settle(alice, bob)

    assert alice.channel.sent_of_type("chat-message") == []
    assert bob.channel.received_of_type("chat-message") == []
    assert alice.observer.messages == [sent]
    assert sent.is_local
    [received] = bob.observer.messages
    assert (received.sender_id, received.sender_name, received.body) == (alice.local_id, "alice", "hi")
    assert not received.is_local


async def test_without_links_chat_reaches_everyone_through_relay(make_session, network):
    network.auto_link = False
    alice, bob, carol = await make_session(), await make_session(), await make_session()
    await join(alice, "R", "alice")
    await join(bob, "R", "bob")
    await join(carol, "R", "carol")
    await settle(alice, bob, carol)
    assert alice.orchestrator.linked_links() == []
    assert alice.connection_state == "connecting"

    await alice.send_message("anyone there?")
    await settle(alice, bob, carol)

    assert len(alice.channel.sent_of_type("chat-message")) == 1
    for session in (bob, carol):
        [message] = session.observer.messages
        assert message.sender_id == alice.local_id
        assert message.sender_name == "alice"
        assert message.body == "anyone there?"


async def test_partially_linked_room_skips_unlinked_members(make_session, network):
    alice, bob = await make_session(), await make_session()
    await join(alice, "R", "alice")
    await join(bob, "R", "bob")
    await settle(alice, bob)

    network.auto_link = False
    carol = await make_session()
    await join(carol, "R", "carol")
    await settle(alice, bob, carol)

    await alice.send_message("only direct")
    await settle(alice, bob, carol)

    assert [m.body for m in bob.observer.messages] == ["only direct"]
    assert carol.observer.messages == []
    assert alice.channel.sent_of_type("chat-message") == []


async def test_abrupt_disconnect_closes_link_and_drops_member(make_session, network):
    alice, bob = await make_session(), await make_session()
    await join(alice, "R", "alice")
    await join(bob, "R", "bob")
    await settle(alice, bob)
    a_link = alice.orchestrator.get(bob.local_id)
    assert a_link.state is LinkState.LINKED
    bob_id, bob_channel = bob.local_id, bob.channel

    await bob_channel.drop()
    await settle(alice, bob)

    assert a_link.state is LinkState.CLOSED
    assert a_link.transport.closed
    assert alice.orchestrator.get(bob_id) is None
    assert bob_id not in alice.participants
    assert alice.observer.changes[-1].kind == "left"
    assert alice.observer.changes[-1].participant.display_name == "bob"
    assert bob.observer.states[-1] == "disconnected"


async def test_leaving_notifies_each_member_once_and_closes_links(make_session, relay):
    alice, bob, carol = await make_session(), await make_session(), await make_session()
    await join(alice, "R", "alice")
    await join(bob, "R", "bob")
    await join(carol, "R", "carol")
    await settle(alice, bob, carol)
    links = list(alice.orchestrator.links.values())
    assert len(links) == 2

    await alice.leave_room()
    await settle(alice, bob, carol)

    assert alice.orchestrator.links == {}
    assert all(link.state is LinkState.CLOSED and link.transport.closed for link in links)
    assert alice.participants == {}
    for session in (bob, carol):
        left = session.channel.received_of_type("user-left")
        assert [m["id"] for m in left] == [alice.local_id]
        assert alice.local_id not in session.participants
    assert relay.registry.list_participants("R") == {bob.local_id, carol.local_id}


async def test_last_member_leaving_deletes_room(make_session, relay):
    alice = await make_session()
    await join(alice, "R", "alice")
    assert "R" in relay.registry

    await alice.leave_room()

    assert "R" not in relay.registry


async def test_rejoin_forms_fresh_links(make_session):
    alice, bob = await make_session(), await make_session()
    await join(alice, "R", "alice")
    await join(bob, "R", "bob")
    await settle(alice, bob)
    old_link = bob.orchestrator.get(alice.local_id)

    await alice.leave_room()
    await settle(alice, bob)
    await join(alice, "R", "alice")
    await settle(alice, bob)

    new_link = bob.orchestrator.get(alice.local_id)
    assert old_link.state is LinkState.CLOSED
    assert new_link is not old_link
    assert new_link.state is LinkState.LINKED


async def test_empty_message_is_rejected_before_network(make_session):
    alice = await make_session()
    await join(alice, "R", "alice")
    with pytest.raises(ValueError):
        await alice.send_message("   ")
    assert alice.channel.sent_of_type("chat-message") == []
    assert alice.observer.messages == []


async def test_join_requires_name_and_room(make_session):
    alice = await make_session()
    with pytest.raises(ValueError):
        await alice.join_room("R", "  ")
    with pytest.raises(ValueError):
        await alice.join_room("", "alice")


async def test_server_errors_are_reported(make_session):
    alice = await make_session()
    await alice.channel.send({"type": "chat-message", "body": "too early"})
    await settle(alice)
    assert alice.observer.failures == ["Join a room before sending chat messages"]


async def test_unreachable_server_is_one_user_visible_error(network):
    observer = RecordingObserver()
    session = ChatSession(observer, transport_factory=network.factory, ice_servers=[])

    with pytest.raises(SignalingConnectionError):
        await session.connect("ws://127.0.0.1:9/ws")

    assert observer.failures == ["Failed to connect to server"]
    assert observer.states == ["disconnected"]
    assert not session.connected
    with pytest.raises(SignalingConnectionError):
        await session.send_message("hello")


async def test_create_room_failure_is_reported(network):
    observer = RecordingObserver()
    session = ChatSession(observer, transport_factory=network.factory, ice_servers=[])

    with pytest.raises(httpx.HTTPError):
        await session.create_room("http://127.0.0.1:9")

    assert observer.failures == ["Failed to create room"]


async def test_envelopes_after_leaving_do_not_create_links(make_session, network):
    network.auto_link = False
    alice, bob = await make_session(), await make_session()
    await join(alice, "R", "alice")
    await join(bob, "R", "bob")
    await settle(alice, bob)

    await alice.leave_room()
    answers = len(alice.channel.sent_of_type("answer"))

    # Still in flight from bob when the leave went out
    alice.channel.inbox.put_nowait({
        "type": "offer", "fromParticipantId": bob.local_id, "payload": {"type": "offer", "sdp": "late"},
    })
    alice.channel.inbox.put_nowait({
        "type": "user-joined", "id": "zed", "displayName": "zed", "participantCount": 2,
    })
    await settle(alice)

    assert alice.orchestrator.links == {}
    assert alice.participants == {}
    assert len(alice.channel.sent_of_type("answer")) == answers
    assert alice.connection_state == "disconnected"


async def test_silent_server_times_out_with_one_error(network):
    class SilentChannel:
        closed = False

        async def receive(self):
            await asyncio.Event().wait()

        async def close(self):
            self.closed = True

    channel = SilentChannel()

    async def open_channel(url):
        return channel

    observer = RecordingObserver()
    session = ChatSession(observer, transport_factory=network.factory, ice_servers=[], channel_factory=open_channel)

    with pytest.raises(SignalingConnectionError):
        await session.connect("memory://silent", timeout=0.05)

    assert channel.closed
    assert observer.failures == ["Failed to connect to server"]
    assert not session.connected

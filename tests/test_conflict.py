import pytest

from engine.broadcast import Fanout
from engine.conflict import ConflictRelay
from engine.errors import DomainError
from engine.rooms import RoomStore

from conftest import FakeScheduler, drain, make_connection


@pytest.fixture
def room():
    store = RoomStore(scheduler=FakeScheduler())
    fanout = Fanout(store)
    alice, bob = make_connection(), make_connection()
    store.join("r1", alice, "Alice")
    store.join("r1", bob, "Bob")
    return store, ConflictRelay(store, fanout), alice, bob


def test_relay_reaches_target_acks_sender_and_logs_notice(room):
    store, relay, alice, bob = room
    relay.relay("r1", alice, "Bob", message="edit clash", conflict_data={"line": 3})

    to_bob = drain(bob)
    assert [m["type"] for m in to_bob] == ["conflict_notification", "chat_message"]
    notice = to_bob[0]
    assert notice["conflictWith"] == "Alice"
    assert notice["message"] == "edit clash"
    assert notice["conflictData"] == {"line": 3}
    assert "recipientId" not in notice

    to_alice = drain(alice)
    assert [m["type"] for m in to_alice] == ["notification_sent", "chat_message"]
    assert to_alice[1]["isSystemMessage"] is True

    [entry] = store.get("r1").chat_history
    assert "Alice" in entry["message"] and "Bob" in entry["message"]


def test_unknown_target_has_no_side_effects(room):
    store, relay, alice, bob = room
    with pytest.raises(DomainError) as excinfo:
        relay.relay("r1", alice, "Carol", message="hello")
    assert excinfo.value.error == "target unavailable"
    assert drain(bob) == []
    assert drain(alice) == []
    assert store.get("r1").chat_history == []


def test_closed_target_counts_as_unavailable(room):
    store, relay, alice, bob = room
    bob.websocket.drop()
    with pytest.raises(DomainError):
        relay.relay("r1", alice, "Bob")
    assert store.get("r1").chat_history == []


def test_first_live_match_wins_for_duplicate_names(room):
    store, relay, alice, bob = room
    other_bob = make_connection()
    store.join("r1", other_bob, "Bob")

    target = relay.relay("r1", alice, "Bob")
    assert target.connection_id == bob.id
    assert [m["type"] for m in drain(other_bob)] == ["chat_message"]

import pytest

from engine.errors import DomainError
from engine.rooms import Room, RoomStore

from conftest import FakeScheduler, make_connection


@pytest.fixture
def store(scheduler):
    return RoomStore(scheduler=scheduler, grace_period=120, history_cap=3, max_rooms=2, max_members=2)


def test_get_or_create_starts_empty(store):
    room = store.get_or_create("r1")
    assert room.version == 0
    assert room.code == ""
    assert room.chat_history == []
    assert store.get_or_create("r1") is room


def test_version_advances_by_exactly_one(store):
    alice = make_connection("Alice")
    store.join("r1", alice, "Alice")
    versions = [store.apply_mutation("r1", f"print({i})", "Alice") for i in range(5)]
    assert versions == [1, 2, 3, 4, 5]
    room = store.get("r1")
    assert room.code == "print(4)"
    assert room.last_edited_by == "Alice"


def test_mutation_on_missing_room_is_domain_error(store):
    with pytest.raises(DomainError):
        store.apply_mutation("nowhere", "x", "Alice")


def test_join_returns_state_and_records_membership(store):
    alice = make_connection()
    result = store.join("r1", alice, "Alice")
    assert result.version == 0
    assert result.is_reconnect is False
    assert [m["userName"] for m in result.members] == ["Alice"]
    assert alice.room_id == "r1"
    assert alice.display_name == "Alice"


def test_rejoin_with_same_name_is_reconnect(store):
    alice = make_connection()
    store.join("r1", alice, "Alice")
    assert store.join("r1", alice, "Alice").is_reconnect is True
    assert store.join("r1", alice, "Alicia").is_reconnect is False


def test_new_connection_with_other_name_is_not_reconnect(store):
    store.join("r1", make_connection(), "Alice")
    assert store.join("r1", make_connection(), "Bob").is_reconnect is False


def test_join_purges_closed_members(store):
    alice, bob = make_connection(), make_connection()
    store.join("r1", alice, "Alice")
    alice.websocket.drop()
    result = store.join("r1", bob, "Bob")
    assert [m["userName"] for m in result.members] == ["Bob"]
    assert alice.id not in store.get("r1").members


def test_room_full_and_too_many_rooms(store):
    store.join("r1", make_connection(), "A")
    store.join("r1", make_connection(), "B")
    with pytest.raises(DomainError) as excinfo:
        store.join("r1", make_connection(), "C")
    assert excinfo.value.error == "room_full"
    assert excinfo.value.reply_type == "join_room_error"

    store.join("r2", make_connection(), "D")
    with pytest.raises(DomainError) as excinfo:
        store.join("r3", make_connection(), "E")
    assert excinfo.value.error == "too_many_rooms"
    assert store.get("r3") is None


def test_leave_arms_grace_deletion(store, scheduler):
    alice = make_connection()
    store.join("r1", alice, "Alice")
    member = store.leave("r1", alice.id)
    assert member.display_name == "Alice"
    assert len(scheduler.calls) == 1
    assert scheduler.calls[0].delay == 120
    assert store.get("r1") is not None

    scheduler.fire_pending()
    assert store.get("r1") is None


def test_join_while_draining_survives_timer(store, scheduler):
    alice, bob = make_connection(), make_connection()
    store.join("r1", alice, "Alice")
    store.leave("r1", alice.id)
    store.join("r1", bob, "Bob")

    assert scheduler.fire_pending() == [False]
    assert store.get("r1") is not None


def test_leave_is_noop_when_absent(store, scheduler):
    assert store.leave("ghost", "nobody") is None
    store.get_or_create("r1")
    assert store.leave("r1", "nobody") is None
    assert scheduler.calls == []


def test_load_latest_is_idempotent(store):
    store.join("r1", make_connection(), "Alice")
    store.apply_mutation("r1", "a = 1", "Alice")
    first = store.load_latest("r1", 0)
    second = store.load_latest("r1", 0)
    assert (first.version, first.is_already_latest) == (second.version, second.is_already_latest) == (1, False)
    assert store.load_latest("r1", 1).is_already_latest is True
    assert store.load_latest("r1", 7).is_already_latest is True
    assert store.get("r1").version == 1


def test_save_named_advances_version_and_caps_history(store):
    store.join("r1", make_connection(), "Alice")
    entries = [store.save_named("r1", f"v{i}", f"save {i}", "Alice") for i in range(5)]
    assert [e["version"] for e in entries] == [1, 2, 3, 4, 5]
    history = store.get("r1").save_history
    assert [e["saveName"] for e in history] == ["save 2", "save 3", "save 4"]


def test_save_named_generates_a_name(store):
    store.join("r1", make_connection(), "Alice")
    entry = store.save_named("r1", "x", None, "Alice")
    assert entry["saveName"].startswith("Save-")
    assert entry["savedBy"] == "Alice"


def test_unbounded_history_without_cap():
    store = RoomStore(scheduler=FakeScheduler(), history_cap=None)
    store.join("r1", make_connection(), "Alice")
    for i in range(60):
        store.save_named("r1", str(i), None, "Alice")
    assert len(store.get("r1").save_history) == 60


def test_snapshot_uses_ordered_pairs_and_restores_without_members(store):
    alice = make_connection()
    store.join("r1", alice, "Alice")
    store.apply_mutation("r1", "print('hi')", "Alice")
    store.append_chat("r1", {"message": "hello"})

    snapshot = store.to_snapshot("2.1.0")
    assert snapshot["version"] == "2.1.0"
    room_id, data = snapshot["rooms"][0]
    assert room_id == "r1"
    assert data["users"][0][0] == alice.id
    assert data["users"][0][1]["userName"] == "Alice"

    fresh = RoomStore(scheduler=FakeScheduler())
    assert fresh.restore(snapshot) == 1
    room = fresh.get("r1")
    assert isinstance(room, Room)
    assert room.version == 1
    assert room.code == "print('hi')"
    assert room.chat_history == [{"message": "hello"}]
    assert room.members == {}


def test_restore_skips_invalid_entries():
    store = RoomStore(scheduler=FakeScheduler())
    restored = store.restore({"rooms": [["", {}], ["ok", {"version": 3}], "garbage"]})
    assert restored == 1
    assert store.get("ok").version == 3

import random

from room_store import DEFAULT_NAME, Participant, RoomStore


def test_add_creates_room_and_remove_deletes_it():
    store = RoomStore()
    store.add(Participant("a", "r1", "Ann"))
    assert "r1" in store
    assert [p.connection_id for p in store.members("r1")] == ["a"]

    assert store.remove("r1", "a").name == "Ann"
    assert "r1" not in store
    assert len(store) == 0


def test_duplicate_add_overwrites_in_place():
    store = RoomStore()
    store.add(Participant("a", "r1", "Ann"))
    store.add(Participant("a", "r1", "Annie"))
    members = store.members("r1")
    assert len(members) == 1
    assert members[0].name == "Annie"


def test_remove_unknown_is_noop():
    store = RoomStore()
    store.add(Participant("a", "r1"))
    assert store.remove("r1", "zzz") is None
    assert store.remove("nope", "a") is None
    assert store.members("r1")[0].name == DEFAULT_NAME


def test_rooms_of_scans_every_room():
    store = RoomStore()
    store.add(Participant("a", "r1"))
    store.add(Participant("a", "r2"))
    store.add(Participant("b", "r2"))
    assert sorted(store.rooms_of("a")) == ["r1", "r2"]
    assert store.rooms_of("b") == ["r2"]
    assert store.rooms_of("c") == []


def test_members_is_a_snapshot():
    store = RoomStore()
    store.add(Participant("a", "r1"))
    snapshot = store.members("r1")
    store.add(Participant("b", "r1"))
    assert len(snapshot) == 1


def test_no_empty_room_survives_random_churn():
    rng = random.Random(7)
    store = RoomStore()
    for _ in range(500):
        cid = f"c{rng.randrange(8)}"
        rid = f"r{rng.randrange(3)}"
        if rng.random() < 0.55:
            store.add(Participant(cid, rid))
        else:
            store.remove(rid, cid)
        assert all(store.members(r) for r in store.room_ids())

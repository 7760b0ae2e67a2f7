from network import TableRow
from storage import KeyValueStore

from .helpers import key_with_hash


def test_add_is_idempotent():
    store = KeyValueStore(m=3)
    store.add("k", "v")
    store.add("k", "v")
    assert store.get("k") == ["v"]
    store.add("k", "w")
    assert store.get("k") == ["v", "w"]


def test_get_absent_key_is_empty():
    store = KeyValueStore(m=3)
    assert store.get("missing") == []
    assert "missing" not in store


def test_delete_absent_binding_is_noop():
    store = KeyValueStore(m=3)
    store.add("k", "v")
    store.delete("k", "other")
    store.delete("nope", "v")
    assert store.get("k") == ["v"]
    store.delete("k", "v")
    assert "k" not in store
    assert len(store) == 0


def test_take_range_wraps_and_removes():
    store = KeyValueStore(m=3)
    keys = {h: key_with_hash(h, 3) for h in range(8)}
    for h, key in keys.items():
        store.add(key, f"v{h}")

    in_range = {row.key for row in store.keys_in_range(1, 4)}
    assert in_range == {keys[2], keys[3], keys[4]}

    taken = store.take_range(6, 1)
    assert {row.key for row in taken} == {keys[7], keys[0], keys[1]}
    for h in (7, 0, 1):
        assert keys[h] not in store
    assert len(store) == 5


def test_ingest_merges_with_existing_values():
    store = KeyValueStore(m=3)
    store.add("k", "a")
    store.ingest([TableRow("k", ["a", "b"]), TableRow("j", ["c"])])
    assert store.get("k") == ["a", "b"]
    assert store.get("j") == ["c"]
    rows = store.pop_all()
    assert sorted(row.key for row in rows) == ["j", "k"]
    assert len(store) == 0

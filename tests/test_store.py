import asyncio
import threading

from prism.store import ActivityLog, KeyValueStore, OwnershipStore


def test_values_survive_a_new_store_instance(tmp_path):
    path = str(tmp_path / "nested" / "prism.json")
    KeyValueStore(path).set("subusers-abcd", [{"id": "bob"}])
    assert KeyValueStore(path).get("subusers-abcd") == [{"id": "bob"}]


def test_get_returns_detached_copies(store):
    store.set("all_users", ["A"])
    users = store.get("all_users")
    users.append("B")
    assert store.get("all_users") == ["A"]


def test_delete(store):
    store.set("k", 1)
    assert store.delete("k")
    assert not store.delete("k")
    assert store.get("k", "default") == "default"


def test_subuser_servers_distinguishes_missing_from_empty(ownership):
    assert ownership.get_subuser_servers("bob") is None
    ownership.set_subuser_servers("bob", [])
    assert ownership.get_subuser_servers("bob") == []


def test_add_known_user_once(ownership):
    ownership.add_known_user("A")
    ownership.add_known_user("A")
    assert ownership.store.get("all_users") == ["A"]


def test_activity_log_keeps_most_recent_hundred(store):
    log = ActivityLog(store)
    for i in range(150):
        log.record("abcd1234", "action", {"n": i})

    entries = log.entries("abcd1234")
    assert len(entries) == 100
    assert [e["details"]["n"] for e in entries] == list(range(149, 49, -1))
    assert set(entries[0]) == {"timestamp", "action", "details"}


def test_activity_logs_are_per_server(store):
    log = ActivityLog(store)
    log.record("a", "start")
    assert log.entries("b") == []
    assert OwnershipStore(store).get_subusers("a") == []


def test_writes_inside_event_loop_leave_the_loop_thread(tmp_path, monkeypatch):
    path = str(tmp_path / "prism.json")
    store = KeyValueStore(path)
    writer_threads = []
    write = store._write

    def recording_write(payload, version):
        writer_threads.append(threading.get_ident())
        write(payload, version)

    monkeypatch.setattr(store, "_write", recording_write)

    async def scenario():
        for i in range(5):
            store.set("counter", i)
        assert store.get("counter") == 4
        await store.flush()
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())
    assert writer_threads
    assert loop_thread not in writer_threads
    assert KeyValueStore(path).get("counter") == 4

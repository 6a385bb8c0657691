"""
Prism - Key-Value Store
========================
Persistent key-value storage for the dashboard's relationship records.

All values are opaque JSON blobs kept in a single JSON document on disk
(data/prism.json by default). Each key is read and written independently;
there are no multi-key transactions, so two concurrent read-then-write
sequences on the same key can lose an update.

Key layout:
    users-{userId}               -> panel user id for an internal user id
    all_users                    -> list of known user ids
    subusers-{serverId}          -> [{id, username, email}, ...]
    subuser-servers-{username}   -> [{id, name, ownerId}, ...]
    activity_log_{serverId}      -> [{timestamp, action, details}, ...]

Usage:
    store = KeyValueStore("/path/to/data/prism.json")
    store.set("all_users", ["42"])
    users = store.get("all_users", [])
"""

import asyncio
import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any


logger = logging.getLogger(__name__)

# Activity entries kept per server, newest first.
ACTIVITY_LOG_LIMIT = 100


class KeyValueStore:
    """
    JSON-file backed key-value store.

    The document is read once when the store is created and served from
    memory afterwards. Every change is serialized on the caller's thread and
    written atomically (temp file + rename). Inside a running event loop the
    file write runs in the default executor so request handlers never block
    on disk; outside a loop it runs inline. Writes are versioned, so a slow
    older write can never overwrite a newer one.

    Attributes:
        path: Full path to the backing JSON file.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._version = 0
        self._written = 0
        self._pending: set[asyncio.Future] = set()
        self._cache: dict[str, Any] = self._read()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            value = self._cache.get(key)
        return default if value is None else _copy(value)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = _copy(value)
            self._persist()

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if the key existed."""
        with self._lock:
            if key not in self._cache:
                return False
            del self._cache[key]
            self._persist()
            return True

    async def flush(self) -> None:
        """Wait for every scheduled file write to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    # -- Internal helpers ------------------------------------------------------

    def _read(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _persist(self) -> None:
        """Snapshot the cache and schedule its write. Caller holds _lock."""
        self._version += 1
        version = self._version
        payload = json.dumps(self._cache, indent=2, ensure_ascii=False)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(payload, version)
            return

        future = loop.run_in_executor(None, self._write, payload, version)
        self._pending.add(future)
        future.add_done_callback(self._write_done)

    def _write(self, payload: str, version: int) -> None:
        with self._write_lock:
            if version <= self._written:
                return
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
            self._written = version

    def _write_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Writing %s failed: %s", self.path, future.exception())


class OwnershipStore:
    """
    Typed access to the subuser relationship records.

    Only the subuser synchronizer writes these records; the access
    authorizer only reads them.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def panel_user_id(self, user_id: str) -> str | None:
        """Panel user id linked to an internal user id, if any."""
        value = self.store.get(f"users-{user_id}")
        return None if value is None else str(value)

    def link_panel_user(self, user_id: str, panel_id: str | int) -> None:
        self.store.set(f"users-{user_id}", panel_id)

    def get_subusers(self, server_id: str) -> list[dict]:
        return self.store.get(f"subusers-{server_id}", [])

    def set_subusers(self, server_id: str, subusers: list[dict]) -> None:
        self.store.set(f"subusers-{server_id}", subusers)

    def get_subuser_servers(self, username: str) -> list[dict] | None:
        """
        Servers a user can reach as a subuser.

        Returns None (not an empty list) when no record was ever written,
        so callers can tell "never synced" apart from "synced, no servers".
        """
        return self.store.get(f"subuser-servers-{username}")

    def set_subuser_servers(self, username: str, servers: list[dict]) -> None:
        self.store.set(f"subuser-servers-{username}", servers)

    def add_known_user(self, user_id: str) -> None:
        all_users = self.store.get("all_users", [])
        if user_id not in all_users:
            all_users.append(user_id)
            self.store.set("all_users", all_users)


class ActivityLog:
    """
    Capped, most-recent-first activity history per server.

    Entries are {timestamp, action, details}. Anything past
    ACTIVITY_LOG_LIMIT entries is dropped from the tail.
    """

    def __init__(self, store: KeyValueStore, limit: int = ACTIVITY_LOG_LIMIT):
        self.store = store
        self.limit = limit

    def record(self, server_id: str, action: str, details: Any = None) -> dict:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "details": details,
        }
        key = f"activity_log_{server_id}"
        entries = self.store.get(key, [])
        entries.insert(0, entry)
        self.store.set(key, entries[: self.limit])
        return entry

    def entries(self, server_id: str) -> list[dict]:
        return self.store.get(f"activity_log_{server_id}", [])


def _copy(value: Any) -> Any:
    """Detach a JSON value from the cache so callers can mutate it freely."""
    return json.loads(json.dumps(value))

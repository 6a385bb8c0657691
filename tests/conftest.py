"""Shared fakes: a scripted panel and a scripted upstream websocket."""

import asyncio
import json

import pytest

from prism.config import Settings
from prism.errors import PanelAPIError
from prism.store import KeyValueStore, OwnershipStore


def owned_server(identifier: str, uuid: str | None = None) -> dict:
    return {"attributes": {"identifier": identifier, "id": uuid or f"{identifier}-0000-4000-8000-000000000000"}}


def panel_user(panel_id: str, username: str, servers: list[dict] | None = None) -> dict:
    return {
        "id": panel_id,
        "username": username,
        "relationships": {"servers": {"object": "list", "data": servers or []}},
    }


class FakePanel:
    """In-memory stand-in for PanelClient."""

    base_url = "https://panel.test"

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.server_users: dict[str, list[dict]] = {}
        self.server_names: dict[str, str] = {}
        self.fail_users = False
        self.fail_server_users = False
        self.user_lookups = 0
        self.credential_calls = 0
        self.deleted: list[tuple[str, str]] = []
        self.uploads: list[tuple[str, str, bytes]] = []
        self.renames: list[tuple[str, str, list]] = []

    async def get_user(self, panel_user_id):
        self.user_lookups += 1
        if self.fail_users:
            raise PanelAPIError("panel down", 502, "<html>bad gateway</html>")
        return self.users.get(str(panel_user_id))

    async def get_server(self, server_id):
        if server_id not in self.server_names:
            raise PanelAPIError("not found", 404, "{}")
        return {"attributes": {"identifier": server_id, "name": self.server_names[server_id]}}

    async def get_server_name(self, server_id):
        return self.server_names.get(server_id, "Unknown Server")

    async def get_websocket_credentials(self, server_id):
        self.credential_calls += 1
        return {"socket": f"wss://node.test/api/servers/{server_id}/ws", "token": f"token-{self.credential_calls}"}

    async def list_server_users(self, server_id):
        if self.fail_server_users:
            raise PanelAPIError("panel down", 500, "boom")
        return list(self.server_users.get(server_id, []))

    async def list_server_users_raw(self, server_id):
        users = await self.list_server_users(server_id)
        return {"object": "list", "data": [{"object": "server_subuser", "attributes": u} for u in users]}

    async def create_server_user(self, server_id, email, permissions=None):
        username = email.split("@")[0]
        attributes = {"uuid": f"uuid-{username}", "username": username, "email": email}
        self.server_users.setdefault(server_id, []).append(attributes)
        return {"object": "server_subuser", "attributes": attributes}

    async def delete_server_user(self, server_id, subuser_id):
        self.deleted.append((server_id, subuser_id))
        self.server_users[server_id] = [
            u for u in self.server_users.get(server_id, []) if u.get("uuid") != subuser_id
        ]

    async def get_upload_url(self, server_id):
        return f"https://node.test/upload/{server_id}"

    async def upload_file(self, upload_url, filename, content, content_type="application/java-archive"):
        self.uploads.append((upload_url, filename, content))

    async def rename_files(self, server_id, root, files):
        self.renames.append((server_id, root, files))

    async def close(self):
        pass


_CLOSE = object()


class FakeUpstream:
    """
    Scripted Wings websocket.

    `on_send(upstream, frame)` is called for every frame the relay sends and
    can push replies with `push()` (optionally delayed).
    """

    def __init__(self, on_send=None):
        self.on_send = on_send
        self.sent: list[dict] = []
        self.close_calls = 0
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def push(self, event, *args, delay: float = 0):
        raw = json.dumps({"event": event, "args": list(args)})
        if delay:
            asyncio.get_running_loop().call_later(delay, self._incoming.put_nowait, raw)
        else:
            self._incoming.put_nowait(raw)

    def push_raw(self, raw):
        self._incoming.put_nowait(raw)

    def hang_up(self):
        """Remote side closes the socket."""
        self._incoming.put_nowait(_CLOSE)

    async def send(self, text):
        frame = json.loads(text)
        self.sent.append(frame)
        if self.on_send is not None:
            self.on_send(self, frame)

    async def close(self):
        self.close_calls += 1
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item

    def sent_events(self, event):
        return [frame["args"] for frame in self.sent if frame["event"] == event]


class FakeConnector:
    """Replacement for websockets.connect returning FakeUpstream instances."""

    def __init__(self, on_send=None, error: Exception | None = None):
        self.on_send = on_send
        self.error = error
        self.calls: list[tuple[str, dict]] = []
        self.upstreams: list[FakeUpstream] = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        upstream = FakeUpstream(self.on_send)
        self.upstreams.append(upstream)
        return upstream

    @property
    def upstream(self) -> FakeUpstream:
        return self.upstreams[-1]


def accept_auth(upstream, frame):
    """Reply "auth success" to every auth frame."""
    if frame["event"] == "auth":
        upstream.push("auth success")


@pytest.fixture
def panel():
    return FakePanel()


@pytest.fixture
def store(tmp_path):
    return KeyValueStore(str(tmp_path / "prism.json"))


@pytest.fixture
def ownership(store):
    return OwnershipStore(store)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        panel_url="https://panel.test",
        application_key="ptla_application_key_value",
        client_key="ptlc_client_key_value",
        session_secret="test-session-secret",
        relay_timeout=2.0,
        command_wait=0.05,
        store_path=str(tmp_path / "data" / "prism.json"),
    )

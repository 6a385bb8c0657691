"""
Prism - Panel REST Client
==========================
Thin async wrapper around the Pterodactyl panel API.

Two API surfaces are used:

    /api/application/*  - user lookups (application key)
    /api/client/*       - server-scoped calls and websocket credentials
                          (client key)

Every request carries a bearer key and
`Accept: application/vnd.pterodactyl.v1+json`. Non-2xx responses raise
PanelAPIError; the panel's body is kept on the exception for logging and is
never forwarded to browser clients. No call is retried.

Usage:
    panel = PanelClient(settings)
    creds = await panel.get_websocket_credentials("abcd1234")
    await panel.close()
"""

import asyncio
import logging
from typing import Any

import aiohttp

from prism.config import Settings
from prism.errors import PanelAPIError


logger = logging.getLogger(__name__)

PANEL_ACCEPT = "application/vnd.pterodactyl.v1+json"

# Permissions granted to subusers created from the dashboard.
DEFAULT_SUBUSER_PERMISSIONS = [
    "control.console", "control.start", "control.stop", "control.restart",
    "user.create", "user.read", "user.update", "user.delete",
    "file.create", "file.read", "file.update", "file.delete",
    "file.archive", "file.sftp", "backup.create", "backup.read",
    "backup.delete", "backup.update", "backup.download",
    "allocation.update", "startup.update", "startup.read",
    "database.create", "database.read", "database.update",
    "database.delete", "database.view_password", "schedule.create",
    "schedule.read", "schedule.update", "settings.rename",
    "schedule.delete", "settings.reinstall", "websocket.connect",
]


class PanelClient:
    """
    Async client for the panel REST API.

    One aiohttp session is opened lazily and reused for every call until
    close() is awaited.

    Attributes:
        settings: Frozen runtime settings (URL, keys, timeout).
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self.settings.panel_url

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # -- Users -----------------------------------------------------------------

    async def get_user(self, panel_user_id: str) -> dict | None:
        """
        Fetch a panel user with its owned-server relationship.

        Returns:
            The user's `attributes` dict, or None if the panel has no such user.
        """
        try:
            data = await self._request(
                "GET", f"/users/{panel_user_id}",
                api="application", params={"include": "servers"},
            )
        except PanelAPIError as e:
            if e.status == 404:
                return None
            raise
        return data.get("attributes") or None

    # -- Servers ---------------------------------------------------------------

    async def get_server(self, server_id: str) -> dict:
        return await self._request("GET", f"/servers/{server_id}")

    async def get_server_name(self, server_id: str) -> str:
        """Display name of a server, or "Unknown Server" if the lookup fails."""
        try:
            data = await self.get_server(server_id)
        except PanelAPIError as e:
            logger.info("Server name lookup failed for %s: %s", server_id, e)
            return "Unknown Server"
        return data.get("attributes", {}).get("name") or "Unknown Server"

    async def get_websocket_credentials(self, server_id: str) -> dict:
        """
        One-time upstream websocket address and short-lived token.

        Returns:
            Dict with 'socket' (wss:// URL) and 'token'.
        """
        data = await self._request("GET", f"/servers/{server_id}/websocket")
        creds = data.get("data") or {}
        if not creds.get("socket") or not creds.get("token"):
            raise PanelAPIError(f"Malformed websocket credentials for server {server_id}")
        return {"socket": creds["socket"], "token": creds["token"]}

    # -- Subusers --------------------------------------------------------------

    async def list_server_users(self, server_id: str) -> list[dict]:
        """Attributes of every subuser on a server."""
        data = await self._request("GET", f"/servers/{server_id}/users")
        return [item.get("attributes", {}) for item in data.get("data", [])]

    async def list_server_users_raw(self, server_id: str) -> dict:
        return await self._request("GET", f"/servers/{server_id}/users")

    async def create_server_user(
        self, server_id: str, email: str, permissions: list[str] | None = None,
    ) -> dict:
        return await self._request(
            "POST", f"/servers/{server_id}/users",
            json={"email": email, "permissions": permissions or DEFAULT_SUBUSER_PERMISSIONS},
        )

    async def delete_server_user(self, server_id: str, subuser_id: str) -> None:
        await self._request("DELETE", f"/servers/{server_id}/users/{subuser_id}")

    # -- Files -----------------------------------------------------------------

    async def get_upload_url(self, server_id: str) -> str:
        data = await self._request("GET", f"/servers/{server_id}/files/upload")
        url = data.get("attributes", {}).get("url")
        if not url:
            raise PanelAPIError(f"No upload URL returned for server {server_id}")
        return url

    async def upload_file(self, upload_url: str, filename: str, content: bytes,
                          content_type: str = "application/java-archive") -> None:
        """Upload one file through a signed upload URL (multipart/form-data)."""
        form = aiohttp.FormData()
        form.add_field("files", content, filename=filename, content_type=content_type)
        session = self._get_session()
        try:
            async with session.post(upload_url, data=form) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise PanelAPIError(f"File upload failed ({resp.status})", resp.status, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PanelAPIError(f"File upload failed: {e}") from e

    async def rename_files(self, server_id: str, root: str, files: list[dict]) -> None:
        await self._request(
            "PUT", f"/servers/{server_id}/files/rename",
            json={"root": root, "files": files},
        )

    # -- Internal helpers ------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def _headers(self, api: str) -> dict[str, str]:
        key = self.settings.application_key if api == "application" else self.settings.client_key
        return {
            "Authorization": f"Bearer {key}",
            "Accept": PANEL_ACCEPT,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        api: str = "client",
        json: dict | None = None,
        params: dict | None = None,
    ) -> dict[str, Any]:
        """
        Perform one panel API call and decode its JSON body.

        Returns:
            The decoded body, or {} for empty/204 responses.

        Raises:
            PanelAPIError: On non-2xx status or transport failure.
        """
        url = f"{self.base_url}/api/{api}{path}"
        session = self._get_session()
        try:
            async with session.request(
                method, url, json=json, params=params, headers=self._headers(api),
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    logger.warning(
                        "Panel %s %s failed with %s: %s",
                        method, path, resp.status, text[:500],
                    )
                    raise PanelAPIError(
                        f"Panel request {method} {path} failed ({resp.status})",
                        resp.status, text,
                    )
                if resp.status == 204 or not text.strip():
                    return {}
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                if not isinstance(data, dict):
                    logger.warning(
                        "Panel %s %s returned a non-JSON body (%s): %s",
                        method, path, resp.status, text[:500],
                    )
                    raise PanelAPIError(
                        f"Panel request {method} {path} returned an unexpected body",
                        resp.status, text,
                    )
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Panel %s %s transport error: %s", method, path, e)
            raise PanelAPIError(f"Panel request {method} {path} failed: {e}") from e

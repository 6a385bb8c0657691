"""
Prism - Plugin Marketplace
===========================
Browse Spigot resources through the Spiget API and install them onto a
server through the panel's file API.

Install flow:
    1. Look up the resource (its name becomes the jar name)
    2. Download the jar from Spiget
    3. Ask the panel for a signed upload URL and upload as a temp file
    4. Rename the temp file into plugins/<name>.jar
"""

import asyncio
import logging
import time
from typing import Any

import aiohttp

from prism.errors import MarketplaceError
from prism.panel import PanelClient


logger = logging.getLogger(__name__)

SPIGET_API_BASE = "https://api.spiget.org/v2"
PAGE_SIZE = 100


class MarketplaceClient:
    """Async Spiget client; one aiohttp session reused until close()."""

    def __init__(self, base_url: str = SPIGET_API_BASE, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def list_resources(self) -> Any:
        """Most downloaded resources first."""
        return await self._get_json("/resources", {"size": PAGE_SIZE, "sort": "-downloads"})

    async def search(self, query: str) -> Any:
        return await self._get_json(
            f"/search/resources/{query}", {"size": PAGE_SIZE, "sort": "-downloads"},
        )

    async def get_resource(self, resource_id: str) -> dict:
        return await self._get_json(f"/resources/{resource_id}")

    async def download(self, resource_id: str) -> bytes:
        url = f"{self.base_url}/resources/{resource_id}/download"
        try:
            async with self._get_session().get(url) as resp:
                if resp.status >= 400:
                    raise MarketplaceError(f"Download of resource {resource_id} failed ({resp.status})")
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MarketplaceError(f"Download of resource {resource_id} failed: {e}") from e

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def _get_json(self, path: str, params: dict | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().get(url, params=params) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    logger.warning("Spiget GET %s failed with %s: %s", path, resp.status, body[:300])
                    raise MarketplaceError(f"Spiget GET {path} failed ({resp.status})")
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    logger.warning("Spiget GET %s returned a non-JSON body: %s", path, e)
                    raise MarketplaceError(f"Spiget GET {path} returned an unexpected body") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MarketplaceError(f"Spiget GET {path} failed: {e}") from e


async def install_plugin(
    panel: PanelClient,
    marketplace: MarketplaceClient,
    server_id: str,
    resource_id: str,
) -> str:
    """
    Install a marketplace plugin onto a server.

    Returns:
        The path the jar was moved to, relative to the server root.
    """
    details = await marketplace.get_resource(resource_id)
    name = details.get("name") or f"plugin-{resource_id}"
    jar = await marketplace.download(resource_id)

    temp_name = f"temp_{int(time.time() * 1000)}_{resource_id}.jar"
    upload_url = await panel.get_upload_url(server_id)
    await panel.upload_file(upload_url, temp_name, jar)

    target = f"plugins/{name}.jar"
    await panel.rename_files(server_id, "/", [{"from": temp_name, "to": target}])
    logger.info("Installed resource %s on server %s as %s", resource_id, server_id, target)
    return target

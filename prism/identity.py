"""
Prism - Identity Resolver
==========================
Looks up the servers a user owns, straight from the panel.

The owned-server list is fetched on every call and never stored: the panel
is the only authority on ownership.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from prism.errors import UserNotFound
from prism.panel import PanelClient
from prism.store import OwnershipStore


logger = logging.getLogger(__name__)


def normalize_id(server_id: Any) -> str:
    """
    Canonical comparison key for a server identifier.

    Long (UUID) and short identifiers of the same server share the prefix
    before the first hyphen:

        normalize_id("abcd1234-5678-...") == normalize_id("abcd1234") == "abcd1234"

    Non-string or empty input normalizes to "".
    """
    if not server_id or not isinstance(server_id, str):
        return ""
    return server_id.split("-", 1)[0]


@dataclass
class PanelUser:
    """A panel user and the servers they own."""

    panel_id: str
    username: str
    servers: list[dict] = field(default_factory=list)

    @classmethod
    def from_attributes(cls, attributes: dict) -> "PanelUser":
        relationships = attributes.get("relationships") or {}
        data = (relationships.get("servers") or {}).get("data") or []
        return cls(
            panel_id=str(attributes.get("id", "")),
            username=attributes.get("username", ""),
            servers=[item.get("attributes") or {} for item in data],
        )

    def owns(self, server_id: str) -> bool:
        """True if any owned server's identifier or id normalizes to server_id's key."""
        key = normalize_id(server_id)
        if not key:
            return False
        return any(
            normalize_id(server.get("identifier")) == key or normalize_id(server.get("id")) == key
            for server in self.servers
        )


class IdentityResolver:
    """
    Resolves an internal user id into the panel's view of that user.

    The internal id is mapped to a panel id through the `users-{id}` store
    record; users without a record are looked up by their own id.
    """

    def __init__(self, panel: PanelClient, ownership: OwnershipStore):
        self.panel = panel
        self.ownership = ownership

    async def resolve(self, user_id: str) -> PanelUser:
        """
        Fetch a user's profile with owned servers. One round-trip, no retry.

        Raises:
            UserNotFound:  The panel has no such user.
            PanelAPIError: The lookup itself failed.
        """
        panel_id = self.ownership.panel_user_id(user_id) or user_id
        attributes = await self.panel.get_user(panel_id)
        if not attributes:
            logger.error("Failed to fetch panel user %s for user %s", panel_id, user_id)
            raise UserNotFound(f"Panel user {panel_id} not found")
        return PanelUser.from_attributes(attributes)

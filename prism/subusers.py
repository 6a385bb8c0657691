"""
Prism - Subuser Synchronizer
=============================
Keeps the ownership store in step with the panel's subuser lists.

`reconcile()` runs after every route that changes a server's user list and
from the explicit sync trigger. It performs all remote calls first and only
then writes, so a failed user-list fetch leaves the store untouched.

Records are append-only by default: a user removed on the panel keeps their
`subuser-servers-*` entry until pruning is switched on
(`subusers.prune_revoked` in config.yaml). Access is still bounded by the
panel, since every server call is proxied with the panel's own checks.

Store writes are per key with no cross-user atomicity; two reconciles that
touch the same user at the same time can lose one append.
"""

import logging

from prism.errors import PanelAPIError
from prism.identity import IdentityResolver, normalize_id
from prism.panel import PanelClient
from prism.store import OwnershipStore


logger = logging.getLogger(__name__)


class SubuserSynchronizer:
    """
    Reconciles `subusers-{serverId}` and `subuser-servers-{username}`.

    Attributes:
        prune_revoked: Drop entries of users no longer listed on the panel.
    """

    def __init__(
        self,
        panel: PanelClient,
        ownership: OwnershipStore,
        resolver: IdentityResolver,
        prune_revoked: bool = False,
    ):
        self.panel = panel
        self.ownership = ownership
        self.resolver = resolver
        self.prune_revoked = prune_revoked

    async def reconcile(self, server_id: str, owner_id: str | None) -> None:
        """
        Refresh one server's subuser snapshot and each subuser's server list.

        A server is appended to a subuser's list only if no entry with the
        same normalized id is already there.
        """
        try:
            users = await self.panel.list_server_users(server_id)
        except PanelAPIError as e:
            logger.error(
                "Subuser reconcile for server %s (owner %s) abandoned: %s",
                server_id, owner_id, e,
            )
            return
        server_name = await self.panel.get_server_name(server_id)

        subusers = [
            {
                "id": user.get("username"),
                "username": user.get("username"),
                "email": user.get("email"),
            }
            for user in users
            if user.get("username")
        ]

        previous = self.ownership.get_subusers(server_id)
        self.ownership.set_subusers(server_id, subusers)

        key = normalize_id(server_id)
        for subuser in subusers:
            username = subuser["id"]
            servers = self.ownership.get_subuser_servers(username) or []
            if any(normalize_id(entry.get("id")) == key for entry in servers):
                continue
            servers.append({"id": server_id, "name": server_name, "ownerId": owner_id})
            self.ownership.set_subuser_servers(username, servers)

        if self.prune_revoked:
            self._prune(server_id, previous, subusers)

        logger.info("Reconciled %d subusers for server %s", len(subusers), server_id)

    async def sync_user(self, user_id: str) -> dict:
        """
        Explicit sync for one user.

        Registers the user, reconciles every server they own (as owner), then
        every server they reach as a subuser (with the recorded owner).

        Returns:
            Counts of reconciled owned and subuser servers.

        Raises:
            UserNotFound, PanelAPIError: The user could not be resolved.
        """
        user = await self.resolver.resolve(user_id)
        self.ownership.add_known_user(user_id)

        owned = [s.get("identifier") for s in user.servers if s.get("identifier")]
        for server_id in owned:
            await self.reconcile(server_id, user_id)

        shared = self.ownership.get_subuser_servers(user.username) or []
        for entry in shared:
            await self.reconcile(entry["id"], entry.get("ownerId"))

        return {"owned": len(owned), "subuser": len(shared)}

    def _prune(self, server_id: str, previous: list[dict], current: list[dict]) -> None:
        remaining = {subuser["id"] for subuser in current}
        key = normalize_id(server_id)
        for subuser in previous:
            username = subuser.get("id")
            if not username or username in remaining:
                continue
            servers = self.ownership.get_subuser_servers(username)
            if not servers:
                continue
            kept = [entry for entry in servers if normalize_id(entry.get("id")) != key]
            if len(kept) != len(servers):
                self.ownership.set_subuser_servers(username, kept)
                logger.info("Pruned server %s from revoked subuser %s", server_id, username)

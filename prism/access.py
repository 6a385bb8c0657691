"""
Prism - Access Authorizer
==========================
Decides whether a session user may act on a server.

Access is granted on either of two paths:

    owner    - the panel lists the server among the user's own servers
    subuser  - the user's `subuser-servers-{username}` record lists it

Both compare normalized identifiers (prefix before the first hyphen), so a
short id in the URL matches a long UUID on record and vice versa.
Authorization is purely additive; there is no deny-list.

A panel failure while resolving the user is NOT a denial: UserNotFound and
PanelAPIError propagate so callers can tell "no access" from "could not
check access".
"""

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from prism.auth import SessionIdentity, SessionManager, require_session
from prism.errors import Forbidden
from prism.identity import IdentityResolver, normalize_id
from prism.store import OwnershipStore


logger = logging.getLogger(__name__)

# Path parameters that may carry the target server id.
SERVER_ID_PARAMS = ("id", "serverId", "instanceId")


@dataclass(frozen=True)
class Decision:
    """Outcome of one authorization check."""

    allowed: bool
    reason: str
    path: str | None = None

    @classmethod
    def allow(cls, path: str) -> "Decision":
        return cls(True, "allowed", path)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(False, reason)


class AccessAuthorizer:
    """
    Owner-or-subuser authorization against the panel and ownership store.

    Called on every server-scoped request; makes one panel round-trip per
    call and reads at most one store key.
    """

    def __init__(self, resolver: IdentityResolver, ownership: OwnershipStore):
        self.resolver = resolver
        self.ownership = ownership

    async def authorize(self, user_id: str, server_id: str | None) -> Decision:
        """
        Decide access of `user_id` to `server_id`.

        Returns:
            Decision.allow("owner" | "subuser") or Decision.deny(reason) with
            reason one of "missing-server-id", "no-subuser-record", "forbidden".

        Raises:
            UserNotFound, PanelAPIError: From the identity resolver.
        """
        key = normalize_id(server_id)
        if not key:
            return Decision.deny("missing-server-id")

        user = await self.resolver.resolve(user_id)
        if user.owns(key):
            logger.debug("User %s owns server %s", user_id, server_id)
            return Decision.allow("owner")

        subuser_servers = self.ownership.get_subuser_servers(user.username)
        if subuser_servers is None:
            logger.info("No subuser servers recorded for %s (user %s)", user.username, user_id)
            return Decision.deny("no-subuser-record")

        if any(normalize_id(entry.get("id")) == key for entry in subuser_servers):
            logger.debug("User %s is a subuser of server %s", user_id, server_id)
            return Decision.allow("subuser")

        logger.info("User %s (%s) has no access to server %s", user.username, user_id, server_id)
        return Decision.deny("forbidden")


def require_server_access(session_manager: SessionManager, authorizer: AccessAuthorizer):
    """
    Create a FastAPI dependency that enforces server access.

    Resolves the session (401 if absent), reads the server id from the
    `id`, `serverId` or `instanceId` path parameter (400 if absent) and
    raises Forbidden (403) when the authorizer denies.

    Returns:
        A dependency yielding the caller's SessionIdentity.
    """
    session = require_session(session_manager)

    async def _authorize(
        request: Request,
        identity: SessionIdentity = Depends(session),
    ) -> SessionIdentity:
        server_id = next(
            (request.path_params[name] for name in SERVER_ID_PARAMS if request.path_params.get(name)),
            None,
        )
        if not server_id:
            raise HTTPException(status_code=400, detail="No server ID provided")

        decision = await authorizer.authorize(identity.user_id, server_id)
        if not decision.allowed:
            raise Forbidden(decision.reason)
        return identity

    return _authorize

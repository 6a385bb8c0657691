"""
Prism - Session Tokens
=======================
Signed session tokens for dashboard users.

Security model:
- The login flow (out of this package) calls `SessionManager.issue()` once
  the user is known, linking the internal user id to a panel username.
- Tokens are HS256 JWTs signed with PRISM_SESSION_SECRET.
- A token is accepted from the `Authorization: Bearer` header, the
  `prism_session` cookie, or (for browser WebSockets, which cannot set
  headers) the `token` query parameter.

The session only says *who* the user is. Which servers they may touch is
decided per request by the access authorizer against the panel.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from prism.errors import Unauthenticated


JWT_ALGORITHM = "HS256"
SESSION_LIFETIME_DAYS = 7
SESSION_COOKIE = "prism_session"

# Security scheme for FastAPI dependency injection
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class SessionIdentity:
    """Who is making the request, as carried by the session token."""

    user_id: str
    username: str


class SessionManager:
    """
    Issues and verifies session tokens.

    Attributes:
        secret:   HS256 signing secret.
        lifetime: How long an issued token stays valid.
    """

    def __init__(self, secret: str, lifetime: timedelta = timedelta(days=SESSION_LIFETIME_DAYS)):
        self.secret = secret
        self.lifetime = lifetime

    def issue(self, user_id: str, username: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "username": username,
            "iat": now,
            "exp": now + self.lifetime,
        }
        return jwt.encode(payload, self.secret, algorithm=JWT_ALGORITHM)

    def verify(self, token: str | None) -> SessionIdentity:
        """
        Decode a token into a SessionIdentity.

        Raises:
            Unauthenticated: If the token is missing, expired, or forged.
        """
        if not token:
            raise Unauthenticated("No session token")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[JWT_ALGORITHM])
        except JWTError as e:
            raise Unauthenticated(f"Invalid session token: {e}") from e

        user_id = payload.get("sub")
        username = payload.get("username")
        if not user_id or not username:
            raise Unauthenticated("Session token is missing identity claims")
        return SessionIdentity(user_id=str(user_id), username=str(username))


def require_session(session_manager: SessionManager):
    """
    Create a FastAPI dependency that resolves the caller's SessionIdentity.

    Usage in routes:
        session = Depends(require_session(session_mgr))
        @router.get("/subuser-servers")
        async def list_servers(identity: SessionIdentity = session): ...
    """
    async def _verify(
        request: Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ) -> SessionIdentity:
        token = credentials.credentials if credentials else request.cookies.get(SESSION_COOKIE)
        identity = session_manager.verify(token)
        # Picked up by the error handlers for log context
        request.state.user_id = identity.user_id
        return identity

    return _verify

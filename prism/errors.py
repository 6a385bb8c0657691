"""
Prism - Error Taxonomy
=======================
Exceptions raised by the core and the HTTP status each one maps to.

    Unauthenticated         -> 401  no or invalid session
    Forbidden               -> 403  session valid, access denied
    UserNotFound            -> 404  panel has no such user
    PanelAPIError           -> 500  panel REST call failed
    MarketplaceError        -> 500  plugin marketplace call failed
    RelayTimeout            -> 500  upstream session exceeded its bound
    RelayConnectError       -> 500  upstream socket could not be opened
    RelayProtocolError      -> 500  upstream broke the handshake
    IncompatibleModuleError -> startup-fatal

`public_message` is what the client sees; everything else stays in the logs.
"""


class PrismError(Exception):
    """Base class for all Prism errors."""

    status_code = 500
    public_message = "Internal server error"


class Unauthenticated(PrismError):
    status_code = 401
    public_message = "Unauthorized"


class Forbidden(PrismError):
    status_code = 403
    public_message = "You do not have permission to access this server"

    def __init__(self, reason: str = "forbidden"):
        super().__init__(reason)
        self.reason = reason


class UserNotFound(PrismError):
    status_code = 404
    public_message = "User not found"


class PanelAPIError(PrismError):
    """
    A panel REST call returned a non-2xx status or could not be made.

    Attributes:
        status: HTTP status from the panel, or None for transport failures.
        body:   Raw response body. Logged, never forwarded to clients.
    """

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class RelayError(PrismError):
    """Base class for upstream websocket session failures."""


class RelayTimeout(RelayError):
    pass


class RelayConnectError(RelayError):
    pass


class RelayProtocolError(RelayError):
    pass


class IncompatibleModuleError(PrismError):
    """A registered route module targets a different platform release."""


class MarketplaceError(PrismError):
    """The plugin marketplace could not be reached or returned an error."""

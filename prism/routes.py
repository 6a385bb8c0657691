"""
Prism - REST API Routes
========================
HTTP endpoints for the dashboard, grouped into route modules.

Route groups (all under /api):
    server:core      /server/{id}, /server/{id}/websocket, /server/{id}/activity,
                     /server/{id}/command, /server/{id}/power
    server:players   /server/{id}/players
    server:users     /server/{id}/users[/{userId}]
    server:account   /state, /subuser-servers, /subuser-servers-sync
    server:plugins   /plugins/list, /plugins/search, /plugins/install/{serverId}

Server-scoped routes require a session (401) and owner-or-subuser access to
the server (403). Errors are rendered as {"error": message} by the handlers
registered in main.py.
"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from prism.access import require_server_access
from prism.auth import SessionIdentity, require_session
from prism.players import parse_player_list
from prism.plugins import install_plugin
from prism.registry import PrismModule
from prism.services import Services


PLATFORM_RELEASE = "0.5.0"


# =============================================================================
# Request Models (Pydantic)
# =============================================================================

class CommandRequest(BaseModel):
    """Console command to run on a server."""
    command: str = Field(..., min_length=1, description="Console command")
    wait: float | None = Field(None, gt=0, description="Sampling window in seconds")

class PowerRequest(BaseModel):
    """Power signal for a server."""
    action: Literal["start", "stop", "restart", "kill"]

class CreateSubuserRequest(BaseModel):
    """Invite a subuser by email."""
    email: str = Field(..., min_length=3, description="Email of the user to add")

class PluginInstallRequest(BaseModel):
    pluginId: str = Field(..., min_length=1, description="Spiget resource id")


# =============================================================================
# Router Factories
# =============================================================================

def create_server_router(services: Services) -> APIRouter:
    """Server details, console credentials, commands, power and activity."""
    router = APIRouter(prefix="/api")
    access = Depends(require_server_access(services.sessions, services.authorizer))

    @router.get("/server/{id}")
    async def get_server(id: str, identity: SessionIdentity = access):
        """Server details as reported by the panel."""
        return await services.panel.get_server(id)

    @router.get("/server/{id}/websocket")
    async def get_websocket(id: str, identity: SessionIdentity = access):
        """
        Upstream console credentials for the dashboard's own websocket.
        Shape matches the panel: {"data": {"socket", "token"}}.
        """
        return {"data": await services.panel.get_websocket_credentials(id)}

    @router.get("/server/{id}/activity")
    async def get_activity(id: str, identity: SessionIdentity = access):
        """Most recent activity first, at most 100 entries."""
        return {"activity": services.activity.entries(id)}

    @router.post("/server/{id}/command")
    async def send_command(id: str, req: CommandRequest, identity: SessionIdentity = access):
        """
        Run a console command and return the output sampled over a fixed
        window. The output may be partial or contain unrelated lines.
        """
        # The whole session, handshake included, must fit in relay.timeout.
        if req.wait is not None and req.wait >= services.settings.relay_timeout:
            raise HTTPException(
                status_code=400,
                detail=f"wait must be shorter than the relay timeout ({services.settings.relay_timeout}s)",
            )
        output = await services.relay.send_command_and_await(id, req.command, wait=req.wait)
        services.activity.record(id, "console command", {
            "command": req.command, "user": identity.username,
        })
        return {"output": output}

    @router.post("/server/{id}/power")
    async def set_power(id: str, req: PowerRequest, identity: SessionIdentity = access):
        """Send a start/stop/restart/kill signal."""
        await services.relay.set_power_state(id, req.action)
        services.activity.record(id, "power action", {
            "action": req.action, "user": identity.username,
        })
        return {"message": f"Power action '{req.action}' sent"}

    return router


def create_players_router(services: Services) -> APIRouter:
    router = APIRouter(prefix="/api")
    access = Depends(require_server_access(services.sessions, services.authorizer))

    @router.get("/server/{id}/players")
    async def get_players(id: str, identity: SessionIdentity = access):
        """Online players, parsed from the output of the `list` command."""
        lines = await services.relay.send_command_and_await(id, "list")
        return {"players": parse_player_list(lines)}

    return router


def create_users_router(services: Services) -> APIRouter:
    """Subuser management. Every change is followed by a reconcile."""
    router = APIRouter(prefix="/api")
    access = Depends(require_server_access(services.sessions, services.authorizer))

    @router.get("/server/{id}/users")
    async def list_users(id: str, identity: SessionIdentity = access):
        response = await services.panel.list_server_users_raw(id)
        await services.synchronizer.reconcile(id, identity.user_id)
        return response

    @router.post("/server/{id}/users", status_code=201)
    async def create_user(id: str, req: CreateSubuserRequest, identity: SessionIdentity = access):
        response = await services.panel.create_server_user(id, req.email)
        await services.synchronizer.reconcile(id, identity.user_id)

        username = response.get("attributes", {}).get("username")
        if username:
            services.ownership.add_known_user(username)
        services.activity.record(id, "subuser added", {
            "email": req.email, "user": identity.username,
        })
        return response

    @router.delete("/server/{id}/users/{userId}", status_code=204)
    async def delete_user(id: str, userId: str, identity: SessionIdentity = access):
        await services.panel.delete_server_user(id, userId)
        await services.synchronizer.reconcile(id, identity.user_id)
        services.activity.record(id, "subuser removed", {
            "subuser": userId, "user": identity.username,
        })

    return router


def create_account_router(services: Services) -> APIRouter:
    """Session state and the subuser server list of the current user."""
    router = APIRouter(prefix="/api")
    session = Depends(require_session(services.sessions))

    @router.get("/state")
    async def get_state(identity: SessionIdentity = session):
        return {
            "message": "Authenticated",
            "user": {"id": identity.user_id, "username": identity.username},
        }

    @router.get("/subuser-servers")
    async def list_subuser_servers(identity: SessionIdentity = session):
        """Servers the current user can access as a subuser."""
        return services.ownership.get_subuser_servers(identity.username) or []

    @router.post("/subuser-servers-sync")
    async def sync_subuser_servers(identity: SessionIdentity = session):
        """Reconcile every server the user owns or shares."""
        counts = await services.synchronizer.sync_user(identity.user_id)
        return {"message": "User servers synced successfully", **counts}

    return router


def create_plugins_router(services: Services) -> APIRouter:
    """Spigot marketplace browsing and installation."""
    router = APIRouter(prefix="/api")
    access = Depends(require_server_access(services.sessions, services.authorizer))

    @router.get("/plugins/list")
    async def list_plugins():
        return await services.marketplace.list_resources()

    @router.get("/plugins/search")
    async def search_plugins(query: str = Query("", description="Search text")):
        if not query:
            raise HTTPException(status_code=400, detail="Search query is required")
        return await services.marketplace.search(query)

    @router.post("/plugins/install/{serverId}")
    async def install(serverId: str, req: PluginInstallRequest, identity: SessionIdentity = access):
        target = await install_plugin(services.panel, services.marketplace, serverId, req.pluginId)
        services.activity.record(serverId, "plugin installed", {
            "plugin": req.pluginId, "path": target, "user": identity.username,
        })
        return {"message": "Plugin installed successfully", "path": target}

    return router


MODULES = [
    PrismModule("server:core", 3, PLATFORM_RELEASE, create_server_router),
    PrismModule("server:players", 3, PLATFORM_RELEASE, create_players_router),
    PrismModule("server:users", 3, PLATFORM_RELEASE, create_users_router),
    PrismModule("server:account", 3, PLATFORM_RELEASE, create_account_router),
    PrismModule("server:plugins", 3, PLATFORM_RELEASE, create_plugins_router),
]

"""
Prism - FastAPI Application
============================
Creates and configures the dashboard's web application.

Responsibilities:
    - Load config.yaml/.env into a frozen Settings object
    - Build the service graph (store, panel client, authorizer, relay, ...)
    - Validate and register the route modules
    - Render every error as {"error": message}
    - Serve the browser console bridge at /ws/server/{id}
    - Serve the built dashboard from app/dist under /app when present
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.websockets import WebSocketState

from prism.auth import SESSION_COOKIE
from prism.bridge import ConsoleBridge
from prism.config import ConfigManager, Settings
from prism.errors import PrismError, Unauthenticated
from prism.registry import PrismModule, validate_modules
from prism.routes import MODULES
from prism.services import Services, build_services


logger = logging.getLogger(__name__)

VERSION = "0.5.0"

# Close codes sent to the browser console before/instead of accepting.
WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403
WS_INTERNAL_ERROR = 1011


def create_app(
    project_dir: str | None = None,
    settings: Settings | None = None,
    services: Services | None = None,
    modules: list[PrismModule] | None = None,
) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Args:
        project_dir: Root directory of the Prism project. If None,
                     auto-detected from this file's location.
        settings:    Pre-built settings (skips config.yaml/.env).
        services:    Pre-built service graph (tests inject fakes here).
        modules:     Route modules to register (defaults to MODULES).

    Raises:
        IncompatibleModuleError: A route module targets another platform.
        ValueError:              Configuration is missing or invalid.
    """
    # -- Resolve directories ---------------------------------------------------
    if project_dir is None:
        project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    dist_dir = os.path.join(project_dir, "app", "dist")

    # -- Initialize services ---------------------------------------------------
    if services is None:
        if settings is None:
            config_manager = ConfigManager(project_dir)
            settings = Settings.from_config(
                config_manager.load(),
                config_manager.load_secrets(),
                data_dir=config_manager.data_dir,
            )
        services = build_services(settings)

    modules = MODULES if modules is None else modules
    validate_modules(modules, services.settings.platform_version)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await services.close()

    # -- Create FastAPI app ----------------------------------------------------
    app = FastAPI(
        title="Prism",
        description="Game server dashboard for Pterodactyl panels",
        version=VERSION,
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services

    # -- Error envelope --------------------------------------------------------

    @app.exception_handler(PrismError)
    async def prism_error_handler(request: Request, exc: PrismError):
        user_id = getattr(request.state, "user_id", None)
        if exc.status_code >= 500:
            logger.error(
                "%s %s failed for user %s: %s: %s",
                request.method, request.url.path, user_id, type(exc).__name__, exc,
            )
        else:
            logger.info(
                "%s %s rejected for user %s (%s): %s",
                request.method, request.url.path, user_id, exc.status_code, exc,
            )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(
            "%s %s crashed for user %s",
            request.method, request.url.path, getattr(request.state, "user_id", None),
        )
        return JSONResponse(status_code=500, content={"error": PrismError.public_message})

    # -- Register route modules ------------------------------------------------
    for module in modules:
        app.include_router(module.create_router(services))
        logger.debug("Loaded module %s", module.name)

    # -- Console bridge --------------------------------------------------------
    @app.websocket("/ws/server/{id}")
    async def console_bridge(websocket: WebSocket, id: str):
        """
        Browser console for one server, relayed through an upstream session.
        The session token comes from the `token` query parameter or cookie.
        """
        token = websocket.query_params.get("token") or websocket.cookies.get(SESSION_COOKIE)
        try:
            identity = services.sessions.verify(token)
            decision = await services.authorizer.authorize(identity.user_id, id)
        except Unauthenticated:
            await websocket.close(code=WS_UNAUTHORIZED)
            return
        except PrismError as e:
            logger.error("Console access check for server %s failed: %s", id, e)
            await websocket.close(code=WS_INTERNAL_ERROR)
            return

        if not decision.allowed:
            logger.info("Console for server %s denied to user %s: %s", id, identity.user_id, decision.reason)
            await websocket.close(code=WS_FORBIDDEN)
            return

        await websocket.accept()
        bridge = ConsoleBridge(websocket, services.activity, identity.username)
        try:
            await services.relay.stream(id, bridge.run, bridge.forward)
        except PrismError as e:
            logger.error("Console relay for server %s (user %s) failed: %s", id, identity.user_id, e)
            await _close_if_open(websocket, WS_INTERNAL_ERROR)
            return
        await _close_if_open(websocket)

    # -- Dashboard assets ------------------------------------------------------
    if os.path.isdir(dist_dir):
        app.mount("/app", StaticFiles(directory=dist_dir, html=True), name="app")

    @app.get("/")
    async def index():
        return RedirectResponse(url="/app/")

    return app


async def _close_if_open(websocket: WebSocket, code: int = 1000) -> None:
    """Close the browser socket unless the browser already left."""
    if (websocket.application_state is WebSocketState.CONNECTED
            and websocket.client_state is WebSocketState.CONNECTED):
        await websocket.close(code=code)

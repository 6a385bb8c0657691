"""
Prism - Game Server Dashboard
==============================
Web dashboard for game servers hosted on a Pterodactyl panel.

This package provides:
- FastAPI application exposing the dashboard's REST API
- Owner-or-subuser authorization for every server-scoped request
- Relay sessions over the panel's per-server websocket (console, stats,
  power) with a browser console bridge
- Subuser synchronization between the panel and the local store

Architecture:
    main.py      -> FastAPI app creation, error envelope, console bridge route
    config.py    -> config.yaml / .env loading, frozen Settings
    auth.py      -> Session tokens (JWT) and the session dependency
    identity.py  -> Identifier normalization and panel user resolution
    access.py    -> Owner/subuser access decisions and route dependency
    relay.py     -> Upstream websocket state machine and session manager
    bridge.py    -> Browser <-> relay console bridge
    subusers.py  -> Subuser record reconciliation
    store.py     -> JSON key-value store, ownership records, activity log
    panel.py     -> Panel REST client
    plugins.py   -> Spiget marketplace client and plugin install
    players.py   -> Player list parsing
    routes.py    -> REST endpoints, grouped into route modules
    registry.py  -> Route module declarations and version validation
    services.py  -> Service container wiring
"""

"""
Prism - Service Container
==========================
Wires the core collaborators together from one Settings object.

Every route module receives this container instead of reaching for module
globals, so tests can swap any piece (typically the panel client and the
upstream websocket connector) before the app is built.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from prism.access import AccessAuthorizer
from prism.auth import SessionManager
from prism.config import Settings
from prism.identity import IdentityResolver
from prism.panel import PanelClient
from prism.plugins import MarketplaceClient
from prism.relay import RelayManager
from prism.store import ActivityLog, KeyValueStore, OwnershipStore
from prism.subusers import SubuserSynchronizer


@dataclass
class Services:
    settings: Settings
    store: KeyValueStore
    ownership: OwnershipStore
    activity: ActivityLog
    panel: PanelClient
    resolver: IdentityResolver
    authorizer: AccessAuthorizer
    synchronizer: SubuserSynchronizer
    relay: RelayManager
    marketplace: MarketplaceClient
    sessions: SessionManager

    async def close(self) -> None:
        await self.store.flush()
        await self.panel.close()
        await self.marketplace.close()


def build_services(
    settings: Settings,
    panel: PanelClient | None = None,
    marketplace: MarketplaceClient | None = None,
    connect: Callable[..., Awaitable[Any]] | None = None,
) -> Services:
    """
    Construct the service graph.

    Args:
        settings:    Frozen runtime settings.
        panel:       Panel client override (tests pass a fake).
        marketplace: Marketplace client override.
        connect:     Upstream websocket connector override.
    """
    store = KeyValueStore(settings.store_path)
    ownership = OwnershipStore(store)
    panel = panel or PanelClient(settings)
    resolver = IdentityResolver(panel, ownership)

    return Services(
        settings=settings,
        store=store,
        ownership=ownership,
        activity=ActivityLog(store),
        panel=panel,
        resolver=resolver,
        authorizer=AccessAuthorizer(resolver, ownership),
        synchronizer=SubuserSynchronizer(
            panel, ownership, resolver, prune_revoked=settings.prune_revoked,
        ),
        relay=RelayManager(
            panel,
            timeout=settings.relay_timeout,
            command_wait=settings.command_wait,
            connect=connect,
        ),
        marketplace=marketplace or MarketplaceClient(),
        sessions=SessionManager(settings.session_secret),
    )

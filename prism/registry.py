"""
Prism - Route Module Registry
==============================
Static list of the route modules that make up the HTTP API.

Each module declares the API level and platform release it was built for.
`validate_modules()` runs once while the app is created; a mismatch raises
IncompatibleModuleError and the app refuses to start.
"""

from dataclasses import dataclass
from typing import Callable

from fastapi import APIRouter

from prism.errors import IncompatibleModuleError
from prism.services import Services


API_LEVEL = 3


@dataclass(frozen=True)
class PrismModule:
    name: str
    api_level: int
    target_platform: str
    create_router: Callable[[Services], APIRouter]


def validate_modules(modules: list[PrismModule], platform_version: str,
                     api_level: int = API_LEVEL) -> None:
    """
    Check every module against the running platform.

    Raises:
        IncompatibleModuleError: On a platform or API level mismatch, or a
                                 duplicate module name.
    """
    seen = set()
    for module in modules:
        if module.name in seen:
            raise IncompatibleModuleError(f"Module {module.name} is registered twice")
        seen.add(module.name)

        if module.target_platform != platform_version:
            raise IncompatibleModuleError(
                f"Module {module.name} was built for platform {module.target_platform} "
                f"but is attempting to run on version {platform_version}"
            )
        if module.api_level != api_level:
            raise IncompatibleModuleError(
                f"Module {module.name} targets API level {module.api_level}, "
                f"this release provides {api_level}"
            )

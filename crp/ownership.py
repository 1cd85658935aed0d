from __future__ import annotations

from .tables import ENV_SUFFIXES


def normalize_backend_name(name: str) -> str:
    """Drop deployment-environment suffixes: ``lab1-c2-stg`` -> ``lab1-c2``."""
    for suffix in ENV_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name


def is_dedicated(route: str, backend: str) -> bool:
    """True when ``backend`` exists solely to serve ``route``.

    ``lab1-c2-stg`` is dedicated to ``lab1-c2`` (and to ``lab1c2``);
    ``lab-01-basic-magecart-stg`` is not.
    """
    normalized = normalize_backend_name(backend)
    if normalized == route:
        return True
    return normalized.replace("-", "") == route.replace("-", "")


def should_replace(route: str, candidate: str, owner: str | None) -> bool:
    if owner is None:
        return True
    if is_dedicated(route, owner) and not is_dedicated(route, candidate):
        return False
    return True


class RouteOwnership:
    """Which backend owns each route name during one cycle.

    A dedicated backend is never displaced by a generic one; among equals the
    last claim wins.
    """

    def __init__(self) -> None:
        self.owners: dict[str, str] = {}

    def claim(self, route: str, backend: str) -> bool:
        if not should_replace(route, backend, self.owners.get(route)):
            return False
        self.owners[route] = backend
        return True

    def owner(self, route: str) -> str | None:
        return self.owners.get(route)

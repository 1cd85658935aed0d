"""Routing-label DSL.

Backends opt in with ``<ns>_enable=true`` and describe routers with flat labels::

    <ns>_http_routers_<router>_rule         = Host(`a.example.com`) | <rule id>
    <ns>_http_routers_<router>_rule_id      = <rule id>
    <ns>_http_routers_<router>_service      = <service name>
    <ns>_http_routers_<router>_priority     = <int>
    <ns>_http_routers_<router>_entrypoints  = web,websecure
    <ns>_http_routers_<router>_middlewares  = a__b-file__c

Label values cannot contain every character a middleware list needs, so the
list accepts ``__``, ``;`` or ``,`` as separator and ``-file`` stands in for
the ``@file`` provider suffix.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from . import tables
from .errors import MalformedMetadataWarning, NoRoutesDefinedError
from .models import RouteDefinition

MIDDLEWARE_SEPARATORS = ("__", ";", ",")
FILE_SUFFIX = "-file"
DEFAULT_SERVICE_PORT = 8080


@dataclass
class ParseResult:
    routes: dict[str, RouteDefinition] = field(default_factory=dict)
    warnings: list[MalformedMetadataWarning] = field(default_factory=list)


def router_prefix(namespace: str) -> str:
    return f"{namespace}_http_routers_"


def routing_enabled(metadata: dict[str, str], namespace: str = "traefik") -> bool:
    return metadata.get(f"{namespace}_enable", "").strip().lower() == "true"


def service_port(metadata: dict[str, str], service: str, namespace: str = "traefik") -> int:
    for key in (
        f"{namespace}_http_services_{service}_lb_port",
        f"{namespace}_http_services_{service}_loadbalancer_server_port",
    ):
        raw = metadata.get(key)
        if raw is None:
            continue
        try:
            return int(raw.strip())
        except ValueError:
            return DEFAULT_SERVICE_PORT
    return DEFAULT_SERVICE_PORT


def split_middlewares(value: str) -> list[str]:
    """Split a middleware label value into provider-qualified references."""
    sep = next((s for s in MIDDLEWARE_SEPARATORS if s in value), ",")
    out: list[str] = []
    for part in value.split(sep):
        part = part.strip()
        if not part:
            continue
        if part.endswith(FILE_SUFFIX):
            part = part[: -len(FILE_SUFFIX)] + "@file"
        if part not in out:
            out.append(part)
    return out


# Property handlers return a warning message, or None when the value was applied.

def _set_rule(route: RouteDefinition, value: str) -> str | None:
    route.rule = tables.RULES.get(value, value)
    return None


def _set_rule_id(route: RouteDefinition, value: str) -> str | None:
    rule = tables.RULES.get(value)
    if rule is None:
        return f"unknown rule_id '{value}'"
    route.rule = rule
    return None


def _set_service(route: RouteDefinition, value: str) -> str | None:
    route.service = value.strip()
    return None


def _set_priority(route: RouteDefinition, value: str) -> str | None:
    try:
        route.priority = int(value.strip())
    except ValueError:
        return f"priority '{value}' is not an integer, keeping {route.priority}"
    return None


def _set_entrypoints(route: RouteDefinition, value: str) -> str | None:
    eps = [p.strip() for p in value.split(",") if p.strip()]
    if not eps:
        route.entrypoints = list(tables.DEFAULT_ENTRYPOINTS)
        return f"entrypoints '{value}' is empty, defaulting to {list(tables.DEFAULT_ENTRYPOINTS)}"
    route.entrypoints = eps
    return None


def _set_middlewares(route: RouteDefinition, value: str) -> str | None:
    for ref in split_middlewares(value):
        route.add_middleware(ref)
    return None


PROPERTY_HANDLERS: dict[str, Callable[[RouteDefinition, str], str | None]] = {
    "rule": _set_rule,
    "rule_id": _set_rule_id,
    "service": _set_service,
    "priority": _set_priority,
    "entrypoints": _set_entrypoints,
    "middlewares": _set_middlewares,
}


def parse_routes(metadata: dict[str, str], backend: str, namespace: str = "traefik") -> ParseResult:
    """Group ``<ns>_http_routers_<name>_<property>`` labels into route definitions.

    Raises NoRoutesDefinedError when no router label is present.
    """
    prefix = router_prefix(namespace)
    result = ParseResult()

    for key, value in metadata.items():
        if not key.startswith(prefix):
            continue
        name, sep, prop = key[len(prefix):].partition("_")
        if not name or not sep or not prop:
            result.warnings.append(MalformedMetadataWarning(f"{backend}: ignoring malformed router label '{key}'"))
            continue

        route = result.routes.get(name)
        if route is None:
            route = RouteDefinition(name=name, priority=tables.default_priority(name))
            result.routes[name] = route

        handler = PROPERTY_HANDLERS.get(prop)
        if handler is None:
            result.warnings.append(MalformedMetadataWarning(f"{backend}: router '{name}' has unknown property '{prop}'"))
            continue
        msg = handler(route, value)
        if msg:
            result.warnings.append(MalformedMetadataWarning(f"{backend}: router '{name}' {msg}"))

    for route in result.routes.values():
        if not route.entrypoints:
            route.entrypoints = list(tables.DEFAULT_ENTRYPOINTS)

    if not result.routes:
        raise NoRoutesDefinedError(backend)
    return result

from __future__ import annotations

from dataclasses import dataclass, field

from . import tables
from .api_models import (
    ForwardAuth,
    Headers,
    HTTPConfiguration,
    LoadBalancer,
    Middleware,
    Router,
    RoutingConfiguration,
    Server,
    Service,
)
from .models import BackendDescriptor, RouteDefinition
from .ownership import RouteOwnership

AUTH_CHECK_MARKER = "auth-check"
FORWARD_AUTH_PATH = "/api/auth/check"
FORWARD_AUTH_RESPONSE_HEADERS = ("X-User-Id", "X-User-Email", "X-Authorization")
FORWARD_AUTH_REQUEST_HEADERS = ("Authorization", "Cookie", "X-Forwarded-For", "X-Forwarded-Host")


def is_provider_qualified(name: str) -> bool:
    return "@" in name


def primary_service_name(backend: BackendDescriptor, routes: dict[str, RouteDefinition]) -> str:
    for route in routes.values():
        if route.service and not is_provider_qualified(route.service):
            return route.service
    return backend.name


def auth_middleware_name(service: str) -> str:
    return f"{service}-auth"


def has_strip_prefix(middlewares: list[str]) -> bool:
    return any("strip-" in m and "-prefix" in m for m in middlewares)


@dataclass
class AssemblyReport:
    service: str
    accepted: list[str] = field(default_factory=list)
    rejected: list[tuple[str, str]] = field(default_factory=list)  # (route, kept owner)
    skipped: list[str] = field(default_factory=list)  # routes without a rule
    auth_middleware: str | None = None


class ConfigBuilder:
    """Accumulates one cycle's routers, services and middlewares."""

    def __init__(
        self,
        user_auth_enabled: bool = False,
        auth_check_middlewares: tuple[str, ...] = (),
        ownership: RouteOwnership | None = None,
    ):
        self.user_auth_enabled = user_auth_enabled
        self.auth_check_middlewares = tuple(auth_check_middlewares)
        self.ownership = ownership or RouteOwnership()
        self.routers: dict[str, RouteDefinition] = {}
        self.services: dict[str, Service] = {}
        self.middlewares: dict[str, Middleware] = {}

    def add_service(self, name: str, url: str) -> None:
        self.services[name] = Service(
            load_balancer=LoadBalancer(servers=[Server(url=url)], pass_host_header=False)
        )

    def add_auth_middleware(self, name: str, token: str) -> bool:
        # An empty header set is invalid proxy config; no token means no middleware.
        if not token:
            return False
        self.middlewares[name] = Middleware(
            headers=Headers(custom_request_headers={tables.SERVICE_AUTH_HEADER: f"Bearer {token}"})
        )
        return True

    def add_backend(
        self,
        backend: BackendDescriptor,
        routes: dict[str, RouteDefinition],
        token: str | None = None,
    ) -> AssemblyReport:
        """Apply middleware policy to a backend's routes and claim them.

        ``token`` is the backend's identity token, or None when the fetch failed;
        in that case routes are still emitted, just without the credential
        middleware.
        """
        service = primary_service_name(backend, routes)
        report = AssemblyReport(service=service)

        for route in routes.values():
            if not route.service:
                route.service = service

        self.add_service(service, backend.url)
        for route in routes.values():
            if route.service != service and not is_provider_qualified(route.service):
                self.add_service(route.service, backend.url)

        auth_name = auth_middleware_name(service)
        if token and self.add_auth_middleware(auth_name, token):
            report.auth_middleware = auth_name

        for name, route in routes.items():
            if not route.rule:
                report.skipped.append(name)
                continue
            self._apply_policy(route, report.auth_middleware)
            if self.ownership.claim(name, backend.name):
                self.routers[name] = route
                report.accepted.append(name)
            else:
                report.rejected.append((name, self.ownership.owner(name) or ""))
        return report

    def _apply_policy(self, route: RouteDefinition, auth_name: str | None) -> None:
        if not self.user_auth_enabled:
            route.middlewares = [m for m in route.middlewares if AUTH_CHECK_MARKER not in m]

        strip = tables.strip_prefix_middleware(route.name)
        if strip and not has_strip_prefix(route.middlewares):
            route.add_middleware(strip)

        if auth_name and auth_name not in route.middlewares and f"{auth_name}@file" not in route.middlewares:
            # Runs first so the credential is set before any other middleware.
            route.middlewares.insert(0, auth_name)

        route.add_middleware(tables.RETRY_MIDDLEWARE)

    def add_admin_routes(self) -> None:
        self.routers["traefik-api"] = RouteDefinition(
            name="traefik-api",
            rule="PathPrefix(`/api/http`) || PathPrefix(`/api/rawdata`) || PathPrefix(`/api/overview`) || Path(`/api/version`)",
            service=tables.INTERNAL_SERVICE,
            priority=tables.ADMIN_PRIORITY,
        )
        self.routers["traefik-dashboard"] = RouteDefinition(
            name="traefik-dashboard",
            rule="PathPrefix(`/dashboard`)",
            service=tables.INTERNAL_SERVICE,
            priority=tables.ADMIN_PRIORITY,
        )

    def forward_auth_names(self) -> list[str]:
        names = list(self.auth_check_middlewares)
        for route in self.routers.values():
            for ref in route.middlewares:
                if AUTH_CHECK_MARKER in ref and not is_provider_qualified(ref) and ref not in names:
                    names.append(ref)
        return names

    def add_forward_auth(self, name: str, identity_url: str) -> bool:
        if not identity_url:
            return False
        self.middlewares[name] = Middleware(
            forward_auth=ForwardAuth(
                address=f"{identity_url.rstrip('/')}{FORWARD_AUTH_PATH}",
                trust_forward_header=True,
                auth_response_headers=list(FORWARD_AUTH_RESPONSE_HEADERS),
                auth_request_headers=list(FORWARD_AUTH_REQUEST_HEADERS),
            )
        )
        return True

    def add_identity_middlewares(self, identity_url: str | None) -> list[str]:
        """Synthesize forward-auth middlewares; returns the names created."""
        if not self.user_auth_enabled or not identity_url:
            return []
        return [n for n in self.forward_auth_names() if self.add_forward_auth(n, identity_url)]

    def build(self) -> RoutingConfiguration:
        routers = {
            name: Router(
                rule=r.rule,
                service=r.service,
                priority=r.priority,
                entry_points=list(r.entrypoints) or list(tables.DEFAULT_ENTRYPOINTS),
                middlewares=list(r.middlewares),
            )
            for name, r in self.routers.items()
        }
        return RoutingConfiguration(
            http=HTTPConfiguration(
                routers=routers,
                services=dict(self.services),
                middlewares=dict(self.middlewares),
            )
        )

from __future__ import annotations

from dataclasses import dataclass, field

from .tables import DEFAULT_ENTRYPOINTS, DEFAULT_PRIORITY


@dataclass(frozen=True)
class BackendDescriptor:
    """A discovered service instance. Produced fresh every cycle."""

    name: str
    url: str
    partition: str
    region: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class RouteDefinition:
    name: str
    rule: str = ""
    service: str = ""  # owning backend; empty until defaulted by the assembler
    priority: int = DEFAULT_PRIORITY
    entrypoints: list[str] = field(default_factory=lambda: list(DEFAULT_ENTRYPOINTS))
    middlewares: list[str] = field(default_factory=list)

    def add_middleware(self, ref: str) -> None:
        if ref not in self.middlewares:
            self.middlewares.append(ref)


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float  # epoch seconds

    def valid_at(self, now: float) -> bool:
        return bool(self.token) and now < self.expires_at

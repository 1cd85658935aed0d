from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Router(_Model):
    rule: str = Field(..., description="Matcher expression, e.g. Host(`a.example.com`)")
    service: str = Field(..., description="Target service name (or provider-qualified, e.g. api@internal)")
    priority: int = 0
    entry_points: list[str] = Field(..., alias="entryPoints", min_length=1)
    middlewares: list[str] = Field(default_factory=list)


class Server(_Model):
    url: str


class LoadBalancer(_Model):
    servers: list[Server] = Field(..., min_length=1)
    pass_host_header: bool = Field(False, alias="passHostHeader")


class Service(_Model):
    load_balancer: LoadBalancer = Field(..., alias="loadBalancer")


class Headers(_Model):
    # An empty header set is rejected by the proxy ("headers cannot be a standalone element").
    custom_request_headers: dict[str, str] = Field(..., alias="customRequestHeaders", min_length=1)


class ForwardAuth(_Model):
    address: str
    trust_forward_header: bool = Field(False, alias="trustForwardHeader")
    auth_response_headers: list[str] = Field(default_factory=list, alias="authResponseHeaders")
    auth_request_headers: list[str] = Field(default_factory=list, alias="authRequestHeaders")


class Middleware(_Model):
    headers: Headers | None = None
    forward_auth: ForwardAuth | None = Field(None, alias="forwardAuth")

    @model_validator(mode="after")
    def _exactly_one(self) -> "Middleware":
        if (self.headers is None) == (self.forward_auth is None):
            raise ValueError("middleware must define exactly one of headers or forwardAuth")
        return self


class HTTPConfiguration(_Model):
    routers: dict[str, Router] = Field(default_factory=dict)
    services: dict[str, Service] = Field(default_factory=dict)
    middlewares: dict[str, Middleware] = Field(default_factory=dict)


class RoutingConfiguration(_Model):
    http: HTTPConfiguration = Field(default_factory=HTTPConfiguration)

    def to_traefik(self) -> dict[str, Any]:
        """Dynamic configuration in the proxy's camelCase JSON/YAML shape."""
        return self.model_dump(by_alias=True, exclude_none=True)

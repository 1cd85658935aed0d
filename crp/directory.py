from __future__ import annotations

from typing import Any, Callable

import docker
import httpx
import requests
from docker.errors import DockerException

from .errors import CredentialFetchError, DirectoryQueryError
from .labels import routing_enabled, service_port
from .models import BackendDescriptor

RUN_SERVICES_URL = "https://{region}-run.googleapis.com/apis/serving.knative.dev/v1/namespaces/{project}/services"


class CloudRunDirectory:
    """Lists Cloud Run services that opted in with ``<ns>_enable=true``."""

    def __init__(
        self,
        access_token: Callable[[], str],
        namespace: str = "traefik",
        timeout_s: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.access_token = access_token
        self.namespace = namespace
        self.timeout_s = timeout_s
        self.transport = transport

    def list_backends(self, partition: str, region: str) -> list[BackendDescriptor]:
        try:
            token = self.access_token()
        except CredentialFetchError as e:
            raise DirectoryQueryError(partition, region, f"no access token: {e}") from e

        url = RUN_SERVICES_URL.format(region=region, project=partition)
        out: list[BackendDescriptor] = []
        page = ""
        with httpx.Client(
            timeout=self.timeout_s,
            transport=self.transport,
            headers={"Authorization": f"Bearer {token}"},
        ) as client:
            while True:
                params = {"continue": page} if page else None
                try:
                    resp = client.get(url, params=params)
                except httpx.HTTPError as e:
                    raise DirectoryQueryError(partition, region, f"{type(e).__name__}: {e}") from e
                if resp.status_code != 200:
                    raise DirectoryQueryError(partition, region, f"HTTP {resp.status_code}: {resp.text[:200]}")

                try:
                    data = resp.json()
                except ValueError as e:
                    raise DirectoryQueryError(partition, region, f"invalid JSON response: {resp.text[:200]}") from e
                if not isinstance(data, dict):
                    raise DirectoryQueryError(partition, region, f"unexpected response type {type(data).__name__}")

                for item in data.get("items") or []:
                    if not isinstance(item, dict):
                        continue
                    backend = self._descriptor(item, partition, region)
                    if backend is not None:
                        out.append(backend)

                page = (data.get("metadata") or {}).get("continue") or ""
                if not page:
                    break
        return out

    def _descriptor(self, item: dict[str, Any], partition: str, region: str) -> BackendDescriptor | None:
        meta = item.get("metadata") or {}
        # Service-level labels (gcloud run deploy --labels) first, then the revision template's.
        labels = meta.get("labels") or {}
        if not routing_enabled(labels, self.namespace):
            template = ((item.get("spec") or {}).get("template") or {}).get("metadata") or {}
            labels = template.get("labels") or {}
            if not routing_enabled(labels, self.namespace):
                return None
        return BackendDescriptor(
            name=meta.get("name", ""),
            url=(item.get("status") or {}).get("url", ""),
            partition=partition,
            region=region,
            metadata=dict(labels),
        )


class DockerDirectory:
    """Lists running containers on a docker network that carry ``<ns>_enable=true``.

    The partition is the network name; region is ignored.
    """

    def __init__(self, client: Any = None, namespace: str = "traefik"):
        self.client = client
        self.namespace = namespace

    def _client(self) -> Any:
        return self.client or docker.from_env()

    def list_backends(self, partition: str, region: str) -> list[BackendDescriptor]:
        filters: dict[str, Any] = {"label": [f"{self.namespace}_enable=true"], "status": "running"}
        if partition:
            filters["network"] = partition
        try:
            containers = self._client().containers.list(filters=filters)
        except (DockerException, requests.RequestException) as e:
            raise DirectoryQueryError(partition, region, f"{type(e).__name__}: {e}") from e

        out: list[BackendDescriptor] = []
        for c in containers:
            labels = dict(c.labels or {})
            if not routing_enabled(labels, self.namespace):
                continue
            port = service_port(labels, c.name, self.namespace)
            out.append(
                BackendDescriptor(
                    name=c.name,
                    url=f"http://{c.name}:{port}",
                    partition=partition,
                    region=region,
                    metadata=labels,
                )
            )
        return out


def directory_from_settings(s: Any, access_token: Callable[[], str]) -> CloudRunDirectory | DockerDirectory:
    if s.directory == "docker":
        return DockerDirectory(namespace=s.label_namespace)
    if s.directory == "cloudrun":
        return CloudRunDirectory(access_token, namespace=s.label_namespace)
    raise ValueError(f"Unknown directory '{s.directory}'. Use 'cloudrun' or 'docker'.")

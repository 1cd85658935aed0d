import dataclasses
import sys
import threading

import pytest

# Ensure project root is importable (so `import crp` works without installing the package)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from crp import events  # noqa: E402
from crp.errors import CredentialFetchError, MetadataServerUnavailable  # noqa: E402
from crp.models import BackendDescriptor  # noqa: E402
from crp.settings import settings as _settings  # noqa: E402


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Point the event journal at an isolated sqlite file."""
    monkeypatch.setattr(events, "settings", dataclasses.replace(_settings, db_path=str(tmp_path / "events.db")))
    return tmp_path / "events.db"


@pytest.fixture
def make_settings():
    def _make(**overrides):
        base = dict(
            project_ids=("proj-a",),
            region="us-central1",
            poll_interval_s=1,
            directory="cloudrun",
            label_namespace="traefik",
            dev_mode=False,
            token_ttl_s=55 * 60,
            fetch_workers=4,
            user_auth_enabled=False,
            identity_marker="home-index",
            auth_check_middlewares=("lab1-auth-check",),
            handoff_timeout_s=1,
            output_file="",
        )
        base.update(overrides)
        return dataclasses.replace(_settings, **base)

    return _make


def jwt(tag: str = "x") -> str:
    return f"eyJhbGciOiJSUzI1NiJ9.{tag}.signature"


def backend(name: str, labels: dict, url: str | None = None, partition: str = "proj-a") -> BackendDescriptor:
    return BackendDescriptor(
        name=name,
        url=url or f"https://{name}.a.run.app",
        partition=partition,
        region="us-central1",
        metadata={"traefik_enable": "true", **labels},
    )


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSource:
    """Token source with scripted results per audience.

    ``results`` maps audience -> token string or exception instance; anything
    else gets a fresh JWT-looking token.
    """

    def __init__(self, results=None, unavailable: bool = False):
        self.results = results or {}
        self.unavailable = unavailable
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def identity_token(self, audience: str) -> str:
        with self._lock:
            self.calls.append(audience)
            n = len(self.calls)
        if self.unavailable:
            raise MetadataServerUnavailable("lookup metadata.google.internal: no such host")
        result = self.results.get(audience)
        if isinstance(result, Exception):
            raise result
        return result if result is not None else jwt(f"{audience}-{n}")

    def access_token(self):
        with self._lock:
            self.calls.append("access")
        if self.unavailable:
            raise MetadataServerUnavailable("no metadata server")
        return "ya29.access", 3599


class FakeDirectory:
    def __init__(self, partitions=None):
        # partition -> list of BackendDescriptor or an exception instance
        self.partitions = partitions or {}
        self.queries: list[tuple[str, str]] = []

    def list_backends(self, partition: str, region: str):
        self.queries.append((partition, region))
        result = self.partitions.get(partition, [])
        if isinstance(result, Exception):
            raise result
        return list(result)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fetch_error():
    return CredentialFetchError("metadata server returned 500: boom")

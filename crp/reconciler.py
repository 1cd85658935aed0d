from __future__ import annotations

import queue
import time
from concurrent.futures import ThreadPoolExecutor
from threading import Event, Thread
from typing import Any

from . import events
from .api_models import RoutingConfiguration
from .assembler import ConfigBuilder
from .credentials import TokenManager, truncate_token
from .directory import directory_from_settings
from .errors import (
    DirectoryQueryError,
    HandoffTimeoutError,
    InvalidCredentialFormatError,
    MetadataServerUnavailable,
    NoRoutesDefinedError,
)
from .labels import parse_routes
from .models import BackendDescriptor
from .settings import Settings, settings


class Reconciler:
    """Re-derives the complete routing configuration on a fixed interval.

    Each cycle lists every partition, turns each backend's labels into routers,
    attaches a fresh identity token, and hands the finished snapshot to the
    consumer through a single-slot channel. A failing partition or backend is
    logged and skipped; only a handoff timeout fails the whole cycle.
    """

    def __init__(
        self,
        directory: Any,
        tokens: TokenManager,
        channel: "queue.Queue[RoutingConfiguration] | None" = None,
        config: Settings | None = None,
    ):
        self.settings = config or settings
        if not self.settings.project_ids:
            raise ValueError("at least one project ID must be specified")
        if not self.settings.region:
            raise ValueError("region must be specified")

        self.directory = directory
        self.tokens = tokens
        self.channel: queue.Queue[RoutingConfiguration] = channel if channel is not None else queue.Queue(maxsize=1)
        self.poll_interval_s = max(1, int(self.settings.poll_interval_s))
        self.cycles = 0
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        """Run the first cycle in the caller's thread, then poll in the background.

        Errors from the first cycle propagate so a broken setup fails fast.
        """
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self.run_cycle()
        events.log_event("INFO", f"Initial configuration generated, polling every {self.poll_interval_s}s")
        self._thr = Thread(target=self._loop, name="crp-reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        while not self._stop.wait(self.poll_interval_s):
            try:
                self.run_cycle()
            except Exception as e:
                events.log_event(
                    "ERROR",
                    f"Reconcile cycle {self.cycles} failed: {type(e).__name__}: {e}",
                    code=events.POLL_FAILED,
                )
        events.log_event("INFO", "Reconciler stopped", code=events.POLL_STOPPED)

    def run_cycle(self) -> RoutingConfiguration:
        self.cycles += 1
        config = self.build_config()
        self.handoff(config)
        return config

    def handoff(self, config: RoutingConfiguration) -> None:
        timeout = self.settings.handoff_timeout_s
        try:
            self.channel.put(config, timeout=timeout)
        except queue.Full as e:
            events.log_event(
                "ERROR",
                f"Consumer did not take the previous configuration within {timeout}s",
                code=events.CONFIG_SEND_FAILED,
            )
            raise HandoffTimeoutError(f"timeout waiting for consumer ({timeout}s)") from e
        events.log_event("INFO", "Configuration handed off", code=events.CONFIG_SENT)

    def build_config(self) -> RoutingConfiguration:
        started = time.monotonic()
        s = self.settings
        builder = ConfigBuilder(
            user_auth_enabled=s.user_auth_enabled,
            auth_check_middlewares=s.auth_check_middlewares,
        )
        identity_url: str | None = None
        total = 0

        for partition in s.project_ids:
            events.log_event("INFO", f"Listing backends in {partition}/{s.region}", code=events.DISCOVERY_STARTED)
            try:
                backends = self.directory.list_backends(partition, s.region)
            except DirectoryQueryError as e:
                events.log_event("ERROR", str(e), code=events.DISCOVERY_FAILED)
                continue
            except Exception as e:
                events.log_event(
                    "ERROR",
                    f"Failed to list backends in {partition}/{s.region}: {type(e).__name__}: {e}",
                    code=events.DISCOVERY_FAILED,
                )
                continue

            total += len(backends)
            if not backends:
                events.log_event("WARN", f"No routing-enabled backends in {partition}", code=events.DISCOVERY_NO_SERVICES)
                continue
            events.log_event("INFO", f"Discovered {len(backends)} backends in {partition}", code=events.DISCOVERY_COMPLETE)

            tokens = self._prefetch_tokens(backends)
            for backend in backends:
                try:
                    self._process_backend(builder, backend, tokens.get(backend.url))
                except NoRoutesDefinedError as e:
                    events.log_event("WARN", str(e), service_name=backend.name, code=events.SERVICE_FAILED)
                    continue
                except Exception as e:
                    events.log_event(
                        "ERROR",
                        f"Failed to process backend: {type(e).__name__}: {e}",
                        service_name=backend.name,
                        code=events.SERVICE_FAILED,
                    )
                    continue
                if s.identity_marker and s.identity_marker in backend.name and backend.url:
                    identity_url = backend.url

        builder.add_admin_routes()
        if s.user_auth_enabled:
            created = builder.add_identity_middlewares(identity_url)
            if not identity_url:
                events.log_event("WARN", f"User auth enabled but no '{s.identity_marker}' backend found; forwardAuth middlewares not generated")
            else:
                events.log_event("INFO", f"Created forwardAuth middlewares {created} -> {identity_url}")

        config = builder.build()
        events.log_event(
            "INFO",
            f"Configuration generated: backends={total} routers={len(config.http.routers)} "
            f"services={len(config.http.services)} middlewares={len(config.http.middlewares)} "
            f"in {time.monotonic() - started:.2f}s",
            code=events.CONFIG_GENERATED,
        )
        return config

    def _prefetch_tokens(self, backends: list[BackendDescriptor]) -> dict[str, Any]:
        """Fetch identity tokens for all backend URLs concurrently.

        Values are either a token or the exception its fetch raised.
        """
        urls = list(dict.fromkeys(b.url for b in backends if b.url))
        if not urls:
            return {}

        def fetch(url: str) -> Any:
            try:
                return self.tokens.get_token(url)
            except Exception as e:
                return e

        workers = max(1, min(int(self.settings.fetch_workers), len(urls)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="crp-token") as pool:
            return dict(zip(urls, pool.map(fetch, urls)))

    def _process_backend(self, builder: ConfigBuilder, backend: BackendDescriptor, token_result: Any) -> None:
        parsed = parse_routes(backend.metadata, backend.name, self.settings.label_namespace)
        for w in parsed.warnings:
            events.log_event("WARN", str(w), service_name=backend.name, code=events.METADATA_WARNING)

        token: str | None = None
        if isinstance(token_result, Exception):
            code = events.TOKEN_INVALID if isinstance(token_result, InvalidCredentialFormatError) else events.TOKEN_FETCH_FAILED
            hint = " (set CRP_DEV_MODE=true for local runs)" if isinstance(token_result, MetadataServerUnavailable) else ""
            events.log_event(
                "ERROR",
                f"No identity token for {backend.url}: {token_result}{hint}; routes emitted without service auth",
                service_name=backend.name,
                code=code,
            )
        elif token_result:
            token = token_result
            events.log_event(
                "DEBUG",
                f"Identity token for {backend.url} (length {len(token)}, {truncate_token(token)})",
                service_name=backend.name,
                code=events.TOKEN_FETCHED,
            )

        report = builder.add_backend(backend, parsed.routes, token)

        for name in report.accepted:
            route = builder.routers[name]
            events.log_event(
                "DEBUG",
                f"Router {name}: rule={route.rule} service={route.service} middlewares=[{', '.join(route.middlewares) or 'none'}]",
                service_name=backend.name,
                code=events.ROUTER_CONFIGURED,
            )
        for name, owner in report.rejected:
            events.log_event(
                "INFO",
                f"Router {name} kept by dedicated backend {owner}",
                service_name=backend.name,
                code=events.ROUTER_REJECTED,
            )
        for name in report.skipped:
            events.log_event("WARN", f"Router {name} has no rule, skipped", service_name=backend.name, code=events.METADATA_WARNING)

        events.log_event(
            "INFO",
            f"Processed {len(report.accepted)} routers as service '{report.service}'"
            + ("" if report.auth_middleware else " (no service auth)"),
            service_name=backend.name,
            code=events.SERVICE_PROCESSED,
        )


def reconciler_from_settings(
    s: Settings | None = None,
    channel: "queue.Queue[RoutingConfiguration] | None" = None,
) -> Reconciler:
    s = s or settings
    tokens = TokenManager.from_settings(s)
    if tokens.is_dev_mode():
        events.log_event("WARN", "Development mode: user credentials are used when the metadata server is unavailable")
    directory = directory_from_settings(s, tokens.access_token)
    return Reconciler(directory, tokens, channel=channel, config=s)

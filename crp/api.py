from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query

from . import events
from .output import write_routes
from .reconciler import Reconciler, reconciler_from_settings
from .runtime import RuntimeState, SnapshotConsumer
from .settings import Settings, settings


def create_app(
    reconciler: Reconciler | None = None,
    runtime: RuntimeState | None = None,
    config: Settings | None = None,
) -> FastAPI:
    """HTTP provider endpoint for the proxy.

    On startup the reconciler's first cycle runs to completion before the app
    accepts requests; later snapshots replace the served one as they arrive.
    """
    s = config or settings
    state = runtime or RuntimeState()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        events.init_db()
        rec = reconciler or reconciler_from_settings(s)
        writer = partial(write_routes, s.output_file, environment=s.environment) if s.output_file else None
        consumer = SnapshotConsumer(rec.channel, state, writer)
        app.state.reconciler = rec
        await asyncio.to_thread(rec.start)
        # Publish the first snapshot before serving so /api/config never starts empty.
        await asyncio.to_thread(consumer.consume_one, rec.settings.handoff_timeout_s)
        consumer.start()
        try:
            yield
        finally:
            rec.stop()
            consumer.stop()

    app = FastAPI(title="Cloud Route Provider", lifespan=lifespan)
    app.state.runtime = state

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        cfg = state.get_config()
        if cfg is None:
            raise HTTPException(status_code=503, detail="No configuration generated yet")
        return cfg.to_traefik()

    @app.get("/health")
    def health() -> dict[str, Any]:
        st = state.status()
        body: dict[str, Any] = {"status": "ok" if st["generation"] else "starting", **st}
        rec = getattr(app.state, "reconciler", None)
        if rec is not None:
            total, expired = rec.tokens.cache_stats()
            body["tokens"] = {"total": total, "expired": expired}
            body["dev_mode"] = rec.tokens.is_dev_mode()
        return body

    @app.get("/events")
    def list_events(limit: int = Query(100, ge=1, le=1000)) -> list[dict[str, Any]]:
        return events.latest_events(limit)

    return app


app = create_app()

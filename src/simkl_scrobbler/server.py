from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from simkl_scrobbler import __version__
from simkl_scrobbler.api.middleware import request_context_middleware
from simkl_scrobbler.api.routes_addon import router as addon_router
from simkl_scrobbler.clients.anilist import AniListClient
from simkl_scrobbler.clients.simkl import SimklClient
from simkl_scrobbler.config import get_settings
from simkl_scrobbler.ops import audit
from simkl_scrobbler.queue.interfaces import JobStore
from simkl_scrobbler.queue.manager import build_job_store
from simkl_scrobbler.scrobble.executor import ScrobbleExecutor
from simkl_scrobbler.scrobble.registry import PendingJobRegistry
from simkl_scrobbler.scrobble.scheduler import ScrobbleScheduler
from simkl_scrobbler.scrobble.worker import ScrobbleWorker
from simkl_scrobbler.utils.circuit import Circuit
from simkl_scrobbler.utils.log import logger


def create_app(
    *,
    store_factory: Callable[[], Awaitable[JobStore]] | None = None,
    simkl_transport: httpx.AsyncBaseTransport | None = None,
    anilist_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = get_settings()
        simkl = SimklClient(transport=simkl_transport)
        anilist = AniListClient(transport=anilist_transport)
        registry = PendingJobRegistry()
        store = await (store_factory or build_job_store)()
        executor = ScrobbleExecutor(
            primary=simkl,
            secondary=anilist,
            step_timeout_sec=float(s.scrobble_step_timeout_sec),
        )
        worker = ScrobbleWorker(
            executor=executor,
            registry=registry,
            supersede_fence=bool(s.scrobble_supersede_fence),
        )
        app.state.simkl = simkl
        app.state.anilist = anilist
        app.state.registry = registry
        app.state.job_store = store
        app.state.scheduler = ScrobbleScheduler(store=store, registry=registry)

        await store.start(worker)
        st = store.status()
        if st.banner:
            logger.warning("queue_banner", banner=st.banner)
        logger.info("server_started", version=__version__, queue_mode=st.mode)
        audit.emit("server.started", outcome="ok", meta={"version": __version__, "queue_mode": st.mode})
        try:
            yield
        finally:
            await store.stop()
            await simkl.aclose()
            await anilist.aclose()
            logger.info("server_stopped", pending=len(registry))

    app = FastAPI(title="simkl-scrobbler", version=__version__, lifespan=lifespan)

    # Stremio clients fetch addon resources cross-origin.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        t0 = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            # Path segments carry user tokens; log the route template only.
            route = request.scope.get("route")
            logger.info(
                "http_done",
                method=request.method,
                route=getattr(route, "path", "unmatched"),
                status=getattr(response, "status_code", 0),
                duration_ms=round(dt_ms, 2),
            )

    # Must be outermost so request_id is present for all logs (including log_requests).
    app.middleware("http")(request_context_middleware)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        store = getattr(request.app.state, "job_store", None)
        registry = getattr(request.app.state, "registry", None)
        out: dict[str, Any] = {"ok": True, "version": __version__}
        if store is not None:
            out["queue"] = asdict(store.status())
            out["jobs"] = (await store.snapshot()).get("counts", {})
        if registry is not None:
            out["pending_users"] = len(registry)
        out["circuits"] = {
            name: Circuit.get(name).snapshot().state for name in ("simkl", "anilist")
        }
        return out

    @app.get("/readyz")
    async def readyz(request: Request) -> dict[str, Any]:
        store = getattr(request.app.state, "job_store", None)
        if store is None:
            raise HTTPException(status_code=503, detail="not ready: job store missing")
        st = store.status()
        if st.redis_configured and not st.redis_ok:
            raise HTTPException(status_code=503, detail=f"not ready: {st.detail}")
        return {"ok": True}

    app.include_router(addon_router)
    return app


app = create_app()

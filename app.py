"""
Porto Vehicle Feed Service (FastAPI)

Purpose
=======
Serve a near-real-time list of STCP buses for the map and dashboards. Raw
telemetry comes from the FIWARE urban-data broker; route destinations come
from the OpenTripPlanner GraphQL index.

Endpoints
---------
- GET /api/buses            normalized vehicles (``?simulate=205,701`` adds synthetic ones)
- GET /api/buses/status     cache ages and the outcome of the last request

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
- See ``feed_config.FeedConfig.from_env`` for the supported variables.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from feed import VehicleFeed
from feed_config import FeedConfig
from upstream_client import RetryingClient

# ---------------------------
# Config
# ---------------------------
CONFIG = FeedConfig.from_env()
UPSTREAM_HTTP_LIMITS = httpx.Limits(max_keepalive_connections=20, max_connections=100)
# Per-attempt deadlines come from the retry policies; the client adds none of its own.
UPSTREAM_HTTP_TIMEOUT = httpx.Timeout(None)
FRESH_CACHE_CONTROL = "public, s-maxage=10, stale-while-revalidate=60"
STALE_CACHE_CONTROL = "public, max-age=0, must-revalidate"

logging.basicConfig(
    level=getattr(logging, CONFIG.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("app")


def _parse_simulate(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [name.strip() for name in raw.split(",") if name.strip()]


def _build_upstream_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=UPSTREAM_HTTP_TIMEOUT,
        limits=UPSTREAM_HTTP_LIMITS,
        follow_redirects=True,
    )


def _get_feed(request: Request) -> VehicleFeed:
    # Created on first use and kept for the process lifetime.
    feed = getattr(request.app.state, "vehicle_feed", None)
    if feed is None:
        http_client = _build_upstream_client()
        request.app.state.upstream_http_client = http_client
        feed = VehicleFeed.from_config(RetryingClient(http_client), CONFIG)
        request.app.state.vehicle_feed = feed
        logger.info("[buses] feed ready (broker %s)", CONFIG.broker_url)
    return feed


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    http_client = getattr(app.state, "upstream_http_client", None)
    if http_client is not None:
        await http_client.aclose()
        app.state.upstream_http_client = None


# ---------------------------
# App
# ---------------------------
app = FastAPI(title="Porto Vehicle Feed", lifespan=lifespan)


@app.get("/api/buses")
async def get_buses(
    request: Request,
    simulate: Optional[str] = Query(None),
):
    start = time.perf_counter()
    feed = _get_feed(request)
    result = await feed.fetch(_parse_simulate(simulate))

    if result.error is not None:
        return JSONResponse(result.to_body(), status_code=result.status_code)
    if result.stale:
        return JSONResponse(
            result.to_body(),
            headers={"Cache-Control": STALE_CACHE_CONTROL},
        )
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    return JSONResponse(
        result.to_body(),
        headers={
            "Cache-Control": FRESH_CACHE_CONTROL,
            "X-Response-Time": f"{elapsed_ms}ms",
        },
    )


@app.get("/api/buses/status")
async def get_buses_status(request: Request):
    feed = _get_feed(request)
    return await feed.status()

"""Environment configuration for the Porto vehicle feed."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict

BROKER_VEHICLES_URL = (
    "https://broker.fiware.urbanplatform.portodigital.pt/v2/entities"
    "?q=vehicleType==bus&limit=1000"
)
TOPOLOGY_GRAPHQL_URL = "https://otp.portodigital.pt/otp/routers/default/index/graphql"
TOPOLOGY_ORIGIN = "https://explore.porto.pt"

BROKER_HEADERS: Dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:147.0) "
        "Gecko/20100101 Firefox/147.0"
    ),
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

TOPOLOGY_TTL_S = 24 * 60 * 60
STALE_THRESHOLD_S = 5 * 60


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid value for {name}: {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid value for {name}: {raw!r}") from exc


@dataclass(frozen=True)
class FeedConfig:
    broker_url: str = BROKER_VEHICLES_URL
    topology_url: str = TOPOLOGY_GRAPHQL_URL
    topology_origin: str = TOPOLOGY_ORIGIN
    broker_timeout_s: float = 10.0
    topology_timeout_s: float = 15.0
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 10.0
    topology_ttl_s: float = TOPOLOGY_TTL_S
    stale_threshold_s: float = STALE_THRESHOLD_S
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "FeedConfig":
        """Build a ``FeedConfig`` from environment variables.

        Every variable is optional; unset or blank values fall back to the
        production defaults:
        * ``BROKER_VEHICLES_URL`` / ``TOPOLOGY_GRAPHQL_URL`` / ``TOPOLOGY_ORIGIN``
        * ``BROKER_TIMEOUT_S`` / ``TOPOLOGY_TIMEOUT_S`` - per-attempt deadlines.
        * ``UPSTREAM_MAX_ATTEMPTS``, ``UPSTREAM_BACKOFF_BASE_S``, ``UPSTREAM_BACKOFF_CAP_S``
        * ``TOPOLOGY_TTL_S`` / ``STALE_THRESHOLD_S`` - cache lifetimes.
        * ``LOG_LEVEL``
        """

        max_attempts = _env_int("UPSTREAM_MAX_ATTEMPTS", 3)
        if max_attempts < 1:
            raise RuntimeError("UPSTREAM_MAX_ATTEMPTS must be at least 1")

        return cls(
            broker_url=(os.getenv("BROKER_VEHICLES_URL") or "").strip() or BROKER_VEHICLES_URL,
            topology_url=(os.getenv("TOPOLOGY_GRAPHQL_URL") or "").strip() or TOPOLOGY_GRAPHQL_URL,
            topology_origin=(os.getenv("TOPOLOGY_ORIGIN") or "").strip() or TOPOLOGY_ORIGIN,
            broker_timeout_s=_env_float("BROKER_TIMEOUT_S", 10.0),
            topology_timeout_s=_env_float("TOPOLOGY_TIMEOUT_S", 15.0),
            max_attempts=max_attempts,
            backoff_base_s=_env_float("UPSTREAM_BACKOFF_BASE_S", 1.0),
            backoff_cap_s=_env_float("UPSTREAM_BACKOFF_CAP_S", 10.0),
            topology_ttl_s=_env_float("TOPOLOGY_TTL_S", TOPOLOGY_TTL_S),
            stale_threshold_s=_env_float("STALE_THRESHOLD_S", STALE_THRESHOLD_S),
            log_level=((os.getenv("LOG_LEVEL") or "").strip() or "INFO").upper(),
        )

    def topology_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Origin": self.topology_origin}


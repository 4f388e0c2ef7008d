"""
Vehicle feed assembly

One call runs the whole pipeline:
topology (cached) -> broker fetch (retried) -> validation -> normalization ->
optional synthetic vehicles -> stale-cache update.

When the broker side fails, the last good list is served (flagged stale) if it
is younger than the stale threshold; otherwise the caller gets an explicit
error with an empty list. Nothing here raises to the HTTP layer.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from broker_entities import read_entities
from caches import StaleResultCache
from feed_config import BROKER_HEADERS, FeedConfig
from normalize import Bus, normalize_entities
from route_topology import RouteTopologyResolver
from simulate import SimulatedBusSource
from upstream_client import RetryingClient, RetryPolicy

logger = logging.getLogger(__name__)

FEED_ERROR_MESSAGE = "Failed to fetch bus data"

STATE_IDLE = "idle"
STATE_FRESH = "fresh"
STATE_DEGRADED = "degraded"
STATE_FAILED = "failed"


@dataclass
class FeedResult:
    buses: List[Bus] = field(default_factory=list)
    stale: bool = False
    error: Optional[str] = None
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"buses": [bus.to_dict() for bus in self.buses]}
        if self.stale:
            body["stale"] = True
        if self.error is not None:
            body = {"error": self.error, **body}
        return body


class VehicleFeed:
    def __init__(
        self,
        client: RetryingClient,
        resolver: RouteTopologyResolver,
        stale_cache: StaleResultCache[Bus],
        *,
        broker_url: str,
        broker_policy: Optional[RetryPolicy] = None,
        broker_headers: Optional[Dict[str, str]] = None,
        simulator: Optional[SimulatedBusSource] = None,
    ) -> None:
        self._client = client
        self.resolver = resolver
        self.stale_cache = stale_cache
        self._broker_url = broker_url
        self._broker_policy = broker_policy or RetryPolicy(timeout_s=10.0)
        self._broker_headers = dict(BROKER_HEADERS if broker_headers is None else broker_headers)
        self._simulator = simulator
        self.state = STATE_IDLE

    @classmethod
    def from_config(cls, client: RetryingClient, config: FeedConfig) -> "VehicleFeed":
        topology_policy = RetryPolicy(
            max_attempts=config.max_attempts,
            timeout_s=config.topology_timeout_s,
            backoff_base_s=config.backoff_base_s,
            backoff_cap_s=config.backoff_cap_s,
        )
        return cls(
            client,
            RouteTopologyResolver.from_config(client, config),
            StaleResultCache(config.stale_threshold_s),
            broker_url=config.broker_url,
            broker_policy=RetryPolicy(
                max_attempts=config.max_attempts,
                timeout_s=config.broker_timeout_s,
                backoff_base_s=config.backoff_base_s,
                backoff_cap_s=config.backoff_cap_s,
            ),
            simulator=SimulatedBusSource(
                client,
                url=config.topology_url,
                headers=config.topology_headers(),
                policy=topology_policy,
            ),
        )

    async def _fetch_fresh(self, simulate: Sequence[str]) -> List[Bus]:
        topology = await self.resolver.resolve()
        response = await self._client.get(
            self._broker_url, self._broker_policy, headers=self._broker_headers
        )
        batch = read_entities(response.json())
        buses = normalize_entities(batch.entities, topology)

        if simulate and self._simulator is not None:
            try:
                buses.extend(await self._simulator.buses(simulate))
            except Exception as exc:
                logger.warning("[simulate] skipped synthetic vehicles: %s", exc)
        return buses

    async def fetch(self, simulate: Sequence[str] = ()) -> FeedResult:
        start = time.perf_counter()
        try:
            buses = await self._fetch_fresh(simulate)
        except Exception as exc:
            logger.error("[buses] error fetching buses: %s", exc)
            cached = await self.stale_cache.usable()
            if cached is not None:
                logger.info(
                    "[buses] returning stale bus data (%d vehicles, %.0fs old)",
                    len(cached.value),
                    cached.age(self.stale_cache.clock()),
                )
                self.state = STATE_DEGRADED
                return FeedResult(buses=list(cached.value), stale=True)
            self.state = STATE_FAILED
            return FeedResult(error=FEED_ERROR_MESSAGE, status_code=500)

        await self.stale_cache.store(buses)
        self.state = STATE_FRESH
        logger.debug(
            "[buses] served %d vehicles in %.1f ms", len(buses), (time.perf_counter() - start) * 1000
        )
        return FeedResult(buses=buses)

    async def status(self) -> Dict[str, Any]:
        topology_entry = await self.resolver.cache.entry()
        stale_entry = await self.stale_cache.entry()
        now_topology = self.resolver.cache.clock()
        now_stale = self.stale_cache.clock()
        return {
            "state": self.state,
            "topology": {
                "routes": len(topology_entry.value) if topology_entry else 0,
                "age_s": topology_entry.age(now_topology) if topology_entry else None,
                "ttl_s": self.resolver.cache.ttl,
            },
            "last_success": {
                "buses": len(stale_entry.value) if stale_entry else 0,
                "age_s": stale_entry.age(now_stale) if stale_entry else None,
                "stale_threshold_s": self.stale_cache.threshold,
            },
        }

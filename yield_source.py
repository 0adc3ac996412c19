#!/usr/bin/env python3
"""
Yield/TVL data source.

Fetches current APY (and TVL where the API exposes it) for the enabled
venues in parallel with aiohttp. A venue whose response is missing or
malformed is skipped, never zeroed. Skipped venues fall back to the last good
sample while it is within freshness_seconds (source "cached", original
timestamp, so history ignores it), else to a simulated sample (source
"simulated") when simulation is enabled.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp

from logging_utils import get_logger
from signal_history import (
    SOURCE_CACHED,
    SOURCE_LIVE,
    SOURCE_SIMULATED,
    SignalHistory,
    YieldSample,
)
from venues import VenueId, adjusted_apy_bps, format_bps, risk_score, venue_info, venue_name

MARINADE_APY_URL = "https://api.marinade.finance/msol/apy"
JITO_STATS_URL = "https://www.jito.network/api/v1/stake/stats"
RAYDIUM_PAIRS_URL = "https://api.raydium.io/v2/main/pairs"

RAYDIUM_MAX_POOLS = 10
SIMULATED_VARIANCE_BPS = 50


class DataSourceError(Exception):
    """Raised when a venue's response cannot be fetched or parsed."""


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if out != out or out in (float("inf"), float("-inf")):
        return None
    return out


def parse_marinade(payload: Any, now: int) -> YieldSample:
    """{"value": 0.0712} -> 712 bps."""
    if not isinstance(payload, dict):
        raise DataSourceError("Marinade response is not an object")
    apy = _as_float(payload.get("value", payload.get("apy")))
    if apy is None or apy <= 0:
        raise DataSourceError(f"Marinade APY missing or invalid: {payload!r:.120}")
    tvl = _as_float(payload.get("tvl") or payload.get("tvl_usd"))
    return YieldSample(
        venue=VenueId.MARINADE,
        timestamp=int(now),
        apy_bps=int(round(apy * 10_000)),
        tvl_usd=tvl if tvl and tvl > 0 else None,
        source=SOURCE_LIVE,
        pool="mSOL",
    )


def parse_jito(payload: Any, now: int) -> YieldSample:
    """{"apy": 0.0781, ...} -> 781 bps."""
    if not isinstance(payload, dict):
        raise DataSourceError("Jito response is not an object")
    apy = _as_float(payload.get("apy", payload.get("stakingApy")))
    if apy is None or apy <= 0:
        raise DataSourceError(f"Jito APY missing or invalid: {payload!r:.120}")
    tvl = _as_float(payload.get("tvl"))
    return YieldSample(
        venue=VenueId.JITO,
        timestamp=int(now),
        apy_bps=int(round(apy * 10_000)),
        tvl_usd=tvl if tvl and tvl > 0 else None,
        source=SOURCE_LIVE,
        pool="jitoSOL",
    )


def parse_raydium(payload: Any, now: int) -> YieldSample:
    """Best pool among the first RAYDIUM_MAX_POOLS pairs; apr24h is a percentage."""
    pools = payload.get("data") if isinstance(payload, dict) else payload
    if not isinstance(pools, list):
        raise DataSourceError("Raydium response has no pool list")
    best: Optional[YieldSample] = None
    for pool in pools[:RAYDIUM_MAX_POOLS]:
        if not isinstance(pool, dict):
            continue
        apr = _as_float(pool.get("apr24h", pool.get("apy")))
        if apr is None or apr <= 0:
            continue
        tvl = _as_float(pool.get("liquidity"))
        sample = YieldSample(
            venue=VenueId.RAYDIUM_CPMM,
            timestamp=int(now),
            apy_bps=int(round(apr * 100)),
            tvl_usd=tvl if tvl and tvl > 0 else None,
            source=SOURCE_LIVE,
            pool=str(pool.get("name") or pool.get("pair") or "Unknown"),
        )
        if best is None or sample.apy_bps > best.apy_bps:
            best = sample
    if best is None:
        raise DataSourceError("Raydium response has no pool with a positive APR")
    return best


_FETCHERS: Dict[VenueId, tuple] = {
    VenueId.MARINADE: (MARINADE_APY_URL, parse_marinade),
    VenueId.JITO: (JITO_STATS_URL, parse_jito),
    VenueId.RAYDIUM_CPMM: (RAYDIUM_PAIRS_URL, parse_raydium),
}


def supported_venues() -> List[VenueId]:
    return sorted(_FETCHERS.keys())


class YieldFetcher:
    """Polls the yield APIs once per cycle with cache/simulation fallback."""

    def __init__(
        self,
        venues: Sequence[VenueId],
        *,
        timeout_seconds: float = 10.0,
        freshness_seconds: float = 900.0,
        cache_ttl_seconds: float = 30.0,
        simulate_when_unavailable: bool = True,
        seed: Optional[int] = None,
        history: Optional[SignalHistory] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.time,
        urls: Optional[Dict[VenueId, str]] = None,
    ):
        self.log = get_logger("yield_source")
        self.venues = [v for v in venues if v in _FETCHERS]
        for venue in venues:
            if venue not in _FETCHERS:
                self.log.info(f"No data source for {venue_name(venue)}; it will not be sampled")
        self.timeout_seconds = float(timeout_seconds)
        self.freshness_seconds = float(freshness_seconds)
        self.cache_ttl_seconds = float(cache_ttl_seconds)
        self.simulate_when_unavailable = bool(simulate_when_unavailable)
        self.rng = random.Random(seed)
        self.clock = clock
        self.urls = {v: (urls or {}).get(v, _FETCHERS[v][0]) for v in self.venues}
        self._session = session
        self._owns_session = session is None
        self._last_good: Dict[VenueId, YieldSample] = {}
        self._last_batch: List[YieldSample] = []
        self._last_fetch = 0.0
        if history is not None:
            for venue in self.venues:
                last = history.last(venue)
                if last is not None and last.source == SOURCE_LIVE:
                    self._last_good[venue] = last

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close aiohttp session to avoid resource leaks."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_venue(self, venue: VenueId) -> YieldSample:
        session = await self._get_session()
        url = self.urls[venue]
        parser = _FETCHERS[venue][1]
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise DataSourceError(f"{venue_name(venue)}: HTTP {resp.status}")
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise DataSourceError(f"{venue_name(venue)}: {exc}") from exc
        return parser(payload, int(self.clock()))

    async def fetch_all(self) -> List[YieldSample]:
        """One sample per enabled venue where live, cached or simulated data exists."""
        now = self.clock()
        if self._last_batch and now - self._last_fetch < self.cache_ttl_seconds:
            return list(self._last_batch)

        results = await asyncio.gather(
            *(self.fetch_venue(v) for v in self.venues),
            return_exceptions=True,
        )
        samples: List[YieldSample] = []
        for venue, result in zip(self.venues, results):
            if isinstance(result, YieldSample):
                self._last_good[venue] = result
                samples.append(result)
                continue
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            self.log.warning(f"Failed to fetch {venue_name(venue)} yield: {result}")
            fallback = self.fallback(venue, int(now))
            if fallback is not None:
                samples.append(fallback)

        self._last_batch = samples
        self._last_fetch = now
        return list(samples)

    # ------------------------------------------------------------------
    # Fallbacks
    # ------------------------------------------------------------------

    def fallback(self, venue: VenueId, now: int) -> Optional[YieldSample]:
        last = self._last_good.get(venue)
        if last is not None and now - last.timestamp <= self.freshness_seconds:
            return replace(last, source=SOURCE_CACHED)
        if self.simulate_when_unavailable:
            return self.simulate(venue, now)
        self.log.warning(f"No data for {venue_name(venue)} this cycle (gap)")
        return None

    def simulate(self, venue: VenueId, now: int) -> YieldSample:
        """Base APY +/- SIMULATED_VARIANCE_BPS; seedable for reproducible runs."""
        info = venue_info(venue)
        variance = self.rng.uniform(-SIMULATED_VARIANCE_BPS, SIMULATED_VARIANCE_BPS)
        return YieldSample(
            venue=venue,
            timestamp=int(now),
            apy_bps=max(0, int(round(info.base_apy_bps + variance))),
            tvl_usd=None,
            source=SOURCE_SIMULATED,
            pool=info.symbol,
        )


def format_yield(sample: YieldSample) -> str:
    risk = risk_score(sample.venue)
    adjusted = adjusted_apy_bps(sample.apy_bps, risk)
    return (
        f"{venue_name(sample.venue)} ({sample.pool or '-'}): {format_bps(sample.apy_bps)} APY | "
        f"Risk: {risk} | Adjusted: {format_bps(adjusted)} [{sample.source}]"
    )

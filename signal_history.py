#!/usr/bin/env python3
"""
Per-venue yield/TVL sample history.

Bounded ring buffer of YieldSample per venue with strictly increasing
timestamps. Replayed or duplicate polls are ignored, so recording the same
sample twice is harmless. Persisted through an explicit load/save boundary.
"""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from itertools import islice
from typing import Any, Deque, Dict, Iterator, List, Optional

from logging_utils import get_logger
from state_io import CorruptStateError, load_json_file, write_json_atomic
from venues import VenueId, normalize_venue, venue_name

# 24 hours at a 5-minute cadence
DEFAULT_RETENTION_POINTS = 288

SOURCE_LIVE = "live"
SOURCE_CACHED = "cached"
SOURCE_SIMULATED = "simulated"
VALID_SOURCES = frozenset({SOURCE_LIVE, SOURCE_CACHED, SOURCE_SIMULATED})


@dataclass(frozen=True)
class YieldSample:
    """One measurement of a venue's yield. Immutable once recorded."""
    venue: VenueId
    timestamp: int
    apy_bps: int
    tvl_usd: Optional[float] = None
    source: str = SOURCE_LIVE
    pool: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": int(self.venue),
            "timestamp": int(self.timestamp),
            "apy_bps": int(self.apy_bps),
            "tvl_usd": self.tvl_usd,
            "source": self.source,
            "pool": self.pool,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["YieldSample"]:
        """Build from a dict, or None when the shape is invalid."""
        if not isinstance(data, dict):
            return None
        venue = normalize_venue(data.get("venue"))
        if venue is None:
            return None
        try:
            timestamp = int(data["timestamp"])
            apy_bps = int(data["apy_bps"])
        except (KeyError, TypeError, ValueError):
            return None
        tvl = data.get("tvl_usd")
        try:
            tvl = float(tvl) if tvl is not None else None
        except (TypeError, ValueError):
            tvl = None
        if tvl is not None and (not math.isfinite(tvl) or tvl <= 0):
            tvl = None
        source = str(data.get("source") or SOURCE_LIVE)
        if source not in VALID_SOURCES:
            source = SOURCE_LIVE
        return cls(
            venue=venue,
            timestamp=timestamp,
            apy_bps=apy_bps,
            tvl_usd=tvl,
            source=source,
            pool=str(data.get("pool") or ""),
        )


class HistoryWindow:
    """Lazy view over the newest samples of one venue, oldest first.

    Iterating twice yields the same samples; nothing is copied until iterated.
    """

    def __init__(self, samples: Deque[YieldSample], n: int):
        self._samples = samples
        self._start = max(0, len(samples) - max(0, int(n)))
        self._stop = len(samples)

    def __iter__(self) -> Iterator[YieldSample]:
        return islice(self._samples, self._start, self._stop)

    def __len__(self) -> int:
        return self._stop - self._start

    def __getitem__(self, index: int) -> YieldSample:
        size = len(self)
        if index < 0:
            index += size
        if index < 0 or index >= size:
            raise IndexError("history window index out of range")
        return self._samples[self._start + index]

    def __bool__(self) -> bool:
        return len(self) > 0


class SignalHistory:
    """Append-only, bounded per-venue sample store."""

    def __init__(self, retention_points: int = DEFAULT_RETENTION_POINTS):
        if int(retention_points) < 1:
            raise ValueError("retention_points must be >= 1")
        self.retention_points = int(retention_points)
        self._series: Dict[VenueId, Deque[YieldSample]] = {}
        self.log = get_logger("signal_history")

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def record(self, sample: YieldSample) -> bool:
        """Append sample if newer than the venue's last timestamp.

        Returns True when stored, False for stale/duplicate samples.
        """
        series = self._series.get(sample.venue)
        if series is None:
            series = deque(maxlen=self.retention_points)
            self._series[sample.venue] = series
        if series and sample.timestamp <= series[-1].timestamp:
            return False
        series.append(sample)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def window(self, venue: VenueId, n: int) -> HistoryWindow:
        return HistoryWindow(self._series.get(venue, deque()), n)

    def count(self, venue: VenueId) -> int:
        return len(self._series.get(venue, ()))

    def last(self, venue: VenueId) -> Optional[YieldSample]:
        series = self._series.get(venue)
        return series[-1] if series else None

    def venues(self) -> List[VenueId]:
        return sorted(self._series.keys())

    def total_points(self) -> int:
        return sum(len(s) for s in self._series.values())

    def stats(self, now: Optional[float] = None) -> List[Dict[str, Any]]:
        """Points and age of the oldest sample per venue."""
        now = time.time() if now is None else float(now)
        out: List[Dict[str, Any]] = []
        for venue in self.venues():
            series = self._series[venue]
            oldest_hours = (now - series[0].timestamp) / 3600 if series else 0.0
            out.append({
                "venue": venue_name(venue),
                "points": len(series),
                "oldest_hours": round(oldest_hours, 2),
            })
        return out

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        snapshots: List[Dict[str, Any]] = []
        for venue in self.venues():
            snapshots.extend(s.to_dict() for s in self._series[venue])
        return {
            "retention_points": self.retention_points,
            "snapshots": snapshots,
            "last_updated": int(time.time()),
        }

    def save(self, path: str) -> None:
        """Write history atomically. Raises PersistenceError."""
        write_json_atomic(path, self.to_dict())

    @classmethod
    def load(cls, path: str, retention_points: int = DEFAULT_RETENTION_POINTS) -> "SignalHistory":
        """Load history; a missing or unreadable file starts an empty history."""
        history = cls(retention_points=retention_points)
        try:
            payload = load_json_file(path)
        except CorruptStateError as exc:
            history.log.warning(f"Could not load yield history, starting fresh: {exc}")
            return history
        if not payload:
            history.log.info("Starting fresh yield history")
            return history

        samples = []
        skipped = 0
        for raw in payload.get("snapshots") or []:
            sample = YieldSample.from_dict(raw)
            if sample is None:
                skipped += 1
                continue
            samples.append(sample)
        samples.sort(key=lambda s: (int(s.venue), s.timestamp))
        for sample in samples:
            history.record(sample)
        if skipped:
            history.log.warning(f"Skipped {skipped} malformed history snapshots")
        history.log.info(f"Loaded {history.total_points()} historical data points")
        return history

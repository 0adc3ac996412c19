#!/usr/bin/env python3
"""
Target allocation planning for multi-position mode.

Splits capital across the top venues (by adjusted APY) that have an
execution path. Amounts are integer settlement units; shares below the
minimum position size are dropped, so the plan never sums above capital.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence

from engine_config import (
    STRATEGY_EQUAL,
    STRATEGY_RISK_WEIGHTED,
    STRATEGY_YIELD_WEIGHTED,
    VALID_STRATEGIES,
)
from gravity import GravityAnalysis
from venues import VenueId, has_execution_path


@dataclass(frozen=True)
class AllocationPlanner:
    strategy: str = STRATEGY_YIELD_WEIGHTED
    max_positions: int = 3
    min_position: int = 100_000_000
    rebalance_threshold_pct: float = 10.0

    def __post_init__(self) -> None:
        if self.strategy not in VALID_STRATEGIES:
            raise ValueError(f"Unknown allocation strategy: {self.strategy}")
        if self.max_positions < 1:
            raise ValueError("max_positions must be >= 1")

    def candidates(self, analyses: Sequence[GravityAnalysis]) -> List[GravityAnalysis]:
        """Executable venues, top-N by adjusted APY."""
        executable = [a for a in analyses if has_execution_path(a.venue)]
        executable.sort(key=lambda a: (-a.adjusted_apy_bps, int(a.venue)))
        return executable[: self.max_positions]

    def plan(self, analyses: Sequence[GravityAnalysis], capital: int) -> Dict[VenueId, int]:
        """Target amount per venue; venues not in the result target zero."""
        capital = int(capital)
        top = self.candidates(analyses)
        if not top or capital <= 0:
            return {}
        if self.strategy == STRATEGY_EQUAL:
            return self._equal(top, capital)
        if self.strategy == STRATEGY_YIELD_WEIGHTED:
            weights = [max(0, a.adjusted_apy_bps) for a in top]
        elif self.strategy == STRATEGY_RISK_WEIGHTED:
            weights = [max(0, 100 - a.risk_score) for a in top]
        else:
            return self._equal(top, capital)
        return self._weighted(top, weights, capital)

    def _equal(self, top: Sequence[GravityAnalysis], capital: int) -> Dict[VenueId, int]:
        share = capital // len(top)
        if share < self.min_position:
            return {}
        return {a.venue: share for a in top}

    def _weighted(
        self,
        top: Sequence[GravityAnalysis],
        weights: Sequence[int],
        capital: int,
    ) -> Dict[VenueId, int]:
        total = sum(weights)
        if total <= 0:
            return self._equal(top, capital)
        out: Dict[VenueId, int] = {}
        for analysis, weight in zip(top, weights):
            amount = capital * weight // total
            if amount >= self.min_position:
                out[analysis.venue] = amount
        return out

    def needs_rebalancing(
        self,
        current: Mapping[VenueId, int],
        target: Mapping[VenueId, int],
        total_value: int,
    ) -> bool:
        """True when any venue drifts past the threshold or must be exited."""
        if total_value <= 0:
            return False
        for venue, amount in target.items():
            drift_pct = abs(int(current.get(venue, 0)) - int(amount)) / total_value * 100
            if drift_pct > self.rebalance_threshold_pct:
                return True
        for venue, amount in current.items():
            if venue not in target and int(amount) > 0:
                return True
        return False

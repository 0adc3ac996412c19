#!/usr/bin/env python3
"""
Yield gravity: predictive yield analysis per venue.

Rather than reacting to the current yield alone, each venue's recent history
is scored for:
- velocity (bps/hour over the last 6 samples)
- momentum (share of up vs down moves over the last 12 samples)
- mean reversion and breakouts against the last 24 samples
- TVL inflow/outflow (inflow predicts yield compression)

The composite gravity score (risk-adjusted APY + signal impacts +
momentum * 20) is the single ranking key across venues. Pure functions of
history plus the current sample; no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from signal_history import DEFAULT_RETENTION_POINTS, SOURCE_LIVE, SignalHistory, YieldSample
from venues import VenueId, adjusted_apy_bps, format_bps, risk_score, venue_name


MIN_POINTS_FOR_PREDICTION = 6
VELOCITY_WINDOW = 6
MOMENTUM_WINDOW = 12
MEAN_WINDOW = 24
MIN_POINTS_FOR_MEAN = MIN_POINTS_FOR_PREDICTION * 2
VELOCITY_THRESHOLD_BPS = 20  # bps/hour
MIN_SPAN_HOURS = 0.1  # 6 minutes

MOMENTUM_STRONG = 0.6
MOMENTUM_MODERATE = 0.3
CONSISTENT_MOMENTUM = 0.5

MEAN_REVERSION_BAND_PCT = 10.0
MEAN_REVERSION_PULL = 0.3
BREAKOUT_BAND = 0.05
TVL_SIGNAL_PCT = 5.0
TVL_TREND_PCT = 2.0
MAX_CONFIDENCE = 0.9
LOW_MOMENTUM_DISCOUNT = 0.7
DEFAULT_MIN_CONFIDENCE = 0.1

TREND_RISING = "rising"
TREND_FALLING = "falling"
TREND_STABLE = "stable"

STRENGTH_STRONG = "strong"
STRENGTH_MODERATE = "moderate"
STRENGTH_WEAK = "weak"

TVL_INFLOW = "inflow"
TVL_OUTFLOW = "outflow"
TVL_STABLE = "stable"

SIGNAL_MOMENTUM = "momentum"
SIGNAL_WARNING = "warning"
SIGNAL_MEAN_REVERSION = "mean_reversion"
SIGNAL_BREAKOUT = "breakout"
SIGNAL_TVL_COMPRESSION = "tvl_compression"


@dataclass(frozen=True)
class Signal:
    type: str
    message: str
    impact_bps: float


@dataclass
class TvlAnalysis:
    velocity_per_hour: float = 0.0
    change_pct: float = 0.0
    trend: str = TVL_STABLE
    signal: Optional[Signal] = None


@dataclass
class GravityAnalysis:
    """Per-venue snapshot recomputed every cycle; never persisted."""
    venue: VenueId
    venue_name: str
    current_apy_bps: int
    adjusted_apy_bps: int
    risk_score: int
    velocity_bps_per_hour: float
    velocity_trend: str
    momentum: float
    momentum_strength: str
    tvl_usd: Optional[float]
    tvl_velocity_per_hour: float
    tvl_trend: str
    predicted_apy_bps: int
    predicted_adjusted_bps: int
    confidence: float
    gravity_score: Optional[float]
    sample_count: int = 0
    source: str = "live"
    signals: List[Signal] = field(default_factory=list)

    @property
    def rank_score(self) -> float:
        """Gravity score when defined, otherwise the adjusted APY."""
        if self.gravity_score is None:
            return float(self.adjusted_apy_bps)
        return float(self.gravity_score)


def _mean_apy(samples: Sequence[YieldSample]) -> float:
    recent = samples[-MEAN_WINDOW:]
    if not recent:
        return 0.0
    return sum(s.apy_bps for s in recent) / len(recent)


class GravityAnalyzer:
    """Stateless scorer over a SignalHistory."""

    def __init__(self, history: SignalHistory, retention_points: Optional[int] = None):
        self.history = history
        self.retention_points = int(
            retention_points or getattr(history, "retention_points", DEFAULT_RETENTION_POINTS)
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def analyze_all(self, samples: Iterable[YieldSample]) -> List[GravityAnalysis]:
        """Record live samples, then analyze and rank every venue that reported.

        Cached and simulated samples are scored against the live history and
        never stored.
        """
        current = list(samples)
        for sample in current:
            if sample.source == SOURCE_LIVE:
                self.history.record(sample)
        return self.rank([self.analyze_venue(s) for s in current])

    def analyze_venue(self, current: YieldSample) -> GravityAnalysis:
        samples = list(self.history.window(current.venue, self.retention_points))
        if not samples or current.timestamp > samples[-1].timestamp:
            samples = (samples + [current])[-self.retention_points:]
        risk = risk_score(current.venue)
        adjusted = adjusted_apy_bps(current.apy_bps, risk)
        signals: List[Signal] = []

        velocity = self.velocity(samples)
        velocity_trend = self.velocity_trend(velocity)
        momentum = self.momentum(samples)
        strength = self.momentum_strength(momentum)

        if velocity_trend == TREND_RISING and strength != STRENGTH_WEAK:
            signals.append(Signal(
                SIGNAL_MOMENTUM,
                f"Strong upward momentum (+{velocity:.0f}bps/hr)",
                min(50.0, velocity / 2),
            ))
        elif velocity_trend == TREND_FALLING and strength != STRENGTH_WEAK:
            signals.append(Signal(
                SIGNAL_WARNING,
                f"Yields declining ({velocity:.0f}bps/hr)",
                max(-50.0, velocity / 2),
            ))

        reversion = self.mean_reversion(samples, current.apy_bps)
        if reversion:
            signals.append(reversion)

        breakout = self.breakout(self._reference_range(samples, current), current.apy_bps, len(samples))
        if breakout:
            signals.append(breakout)

        tvl = self.tvl_gravity(samples, current.tvl_usd)
        if tvl.signal:
            signals.append(tvl.signal)

        predicted, confidence = self.predict(samples, current.apy_bps, velocity, momentum)

        gravity_score: Optional[float] = None
        if len(samples) >= MIN_POINTS_FOR_PREDICTION:
            gravity_score = adjusted + sum(s.impact_bps for s in signals) + momentum * 20

        return GravityAnalysis(
            venue=current.venue,
            venue_name=venue_name(current.venue),
            current_apy_bps=int(current.apy_bps),
            adjusted_apy_bps=adjusted,
            risk_score=risk,
            velocity_bps_per_hour=velocity,
            velocity_trend=velocity_trend,
            momentum=momentum,
            momentum_strength=strength,
            tvl_usd=current.tvl_usd,
            tvl_velocity_per_hour=tvl.velocity_per_hour,
            tvl_trend=tvl.trend,
            predicted_apy_bps=predicted,
            predicted_adjusted_bps=adjusted_apy_bps(predicted, risk),
            confidence=confidence,
            gravity_score=gravity_score,
            sample_count=len(samples),
            source=current.source,
            signals=signals,
        )

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @staticmethod
    def velocity(samples: Sequence[YieldSample]) -> float:
        """bps/hour across the last VELOCITY_WINDOW samples."""
        recent = list(samples[-VELOCITY_WINDOW:])
        if len(recent) < 2:
            return 0.0
        first, last = recent[0], recent[-1]
        span_hours = (last.timestamp - first.timestamp) / 3600
        if span_hours < MIN_SPAN_HOURS:
            return 0.0
        return (last.apy_bps - first.apy_bps) / span_hours

    @staticmethod
    def velocity_trend(velocity: float) -> str:
        if velocity > VELOCITY_THRESHOLD_BPS:
            return TREND_RISING
        if velocity < -VELOCITY_THRESHOLD_BPS:
            return TREND_FALLING
        return TREND_STABLE

    @staticmethod
    def momentum(samples: Sequence[YieldSample]) -> float:
        """(up - down) / (up + down) over the last MOMENTUM_WINDOW samples."""
        if len(samples) < MIN_POINTS_FOR_PREDICTION:
            return 0.0
        recent = list(samples[-MOMENTUM_WINDOW:])
        up = down = 0
        for prev, cur in zip(recent, recent[1:]):
            delta = cur.apy_bps - prev.apy_bps
            if delta > 0:
                up += 1
            elif delta < 0:
                down += 1
        total = up + down
        if total == 0:
            return 0.0
        return (up - down) / total

    @staticmethod
    def momentum_strength(momentum: float) -> str:
        if abs(momentum) > MOMENTUM_STRONG:
            return STRENGTH_STRONG
        if abs(momentum) > MOMENTUM_MODERATE:
            return STRENGTH_MODERATE
        return STRENGTH_WEAK

    @staticmethod
    def mean_reversion(samples: Sequence[YieldSample], current_apy: int) -> Optional[Signal]:
        if len(samples) < MIN_POINTS_FOR_MEAN:
            return None
        mean = _mean_apy(samples)
        if mean <= 0:
            return None
        deviation = current_apy - mean
        deviation_pct = abs(deviation) / mean * 100
        if deviation_pct <= MEAN_REVERSION_BAND_PCT:
            return None
        if deviation < 0:
            return Signal(
                SIGNAL_MEAN_REVERSION,
                f"Below average ({deviation_pct:.1f}%), expect reversion",
                min(30.0, deviation_pct * 2),
            )
        return Signal(
            SIGNAL_MEAN_REVERSION,
            f"Above average ({deviation_pct:.1f}%), may compress",
            max(-30.0, -deviation_pct * 2),
        )

    @staticmethod
    def _reference_range(samples: Sequence[YieldSample], current: YieldSample) -> List[YieldSample]:
        """The MEAN_WINDOW samples preceding the current one."""
        prior = list(samples)
        if prior and prior[-1].timestamp >= current.timestamp:
            prior = prior[:-1]
        return prior[-MEAN_WINDOW:]

    @staticmethod
    def breakout(reference: Sequence[YieldSample], current_apy: int, sample_count: int) -> Optional[Signal]:
        if sample_count < MIN_POINTS_FOR_MEAN or not reference:
            return None
        high = max(s.apy_bps for s in reference)
        low = min(s.apy_bps for s in reference)
        if current_apy > high * (1 + BREAKOUT_BAND):
            return Signal(SIGNAL_BREAKOUT, f"Breakout above recent high {format_bps(high)}", 40.0)
        if current_apy < low * (1 - BREAKOUT_BAND):
            return Signal(SIGNAL_WARNING, f"Breakdown below recent low {format_bps(low)}", -40.0)
        return None

    @staticmethod
    def tvl_gravity(samples: Sequence[YieldSample], current_tvl: Optional[float]) -> TvlAnalysis:
        """TVL change over the velocity window; inflow predicts compression."""
        recent = [s for s in samples[-VELOCITY_WINDOW:] if s.tvl_usd is not None and s.tvl_usd > 0]
        if not current_tvl or len(recent) < 2:
            return TvlAnalysis()
        first, last = recent[0], recent[-1]
        span_hours = (last.timestamp - first.timestamp) / 3600
        if span_hours < MIN_SPAN_HOURS:
            return TvlAnalysis()

        change = last.tvl_usd - first.tvl_usd
        change_pct = change / first.tvl_usd * 100
        if change_pct > TVL_TREND_PCT:
            trend = TVL_INFLOW
        elif change_pct < -TVL_TREND_PCT:
            trend = TVL_OUTFLOW
        else:
            trend = TVL_STABLE

        signal: Optional[Signal] = None
        if change_pct > TVL_SIGNAL_PCT:
            signal = Signal(
                SIGNAL_TVL_COMPRESSION,
                f"TVL surging +{change_pct:.1f}%, yield compression likely",
                max(-40.0, -change_pct * 3),
            )
        elif change_pct < -TVL_SIGNAL_PCT:
            signal = Signal(
                SIGNAL_TVL_COMPRESSION,
                f"TVL dropping {change_pct:.1f}%, yield expansion likely",
                min(40.0, abs(change_pct) * 3),
            )
        elif change_pct > TVL_TREND_PCT:
            signal = Signal(
                SIGNAL_WARNING,
                f"TVL growing +{change_pct:.1f}%, watch for compression",
                -10.0,
            )
        return TvlAnalysis(
            velocity_per_hour=change / span_hours,
            change_pct=change_pct,
            trend=trend,
            signal=signal,
        )

    def predict(
        self,
        samples: Sequence[YieldSample],
        current_apy: int,
        velocity: float,
        momentum: float,
    ) -> Tuple[int, float]:
        """(predicted_apy_bps one hour out, confidence)."""
        if len(samples) < MIN_POINTS_FOR_PREDICTION:
            return int(current_apy), 0.0
        predicted = current_apy + velocity
        predicted = predicted * (1 - MEAN_REVERSION_PULL) + _mean_apy(samples) * MEAN_REVERSION_PULL
        confidence = min(MAX_CONFIDENCE, len(samples) / self.retention_points)
        if abs(momentum) <= CONSISTENT_MOMENTUM:
            confidence *= LOW_MOMENTUM_DISCOUNT
        return int(round(predicted)), confidence

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    @staticmethod
    def rank(analyses: Iterable[GravityAnalysis]) -> List[GravityAnalysis]:
        """Highest rank score first; ties by adjusted APY, then venue id."""
        return sorted(
            analyses,
            key=lambda a: (-a.rank_score, -a.adjusted_apy_bps, int(a.venue)),
        )

    @classmethod
    def best_by_gravity(
        cls,
        analyses: Sequence[GravityAnalysis],
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    ) -> Optional[GravityAnalysis]:
        """Best-ranked analysis above min_confidence, else the first analysis."""
        if not analyses:
            return None
        eligible = [a for a in analyses if a.confidence > min_confidence]
        if not eligible:
            return analyses[0]
        return cls.rank(eligible)[0]


def format_analysis(a: GravityAnalysis) -> str:
    """One-line human summary of an analysis."""
    arrow = {"rising": "up", "falling": "down"}.get(a.velocity_trend, "flat")
    tvl = ""
    if a.tvl_usd:
        tvl = f" | TVL: ${a.tvl_usd / 1_000_000:.1f}M ({a.tvl_trend})"
    score = "n/a" if a.gravity_score is None else f"{a.gravity_score:.0f}"
    return (
        f"{a.venue_name}: {format_bps(a.current_apy_bps)} {arrow} | Gravity: {score}{tvl} | "
        f"Predict: {format_bps(a.predicted_apy_bps)} ({a.confidence * 100:.0f}% conf)"
    )

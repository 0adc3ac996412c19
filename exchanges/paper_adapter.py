#!/usr/bin/env python3
"""
Paper execution venue for dry runs and tests.

Deterministic exchange rates and tracked balances; no network. Settlement
references look like dry_run_<seq> so they are easy to tell apart from real
signatures in the audit trail.
"""

from __future__ import annotations

from typing import Dict, Optional

from venues import LAMPORTS_PER_SOL, SETTLEMENT_ASSET, VENUES

from .base import ExecutionError, ExecutionResult, ExecutionVenue, Quote

DEFAULT_RATE = 1.0


def default_rates(overrides: Optional[Dict[str, float]] = None) -> Dict[str, float]:
    """Yield-asset mint -> tokens per settlement unit."""
    rates: Dict[str, float] = {}
    by_name = {k.lower(): float(v) for k, v in (overrides or {}).items()}
    for venue, info in VENUES.items():
        if info.yield_asset is None:
            continue
        key = venue.name.lower()
        rates[info.yield_asset] = by_name.get(key, by_name.get(info.symbol.lower(), DEFAULT_RATE))
    return rates


class PaperAdapter(ExecutionVenue):
    """In-memory venue with fixed rates and a flat fee."""

    def __init__(
        self,
        log,
        balance: int = 2 * LAMPORTS_PER_SOL,
        rates: Optional[Dict[str, float]] = None,
        fee_bps: int = 10,
    ):
        super().__init__(log, dry_run=True)
        self.rates = dict(rates) if rates else default_rates()
        self.fee_bps = int(fee_bps)
        self.balances: Dict[str, int] = {SETTLEMENT_ASSET: int(balance)}
        self._seq = 0

    def _rate(self, from_asset: str, to_asset: str) -> float:
        if from_asset == SETTLEMENT_ASSET and to_asset in self.rates:
            return self.rates[to_asset]
        if to_asset == SETTLEMENT_ASSET and from_asset in self.rates:
            return 1.0 / self.rates[from_asset]
        raise ExecutionError(f"No paper route {from_asset[:8]} -> {to_asset[:8]}")

    async def quote(
        self,
        from_asset: str,
        to_asset: str,
        amount: int,
        slippage_bps: Optional[int] = None,
    ) -> Quote:
        amount = int(amount)
        if amount <= 0:
            raise ExecutionError("Quote amount must be positive")
        gross = int(amount * self._rate(from_asset, to_asset))
        out = gross - gross * self.fee_bps // 10_000
        return Quote(
            from_asset=from_asset,
            to_asset=to_asset,
            in_amount=amount,
            out_amount=out,
            price_impact_pct=0.0,
            raw={"paper": True, "fee_bps": self.fee_bps},
        )

    async def execute(self, quote: Quote) -> ExecutionResult:
        available = self.balances.get(quote.from_asset, 0)
        if available < quote.in_amount:
            return ExecutionResult(
                success=False,
                in_amount=quote.in_amount,
                error=f"Insufficient paper balance ({available} < {quote.in_amount})",
            )
        self._seq += 1
        self.balances[quote.from_asset] = available - quote.in_amount
        self.balances[quote.to_asset] = self.balances.get(quote.to_asset, 0) + quote.out_amount
        ref = f"dry_run_{self._seq}"
        self.log.info(f"[paper] {quote.in_amount} {quote.from_asset[:8]} -> {quote.out_amount} {quote.to_asset[:8]} ({ref})")
        return ExecutionResult(
            success=True,
            settlement_ref=ref,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
        )

    async def get_balance(self, asset: str) -> int:
        return int(self.balances.get(asset, 0))

#!/usr/bin/env python3
"""
Jupiter swap execution venue.

Quotes via GET /quote and builds swap transactions via POST /swap (aiohttp).
The serialized transaction is handed to the injected WalletBackend for
signing and submission.
A submission the wallet reports as failed comes back as a failed result,
never as an error the retry policy would resubmit.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any, Dict, Optional

import aiohttp

from .base import ExecutionError, ExecutionResult, ExecutionVenue, Quote, WalletBackend

DEFAULT_QUOTE_URL = "https://lite-api.jup.ag/swap/v1/quote"
DEFAULT_SWAP_URL = "https://lite-api.jup.ag/swap/v1/swap"
MAX_PRIORITY_FEE_LAMPORTS = 500_000


def load_wallet_backend(dotted: str, **kwargs: Any) -> WalletBackend:
    """Instantiate a WalletBackend from 'package.module:ClassName'."""
    module_name, _, attr = str(dotted or "").partition(":")
    if not module_name or not attr:
        raise ExecutionError(f"wallet backend must look like 'module:Class', got {dotted!r}")
    try:
        module = importlib.import_module(module_name)
        backend_cls = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ExecutionError(f"Cannot load wallet backend {dotted}: {exc}") from exc
    backend = backend_cls(**kwargs)
    if not isinstance(backend, WalletBackend):
        raise ExecutionError(f"{dotted} is not a WalletBackend")
    return backend


class JupiterAdapter(ExecutionVenue):
    """Live venue backed by the Jupiter swap API."""

    def __init__(
        self,
        log: logging.Logger,
        wallet: WalletBackend,
        quote_url: str = DEFAULT_QUOTE_URL,
        swap_url: str = DEFAULT_SWAP_URL,
        slippage_bps: int = 50,
        timeout_seconds: float = 15.0,
    ):
        super().__init__(log, dry_run=False)
        self.wallet = wallet
        self.quote_url = quote_url
        self.swap_url = swap_url
        self.slippage_bps = int(slippage_bps)
        self.timeout_seconds = float(timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> bool:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=10, keepalive_timeout=30)
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"},
                connector=connector,
                timeout=timeout,
            )
        self._initialized = True
        self.log.info(f"Jupiter adapter initialized (wallet {self.wallet.public_key[:8]}...)")
        return True

    def _require_session(self) -> aiohttp.ClientSession:
        if not self._session or self._session.closed:
            raise ExecutionError("HTTP session not available (not initialized or closed)")
        return self._session

    # ============================================================ quote

    async def quote(
        self,
        from_asset: str,
        to_asset: str,
        amount: int,
        slippage_bps: Optional[int] = None,
    ) -> Quote:
        session = self._require_session()
        params = {
            "inputMint": from_asset,
            "outputMint": to_asset,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps if slippage_bps is not None else self.slippage_bps)),
            "restrictIntermediateTokens": "true",
        }
        try:
            async with session.get(self.quote_url, params=params) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise ExecutionError(f"Jupiter quote failed: HTTP {resp.status} {text[:200]}")
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ExecutionError(f"Jupiter quote request failed: {exc!r}") from exc
        return self._parse_quote(payload, from_asset, to_asset)

    @staticmethod
    def _parse_quote(payload: Any, from_asset: str, to_asset: str) -> Quote:
        if not isinstance(payload, dict):
            raise ExecutionError("Jupiter quote response is not an object")
        try:
            in_amount = int(payload["inAmount"])
            out_amount = int(payload["outAmount"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ExecutionError(f"Malformed Jupiter quote: {exc}") from exc
        try:
            impact = float(payload.get("priceImpactPct") or 0.0)
        except (TypeError, ValueError):
            impact = 0.0
        return Quote(
            from_asset=from_asset,
            to_asset=to_asset,
            in_amount=in_amount,
            out_amount=out_amount,
            price_impact_pct=impact,
            raw=payload,
        )

    # ============================================================ execute

    async def execute(self, quote: Quote) -> ExecutionResult:
        session = self._require_session()
        body: Dict[str, Any] = {
            "quoteResponse": quote.raw,
            "userPublicKey": self.wallet.public_key,
            "dynamicComputeUnitLimit": True,
            "dynamicSlippage": True,
            "prioritizationFeeLamports": {
                "priorityLevelWithMaxLamports": {
                    "maxLamports": MAX_PRIORITY_FEE_LAMPORTS,
                    "priorityLevel": "high",
                },
            },
        }
        try:
            async with session.post(self.swap_url, json=body) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    return ExecutionResult(
                        success=False,
                        in_amount=quote.in_amount,
                        error=f"Jupiter swap API error: HTTP {resp.status} {text[:200]}",
                    )
                swap = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ExecutionError(f"Jupiter swap request failed: {exc!r}") from exc

        if not isinstance(swap, dict) or not swap.get("swapTransaction"):
            return ExecutionResult(success=False, in_amount=quote.in_amount, error="Swap response missing transaction")
        if swap.get("simulationError"):
            return ExecutionResult(
                success=False,
                in_amount=quote.in_amount,
                error=f"Simulation error: {swap['simulationError']}",
            )

        # Once submitted the swap may have landed; report failure, never resubmit.
        try:
            signature = await self.wallet.sign_and_send(
                swap["swapTransaction"],
                last_valid_block_height=swap.get("lastValidBlockHeight"),
            )
        except (ExecutionError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.log.error(f"Swap submission failed: {exc!r}")
            return ExecutionResult(
                success=False,
                in_amount=quote.in_amount,
                error=f"Transaction failed: {exc}",
            )
        self.log.info(f"Swap confirmed: {signature}")
        return ExecutionResult(
            success=True,
            settlement_ref=signature,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
        )

    async def get_balance(self, asset: str) -> int:
        return int(await self.wallet.get_balance(asset))

    async def close(self) -> None:
        """Close aiohttp session to avoid resource leaks."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        await self.wallet.close()

#!/usr/bin/env python3
"""
Shared execution venue interface and dataclasses.

An execution venue quotes and executes swaps between the settlement asset
and a venue's yield asset, and reports balances. Signing and custody are
delegated to a WalletBackend; the engine never touches keys.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class ExecutionError(Exception):
    """Raised when a quote or swap cannot be obtained or submitted."""


@dataclass
class Quote:
    """A priced swap route. Amounts are integer base units."""
    from_asset: str
    to_asset: str
    in_amount: int
    out_amount: int
    price_impact_pct: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def rate(self) -> float:
        return self.out_amount / self.in_amount if self.in_amount else 0.0


@dataclass
class ExecutionResult:
    """Result of executing a quote."""
    success: bool
    settlement_ref: Optional[str] = None
    in_amount: int = 0
    out_amount: int = 0
    error: str = ""


class WalletBackend(abc.ABC):
    """Custody boundary: owns keys, signs and submits transactions."""

    @property
    @abc.abstractmethod
    def public_key(self) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_balance(self, asset: str) -> int:
        """Balance of asset (mint) in base units."""
        raise NotImplementedError

    @abc.abstractmethod
    async def sign_and_send(self, serialized_tx: str, last_valid_block_height: Optional[int] = None) -> str:
        """Sign a base64 transaction, submit, wait for confirmation; returns the signature.

        Raises ExecutionError when the transaction fails on chain.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ExecutionVenue(abc.ABC):
    """Base class for execution venues."""

    def __init__(self, log, dry_run: bool = False):
        self.log = log
        self.dry_run = dry_run
        self._initialized = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    async def initialize(self) -> bool:
        self._initialized = True
        return True

    @abc.abstractmethod
    async def quote(
        self,
        from_asset: str,
        to_asset: str,
        amount: int,
        slippage_bps: Optional[int] = None,
    ) -> Quote:
        """Price a swap of amount from_asset into to_asset. Raises ExecutionError."""
        raise NotImplementedError

    @abc.abstractmethod
    async def execute(self, quote: Quote) -> ExecutionResult:
        """Execute a quote.

        Transport failures raise ExecutionError (retryable). A swap the venue
        rejected returns ExecutionResult(success=False).
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def get_balance(self, asset: str) -> int:
        """Balance of asset in base units."""
        raise NotImplementedError

    async def close(self) -> None:
        return None

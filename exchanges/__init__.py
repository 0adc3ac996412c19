"""Execution venues: interface, paper venue and Jupiter adapter."""

from .base import ExecutionError, ExecutionResult, ExecutionVenue, Quote, WalletBackend
from .jupiter_adapter import JupiterAdapter, load_wallet_backend
from .paper_adapter import PaperAdapter, default_rates

__all__ = [
    "ExecutionError",
    "ExecutionResult",
    "ExecutionVenue",
    "Quote",
    "WalletBackend",
    "JupiterAdapter",
    "load_wallet_backend",
    "PaperAdapter",
    "default_rates",
]

"""
BestPool - Liquidity Pool Allocation Service

This package aggregates pool and price metrics for a fixed set of ORCA
whirlpools on Solana and turns them into a recommended liquidity allocation.

Key Features:
- Registry of supported pairs with risk tier, hedge class and correlations
- Market data client with short-lived snapshot caching (memory or Redis)
- Simulated live price stream with reconnect backoff and volatility alerts
- Risk-tolerance weighting with automatic hedge boost in volatile markets
- Portfolio tracker that folds live ticks into the current recommendation
- Structured JSON logging
"""

__version__ = "1.0.0"

from .main import app
from .config import settings

__all__ = ["app", "settings"]

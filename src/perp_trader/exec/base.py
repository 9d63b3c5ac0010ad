"""Exchange boundary used by the orchestrator and market data service."""

from __future__ import annotations

from typing import Any, Protocol

import pandas as pd  # type: ignore[import-untyped]

from perp_trader.types import AccountInfo, ExecutionResult, Order, Position, Side


class ExchangeError(Exception):
    """Raised when an exchange read or write cannot be completed."""


class MarketSource(Protocol):
    """Read-only market endpoints."""

    def get_market_price(self, symbol: str) -> float: ...

    def get_klines(self, symbol: str, interval: str, limit: int = 100) -> pd.DataFrame: ...

    def get_open_interest(self, symbol: str) -> float: ...

    def get_funding_rate(self, symbol: str) -> float: ...

    def get_symbol_info(self, symbol: str) -> dict[str, Any] | None: ...


class ExchangeProvider(MarketSource, Protocol):
    """Account reads plus order placement for hedge-mode perpetuals."""

    def get_account_info(self) -> AccountInfo: ...

    def get_positions(self) -> list[Position]: ...

    def get_open_orders(self, symbol: str | None = None) -> list[Order]: ...

    def open_position(
        self,
        symbol: str,
        side: Side,
        quantity: float,
        leverage: int,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> ExecutionResult: ...

    def close_position(
        self,
        symbol: str,
        side: Side,
        quantity: float | None = None,
    ) -> ExecutionResult: ...

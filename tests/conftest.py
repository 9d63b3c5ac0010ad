from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pandas as pd
import pytest

from perp_trader.ai.provider import OracleResponse
from perp_trader.ai.schemas import TradingDecision
from perp_trader.exec.base import ExchangeError
from perp_trader.journal.feedback import compute_trade_pnl
from perp_trader.types import (
    AccountInfo,
    ExecutionResult,
    HistoricalFeedback,
    MarketData,
    Order,
    Position,
    Side,
    symbol_side_key,
)


def build_klines(rows: int, start_price: float, drift: float, step_minutes: int = 3) -> pd.DataFrame:
    now = datetime.now(UTC)
    times = [now + timedelta(minutes=i * step_minutes) for i in range(rows)]
    closes = [start_price + i * drift for i in range(rows)]
    return pd.DataFrame(
        {
            "open_time": times,
            "open": closes,
            "high": [c * 1.002 for c in closes],
            "low": [c * 0.998 for c in closes],
            "close": closes,
            "volume": [1000.0 for _ in range(rows)],
            "close_time": [t + timedelta(minutes=step_minutes) for t in times],
            "quote_asset_volume": [c * 1000.0 for c in closes],
        }
    )


class FakeMarket:
    """In-memory market source."""

    def __init__(
        self,
        prices: dict[str, float] | None = None,
        open_interest: dict[str, float] | None = None,
        symbol_info: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self.prices = dict(prices or {})
        self.open_interest = dict(open_interest or {})
        self.symbol_info = dict(symbol_info or {})
        self.failing_symbols: set[str] = set()

    def get_market_price(self, symbol: str) -> float:
        if symbol in self.failing_symbols:
            raise ExchangeError(f"price_unavailable: {symbol}")
        return self.prices.get(symbol, 100.0)

    def get_klines(self, symbol: str, interval: str, limit: int = 100) -> pd.DataFrame:
        price = self.prices.get(symbol, 100.0)
        step = 240 if interval == "4h" else 3
        return build_klines(rows=limit, start_price=price * 0.95, drift=price * 0.0005, step_minutes=step)

    def get_open_interest(self, symbol: str) -> float:
        if symbol in self.failing_symbols:
            raise ExchangeError(f"open_interest_unavailable: {symbol}")
        return self.open_interest.get(symbol, 0.0)

    def get_funding_rate(self, symbol: str) -> float:
        return 0.0001

    def get_symbol_info(self, symbol: str) -> dict[str, Any] | None:
        return self.symbol_info.get(symbol)


class FakeExchange(FakeMarket):
    """Hedge-mode exchange double that records every write."""

    def __init__(self, equity: float = 10_000.0, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.wallet = equity
        self.positions: dict[str, Position] = {}
        self.open_orders: list[Order] = []
        self.calls: list[tuple[Any, ...]] = []
        self.fail_account = False
        self.on_account: Callable[[], None] | None = None
        self.on_order: Callable[[], None] | None = None
        self._seq = 0

    def add_position(
        self,
        symbol: str,
        side: Side,
        quantity: float,
        entry_price: float,
        leverage: int = 1,
    ) -> Position:
        position = Position(
            symbol=symbol,
            side=side,
            quantity=quantity,
            entry_price=entry_price,
            current_price=self.prices.get(symbol, entry_price),
            leverage=leverage,
            open_time=0,
        )
        self.positions[symbol_side_key(symbol, side)] = position
        return position

    def get_positions(self) -> list[Position]:
        for position in self.positions.values():
            position.current_price = self.prices.get(position.symbol, position.current_price)
        return list(self.positions.values())

    def get_account_info(self) -> AccountInfo:
        if self.on_account is not None:
            self.on_account()
        if self.fail_account:
            raise ExchangeError("account_unavailable")
        positions = self.get_positions()
        margin = sum(p.quantity * p.entry_price for p in positions)
        unrealized = sum(p.unrealized_pnl for p in positions)
        equity = self.wallet + unrealized
        return AccountInfo(
            total_equity=equity,
            available_balance=max(0.0, equity - margin),
            total_margin_used=margin,
            total_unrealized_pnl=unrealized,
            positions=positions,
        )

    def get_open_orders(self, symbol: str | None = None) -> list[Order]:
        return [o for o in self.open_orders if symbol is None or o.symbol == symbol]

    def open_position(
        self,
        symbol: str,
        side: Side,
        quantity: float,
        leverage: int,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> ExecutionResult:
        self.calls.append(("open", symbol, side, quantity, leverage))
        if self.on_order is not None:
            self.on_order()
        price = self.get_market_price(symbol)
        position = self.add_position(symbol, side, quantity, price, leverage)
        position.stop_loss = stop_loss
        position.take_profit = take_profit
        self._seq += 1
        return ExecutionResult(
            success=True,
            order_id=f"fake-{self._seq}",
            executed_price=price,
            executed_quantity=quantity,
        )

    def close_position(
        self,
        symbol: str,
        side: Side,
        quantity: float | None = None,
    ) -> ExecutionResult:
        self.calls.append(("close", symbol, side, quantity))
        if self.on_order is not None:
            self.on_order()
        position = self.positions.pop(symbol_side_key(symbol, side), None)
        if position is None:
            return ExecutionResult(success=False, error="no_position")
        price = self.get_market_price(symbol)
        pnl, _ = compute_trade_pnl(side, position.entry_price, price, position.quantity, position.leverage)
        self.wallet += pnl
        self._seq += 1
        return ExecutionResult(
            success=True,
            order_id=f"fake-{self._seq}",
            executed_price=price,
            executed_quantity=position.quantity,
        )


class FakeOracle:
    """Returns a fixed decision list, or raises."""

    def __init__(self, decisions: Sequence[TradingDecision] = (), error: Exception | None = None) -> None:
        self.decisions = list(decisions)
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def decide(
        self,
        account: AccountInfo,
        market_data: Sequence[MarketData],
        feedback: HistoricalFeedback,
        positions: Sequence[Position],
    ) -> OracleResponse:
        self.calls.append(
            {
                "account": account,
                "market_data": list(market_data),
                "feedback": feedback,
                "positions": list(positions),
            }
        )
        if self.error is not None:
            raise self.error
        return OracleResponse(decisions=list(self.decisions), chain_of_thought="fake reasoning")


@pytest.fixture
def fake_market() -> FakeMarket:
    return FakeMarket(prices={"BTCUSDT": 50_000.0, "ETHUSDT": 3_000.0, "SOLUSDT": 100.0})


@pytest.fixture
def fake_exchange() -> FakeExchange:
    return FakeExchange(prices={"BTCUSDT": 50_000.0, "ETHUSDT": 3_000.0, "SOLUSDT": 100.0})

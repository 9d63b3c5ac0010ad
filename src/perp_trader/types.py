"""Shared domain types for the decision cycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Side = Literal["LONG", "SHORT"]
Trend = Literal["bullish", "bearish", "neutral"]
CloseReason = Literal["stop_loss", "take_profit", "manual", "ai_decision"]


def symbol_side_key(symbol: str, side: str) -> str:
    """Composite key that lets a LONG and a SHORT coexist on one symbol."""
    return f"{symbol.upper()}_{side.upper()}"


@dataclass(slots=True)
class Position:
    """An open exposure as reported by the exchange."""

    symbol: str
    side: Side
    quantity: float
    entry_price: float
    current_price: float
    leverage: int
    open_time: int
    margin_type: Literal["isolated", "cross"] = "cross"
    liquidation_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None

    @property
    def symbol_side(self) -> str:
        return symbol_side_key(self.symbol, self.side)

    @property
    def price_delta(self) -> float:
        if self.side == "LONG":
            return self.current_price - self.entry_price
        return self.entry_price - self.current_price

    @property
    def unrealized_pnl(self) -> float:
        return self.price_delta * self.quantity * self.leverage

    @property
    def unrealized_pnl_percent(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return self.price_delta / self.entry_price * self.leverage * 100

    @property
    def notional(self) -> float:
        return self.quantity * self.current_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "leverage": self.leverage,
            "open_time": self.open_time,
            "margin_type": self.margin_type,
            "liquidation_price": self.liquidation_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "unrealized_pnl": self.unrealized_pnl,
            "unrealized_pnl_percent": self.unrealized_pnl_percent,
        }


@dataclass(slots=True)
class Order:
    """An open exchange order, used to detect exchange-side protection."""

    order_id: str
    symbol: str
    side: Literal["BUY", "SELL"]
    type: str
    position_side: Literal["LONG", "SHORT", "BOTH"]
    quantity: float
    status: str = "NEW"
    price: float | None = None
    stop_price: float | None = None

    @property
    def is_take_profit(self) -> bool:
        return self.type.upper() in {"TAKE_PROFIT", "TAKE_PROFIT_MARKET"}


@dataclass(slots=True)
class AccountInfo:
    """Point-in-time account snapshot, always fetched fresh."""

    total_equity: float
    available_balance: float
    total_margin_used: float
    total_unrealized_pnl: float
    positions: list[Position] = field(default_factory=list)
    daily_pnl: float | None = None

    @property
    def total_positions(self) -> int:
        return len(self.positions)

    @property
    def margin_usage_percent(self) -> float:
        if self.total_equity <= 0:
            return 0.0
        return self.total_margin_used / self.total_equity

    def find_position(self, symbol: str, side: str) -> Position | None:
        key = symbol_side_key(symbol, side)
        for position in self.positions:
            if position.symbol_side == key:
                return position
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_equity": self.total_equity,
            "available_balance": self.available_balance,
            "total_margin_used": self.total_margin_used,
            "margin_usage_percent": self.margin_usage_percent,
            "total_unrealized_pnl": self.total_unrealized_pnl,
            "total_positions": self.total_positions,
            "daily_pnl": self.daily_pnl,
            "positions": [position.to_dict() for position in self.positions],
        }


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one order submitted to the exchange."""

    success: bool
    order_id: str | None = None
    executed_price: float | None = None
    executed_quantity: float | None = None
    error: str | None = None


@dataclass(slots=True)
class MarketData:
    """Indicator-enriched market snapshot for one symbol."""

    symbol: str
    current_price: float
    price_change_24h: float
    price_change_percent_24h: float
    volume_24h: float
    timestamp: int
    open_interest: float | None = None
    funding_rate: float | None = None
    indicators_3m: dict[str, Any] = field(default_factory=dict)
    indicators_4h: dict[str, Any] = field(default_factory=dict)
    opportunity_score: float = 0.0


@dataclass(slots=True)
class CoinPerformance:
    """Realized performance of one symbol over the sampled trades."""

    symbol: str
    total_trades: int
    win_rate: float
    average_pnl: float
    total_pnl: float
    best_trade: float
    worst_trade: float


@dataclass(slots=True)
class HistoricalFeedback:
    """Aggregate statistics over recent closed trades."""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    average_profit: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    per_coin_stats: list[CoinPerformance] = field(default_factory=list)
    best_coins: list[CoinPerformance] = field(default_factory=list)
    worst_coins: list[CoinPerformance] = field(default_factory=list)
    recent_trades: list[dict[str, Any]] = field(default_factory=list)
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    favor_symbols: list[str] = field(default_factory=list)
    avoid_symbols: list[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> HistoricalFeedback:
        """Zeroed feedback for the first run."""
        return cls()


@dataclass(slots=True)
class RiskCheckResult:
    """Admission verdict for one proposed action."""

    allowed: bool
    reason: str | None = None
    adjusted_quantity: float | None = None
    adjusted_leverage: int | None = None


@dataclass(slots=True)
class StopLossCheck:
    """Stop-loss / take-profit validation verdict."""

    valid: bool
    reason: str | None = None
    risk_reward_ratio: float | None = None


@dataclass(slots=True)
class PositionLimit:
    """Sizing envelope for one symbol's asset class."""

    max_position_value: float
    max_leverage: int
    current_exposure: float
    available_room: float


@dataclass(slots=True)
class OrderSize:
    """Quantity after exchange step / minimum-notional normalization."""

    quantity: float
    adjusted: bool


@dataclass(slots=True)
class CycleResult:
    """Outcome of one decision cycle run."""

    status: str
    cycle_number: int = 0
    decisions: list[dict[str, object]] = field(default_factory=list)
    orders: list[dict[str, object]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0

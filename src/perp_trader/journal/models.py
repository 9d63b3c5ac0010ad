"""Ledger tables: trades and equity snapshots."""

from typing import Optional

from sqlmodel import Field, SQLModel


class Trade(SQLModel, table=True):
    """One opened-then-closed position.

    Rows are inserted open and updated exactly once on close. Times are epoch
    milliseconds (UTC).
    """

    __tablename__ = "trades"

    id: Optional[int] = Field(default=None, primary_key=True)
    trader_id: str = Field(index=True)
    symbol: str = Field(index=True)
    side: str  # 'LONG' / 'SHORT'
    symbol_side: str = Field(index=True)

    # entry
    entry_price: float
    quantity: float
    leverage: int = Field(default=1)
    open_time: int
    open_order_id: Optional[str] = None

    # exit
    exit_price: Optional[float] = None
    close_time: Optional[int] = Field(default=None, index=True)
    close_order_id: Optional[str] = None

    # performance
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    holding_duration_ms: Optional[int] = None

    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    status: str = Field(default="open", index=True)  # 'open' / 'closed'
    close_reason: Optional[str] = None
    created_at: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trader_id": self.trader_id,
            "symbol": self.symbol,
            "side": self.side,
            "symbol_side": self.symbol_side,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "leverage": self.leverage,
            "open_time": self.open_time,
            "open_order_id": self.open_order_id,
            "exit_price": self.exit_price,
            "close_time": self.close_time,
            "close_order_id": self.close_order_id,
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "holding_duration_ms": self.holding_duration_ms,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "status": self.status,
            "close_reason": self.close_reason,
        }


class EquitySnapshot(SQLModel, table=True):
    """Append-only equity time series point."""

    __tablename__ = "equity_snapshots"

    id: Optional[int] = Field(default=None, primary_key=True)
    trader_id: str = Field(index=True)
    timestamp: int = Field(index=True)
    equity: float
    daily_pnl: float
    daily_pnl_percent: float

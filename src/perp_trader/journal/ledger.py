"""Durable trade and equity ledger for one trader."""

from __future__ import annotations

import math
import threading
import time
from datetime import date, datetime, timezone
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from perp_trader.journal.feedback import compute_historical_feedback, compute_trade_pnl
from perp_trader.journal.models import EquitySnapshot, Trade
from perp_trader.types import HistoricalFeedback, Side, symbol_side_key
from perp_trader.utils.logging import get_logger

_VALID_SIDES = {"LONG", "SHORT"}


class LedgerError(Exception):
    """Raised when the ledger rejects input or the store fails."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_positive(value: float | int | None) -> bool:
    return value is not None and math.isfinite(float(value)) and float(value) > 0


class PerformanceLedger:
    """Single source of truth for realized PnL and historical statistics.

    Each instance owns the rows of one ``trader_id``. Close lookups and updates
    for the same ``symbol_side`` are serialized so a close always sees the most
    recent open row.
    """

    def __init__(
        self,
        trader_id: str,
        database_url: str | None = None,
        *,
        engine: Engine | None = None,
    ) -> None:
        self._trader_id = trader_id
        self._logger = get_logger("perp_trader.journal.ledger")
        self._lock = threading.RLock()
        if engine is None:
            url = database_url or "sqlite:///data/performance.db"
            engine = _create_engine(url)
        self._engine = engine
        SQLModel.metadata.create_all(self._engine)
        self._logger.info("ledger_initialized", trader_id=trader_id)

    @property
    def trader_id(self) -> str:
        return self._trader_id

    def record_open(
        self,
        *,
        symbol: str,
        side: Side,
        entry_price: float,
        quantity: float,
        leverage: int,
        open_time: int | None = None,
        open_order_id: str | None = None,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> int:
        """Insert an open trade row and return its id."""
        side_upper = str(side).upper()
        if side_upper not in _VALID_SIDES:
            raise LedgerError(f"invalid_side: {side}")
        if not _is_positive(quantity):
            raise LedgerError("quantity_must_be_positive")
        if not _is_positive(entry_price):
            raise LedgerError("entry_price_must_be_positive")
        if int(leverage) < 1:
            raise LedgerError("leverage_must_be_at_least_one")

        now = _now_ms()
        trade = Trade(
            trader_id=self._trader_id,
            symbol=symbol.upper(),
            side=side_upper,
            symbol_side=symbol_side_key(symbol, side_upper),
            entry_price=float(entry_price),
            quantity=float(quantity),
            leverage=int(leverage),
            open_time=open_time if open_time is not None else now,
            open_order_id=open_order_id,
            stop_loss=stop_loss,
            take_profit=take_profit,
            status="open",
            created_at=now,
        )
        with self._lock:
            try:
                with Session(self._engine) as session:
                    session.add(trade)
                    session.commit()
                    session.refresh(trade)
            except SQLAlchemyError as exc:
                raise LedgerError(f"record_open_failed: {exc}") from exc
        if trade.id is None:
            raise LedgerError("record_open_failed: no id assigned")

        self._logger.info(
            "trade_opened",
            symbol=trade.symbol,
            side=trade.side,
            entry_price=trade.entry_price,
            quantity=trade.quantity,
            leverage=trade.leverage,
            trade_id=trade.id,
        )
        return trade.id

    def record_close(
        self,
        symbol: str,
        side: Side,
        exit_price: float,
        reason: str = "ai_decision",
        *,
        close_order_id: str | None = None,
        close_time: int | None = None,
    ) -> Trade | None:
        """Close the most recent open row for ``symbol_side``.

        Returns None (and logs a warning) when the ledger holds no open row;
        exchange state is authoritative, so that is not an error.
        """
        key = symbol_side_key(symbol, side)
        with self._lock:
            try:
                with Session(self._engine) as session:
                    statement = (
                        select(Trade)
                        .where(Trade.trader_id == self._trader_id)
                        .where(Trade.symbol_side == key)
                        .where(Trade.status == "open")
                        .order_by(Trade.open_time.desc(), Trade.id.desc())  # type: ignore[union-attr]
                    )
                    trade = session.exec(statement).first()
                    if trade is None:
                        self._logger.warning("close_without_open_trade", symbol_side=key)
                        return None

                    closed_at = close_time if close_time is not None else _now_ms()
                    pnl, pnl_percent = compute_trade_pnl(
                        trade.side,
                        trade.entry_price,
                        float(exit_price),
                        trade.quantity,
                        trade.leverage,
                    )
                    trade.exit_price = float(exit_price)
                    trade.close_time = closed_at
                    trade.close_order_id = close_order_id
                    trade.pnl = pnl
                    trade.pnl_percent = pnl_percent
                    trade.holding_duration_ms = closed_at - trade.open_time
                    trade.status = "closed"
                    trade.close_reason = reason
                    session.add(trade)
                    session.commit()
                    session.refresh(trade)
            except SQLAlchemyError as exc:
                raise LedgerError(f"record_close_failed: {exc}") from exc

        self._logger.info(
            "trade_closed",
            symbol_side=key,
            exit_price=trade.exit_price,
            pnl=round(pnl, 4),
            pnl_percent=round(pnl_percent, 4),
            reason=reason,
        )
        return trade

    def get_open_trade(self, symbol: str, side: Side) -> Trade | None:
        """Most recent open row for ``symbol_side``."""
        key = symbol_side_key(symbol, side)
        try:
            with Session(self._engine) as session:
                statement = (
                    select(Trade)
                    .where(Trade.trader_id == self._trader_id)
                    .where(Trade.symbol_side == key)
                    .where(Trade.status == "open")
                    .order_by(Trade.open_time.desc(), Trade.id.desc())  # type: ignore[union-attr]
                )
                return session.exec(statement).first()
        except SQLAlchemyError as exc:
            raise LedgerError(f"get_open_trade_failed: {exc}") from exc

    def get_open_trades(self) -> list[Trade]:
        """All open rows, newest first."""
        try:
            with Session(self._engine) as session:
                statement = (
                    select(Trade)
                    .where(Trade.trader_id == self._trader_id)
                    .where(Trade.status == "open")
                    .order_by(Trade.open_time.desc(), Trade.id.desc())  # type: ignore[union-attr]
                )
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise LedgerError(f"get_open_trades_failed: {exc}") from exc

    def get_closed_trades(self, limit: int) -> list[Trade]:
        """Last ``limit`` closed rows ordered by close time descending."""
        if limit <= 0:
            return []
        try:
            with Session(self._engine) as session:
                statement = (
                    select(Trade)
                    .where(Trade.trader_id == self._trader_id)
                    .where(Trade.status == "closed")
                    .order_by(Trade.close_time.desc(), Trade.id.desc())  # type: ignore[union-attr]
                    .limit(limit)
                )
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise LedgerError(f"get_closed_trades_failed: {exc}") from exc

    def get_historical_feedback(self, n: int = 20) -> HistoricalFeedback:
        """Aggregate the last ``n`` closed trades plus the full equity series."""
        trades = self.get_closed_trades(n)
        if not trades:
            return HistoricalFeedback.empty()
        equity_values = [snapshot.equity for snapshot in self.get_equity_history(limit=None)]
        return compute_historical_feedback(trades, equity_values)

    def record_equity_snapshot(
        self,
        equity: float,
        daily_pnl: float,
        daily_pnl_percent: float,
        *,
        timestamp: int | None = None,
    ) -> None:
        """Append one point to the equity series."""
        snapshot = EquitySnapshot(
            trader_id=self._trader_id,
            timestamp=timestamp if timestamp is not None else _now_ms(),
            equity=float(equity),
            daily_pnl=float(daily_pnl),
            daily_pnl_percent=float(daily_pnl_percent),
        )
        try:
            with Session(self._engine) as session:
                session.add(snapshot)
                session.commit()
        except SQLAlchemyError as exc:
            raise LedgerError(f"record_equity_snapshot_failed: {exc}") from exc

    def get_equity_history(self, limit: int | None = 1000) -> list[EquitySnapshot]:
        """Most recent ``limit`` snapshots in ascending time order."""
        try:
            with Session(self._engine) as session:
                statement = (
                    select(EquitySnapshot)
                    .where(EquitySnapshot.trader_id == self._trader_id)
                    .order_by(EquitySnapshot.timestamp.desc(), EquitySnapshot.id.desc())  # type: ignore[union-attr]
                )
                if limit is not None:
                    statement = statement.limit(limit)
                rows = list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            raise LedgerError(f"get_equity_history_failed: {exc}") from exc
        rows.reverse()
        return rows

    def day_start_equity(self, day: date | None = None) -> float | None:
        """Equity of the first snapshot recorded on ``day`` (UTC)."""
        day = day or datetime.now(timezone.utc).date()
        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        start_ms = int(start.timestamp() * 1000)
        end_ms = start_ms + 86_400_000
        try:
            with Session(self._engine) as session:
                statement = (
                    select(EquitySnapshot)
                    .where(EquitySnapshot.trader_id == self._trader_id)
                    .where(EquitySnapshot.timestamp >= start_ms)
                    .where(EquitySnapshot.timestamp < end_ms)
                    .order_by(EquitySnapshot.timestamp.asc(), EquitySnapshot.id.asc())  # type: ignore[union-attr]
                )
                first = session.exec(statement).first()
        except SQLAlchemyError as exc:
            raise LedgerError(f"day_start_equity_failed: {exc}") from exc
        return first.equity if first is not None else None

    def close(self) -> None:
        """Release pooled connections."""
        self._engine.dispose()
        self._logger.info("ledger_closed", trader_id=self._trader_id)


def _create_engine(url: str) -> Engine:
    if url.startswith("sqlite:///"):
        db_path = url.removeprefix("sqlite:///")
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(url, echo=False)

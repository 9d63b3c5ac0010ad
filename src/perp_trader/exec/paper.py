"""Paper exchange with persistent local state."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import pandas as pd  # type: ignore[import-untyped]

from perp_trader.exec.base import ExchangeError, MarketSource
from perp_trader.journal.feedback import compute_trade_pnl
from perp_trader.types import AccountInfo, ExecutionResult, Order, Position, Side, symbol_side_key
from perp_trader.utils.logging import get_logger, log_order_execution


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class _PaperState:
    wallet_balance: float
    initial_equity: float
    order_seq: int = 0
    positions: dict[str, Position] = field(default_factory=dict)


class PaperExchange:
    """Simulated hedge-mode futures account.

    Market reads are delegated to ``market``; fills apply ``slippage_bps``
    against the taker. Margin for a position is its entry notional, matching
    the cross-margin model the risk gate assumes. Realized pnl uses the same
    formula as the ledger so the two stay in agreement. There are no resting
    orders: stop-loss / take-profit levels are kept on the position only.
    """

    def __init__(
        self,
        market: MarketSource,
        state_file: Path,
        *,
        slippage_bps: float = 2.0,
        initial_equity: float = 10_000.0,
    ) -> None:
        self._market = market
        self._slippage_bps = slippage_bps
        self._state_file = state_file
        self._logger = get_logger("perp_trader.exec.paper")
        self._state = self._load_state(initial_equity)

    # ---- market reads ----

    def get_market_price(self, symbol: str) -> float:
        return self._market.get_market_price(symbol)

    def get_klines(self, symbol: str, interval: str, limit: int = 100) -> pd.DataFrame:
        return self._market.get_klines(symbol, interval, limit)

    def get_open_interest(self, symbol: str) -> float:
        return self._market.get_open_interest(symbol)

    def get_funding_rate(self, symbol: str) -> float:
        return self._market.get_funding_rate(symbol)

    def get_symbol_info(self, symbol: str) -> dict[str, Any] | None:
        return self._market.get_symbol_info(symbol)

    # ---- account reads ----

    @property
    def wallet_balance(self) -> float:
        return self._state.wallet_balance

    def get_positions(self) -> list[Position]:
        """Open positions marked to the latest price."""
        for position in self._state.positions.values():
            try:
                position.current_price = self._market.get_market_price(position.symbol)
            except ExchangeError as exc:
                # keep the last mark
                self._logger.warning("paper_mark_failed", symbol=position.symbol, error=str(exc))
        return list(self._state.positions.values())

    def get_account_info(self) -> AccountInfo:
        positions = self.get_positions()
        unrealized = sum(position.unrealized_pnl for position in positions)
        margin_used = sum(position.quantity * position.entry_price for position in positions)
        equity = self._state.wallet_balance + unrealized
        return AccountInfo(
            total_equity=equity,
            available_balance=max(0.0, equity - margin_used),
            total_margin_used=margin_used,
            total_unrealized_pnl=unrealized,
            positions=positions,
        )

    def get_open_orders(self, symbol: str | None = None) -> list[Order]:
        return []

    # ---- writes ----

    def open_position(
        self,
        symbol: str,
        side: Side,
        quantity: float,
        leverage: int,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> ExecutionResult:
        """Fill a market open with slippage against the taker."""
        if quantity <= 0:
            return ExecutionResult(success=False, error="quantity_must_be_positive")
        key = symbol_side_key(symbol, side)
        if key in self._state.positions:
            return ExecutionResult(success=False, error=f"position_already_open: {key}")
        try:
            price = self._market.get_market_price(symbol)
        except ExchangeError as exc:
            return ExecutionResult(success=False, error=str(exc))

        fill_price = self._apply_slippage(price, buying=side == "LONG")
        self._state.positions[key] = Position(
            symbol=symbol.upper(),
            side=side,
            quantity=float(quantity),
            entry_price=fill_price,
            current_price=fill_price,
            leverage=int(leverage),
            open_time=_now_ms(),
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        order_id = self._next_order_id()
        self._persist()
        log_order_execution(
            self._logger,
            symbol=symbol,
            side=side,
            quantity=float(quantity),
            price=fill_price,
            order_id=order_id,
            status="filled",
            mode="paper",
        )
        return ExecutionResult(
            success=True,
            order_id=order_id,
            executed_price=fill_price,
            executed_quantity=float(quantity),
        )

    def close_position(
        self,
        symbol: str,
        side: Side,
        quantity: float | None = None,
    ) -> ExecutionResult:
        """Fill a market close and realize pnl into the wallet."""
        key = symbol_side_key(symbol, side)
        position = self._state.positions.get(key)
        if position is None:
            return ExecutionResult(success=False, error=f"no_open_position: {key}")
        try:
            price = self._market.get_market_price(symbol)
        except ExchangeError as exc:
            return ExecutionResult(success=False, error=str(exc))

        close_qty = min(float(quantity), position.quantity) if quantity else position.quantity
        fill_price = self._apply_slippage(price, buying=side == "SHORT")
        pnl, _ = compute_trade_pnl(
            side,
            position.entry_price,
            fill_price,
            close_qty,
            position.leverage,
        )
        self._state.wallet_balance += pnl
        remaining = position.quantity - close_qty
        if remaining <= 1e-12:
            del self._state.positions[key]
        else:
            position.quantity = remaining
        order_id = self._next_order_id()
        self._persist()
        log_order_execution(
            self._logger,
            symbol=symbol,
            side=side,
            quantity=close_qty,
            price=fill_price,
            order_id=order_id,
            status="closed",
            realized_pnl=round(pnl, 4),
            mode="paper",
        )
        return ExecutionResult(
            success=True,
            order_id=order_id,
            executed_price=fill_price,
            executed_quantity=close_qty,
        )

    # ---- state ----

    def _apply_slippage(self, price: float, *, buying: bool) -> float:
        factor = self._slippage_bps / 10_000.0
        return float(price * (1.0 + factor if buying else 1.0 - factor))

    def _next_order_id(self) -> str:
        self._state.order_seq += 1
        return f"paper-{self._state.order_seq}"

    def _load_state(self, initial_equity: float) -> _PaperState:
        if not self._state_file.exists():
            return _PaperState(wallet_balance=initial_equity, initial_equity=initial_equity)

        raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        positions = {
            key: Position(**payload)
            for key, payload in (raw.get("positions") or {}).items()
            if isinstance(payload, dict)
        }
        return _PaperState(
            wallet_balance=float(raw.get("wallet_balance", initial_equity)),
            initial_equity=float(raw.get("initial_equity", initial_equity)),
            order_seq=int(raw.get("order_seq", 0)),
            positions=positions,
        )

    def _persist(self) -> None:
        payload: dict[str, Any] = {
            "wallet_balance": self._state.wallet_balance,
            "initial_equity": self._state.initial_equity,
            "order_seq": self._state.order_seq,
            "positions": {key: asdict(position) for key, position in self._state.positions.items()},
        }
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        self._state_file.write_text(serialized, encoding="utf-8")

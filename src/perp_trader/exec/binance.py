"""Live hedge-mode execution on Binance USDⓈ-M futures."""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Any

import pandas as pd  # type: ignore[import-untyped]
from binance.client import Client  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]
from requests.exceptions import RequestException

from perp_trader.config import Settings
from perp_trader.data.binance import BinanceDataClient, build_client
from perp_trader.exec.base import ExchangeError
from perp_trader.types import AccountInfo, ExecutionResult, Order, Position, Side
from perp_trader.utils.logging import get_logger, log_order_execution

_API_ERRORS = (BinanceAPIException, BinanceRequestException, RequestException)
# Binance error codes meaning "already in the requested state".
_NO_CHANGE_CODES = {-4046, -4059}


def _format_decimal(value: float, step: str | None) -> str:
    if not step:
        return f"{value:f}"
    step_dec = Decimal(step).normalize()
    q = (Decimal(str(value)) / step_dec).to_integral_value(rounding=ROUND_DOWN) * step_dec
    return format(q.quantize(step_dec), "f")


class BinanceFuturesExchange:
    """ExchangeProvider backed by python-binance.

    Positions are held in hedge (dual-side) mode so a LONG and a SHORT can
    coexist on one symbol. Protection orders are mark-price ``STOP_MARKET`` /
    ``TAKE_PROFIT_MARKET`` on the position side; hedge mode does not accept
    ``reduceOnly``.
    """

    def __init__(self, settings: Settings, client: Client | None = None) -> None:
        self._settings = settings
        self._logger = get_logger("perp_trader.exec.binance")
        self._client = client or build_client(settings)
        self._data = BinanceDataClient(settings, client=self._client)
        self._hedge_mode_checked = False

    # ---- market reads ----

    def get_market_price(self, symbol: str) -> float:
        return self._data.get_market_price(symbol)

    def get_klines(self, symbol: str, interval: str, limit: int = 100) -> pd.DataFrame:
        return self._data.get_klines(symbol, interval, limit)

    def get_open_interest(self, symbol: str) -> float:
        return self._data.get_open_interest(symbol)

    def get_funding_rate(self, symbol: str) -> float:
        return self._data.get_funding_rate(symbol)

    def get_symbol_info(self, symbol: str) -> dict[str, Any] | None:
        return self._data.get_symbol_info(symbol)

    # ---- account reads ----

    def get_account_info(self) -> AccountInfo:
        """Fresh account snapshot; raises ExchangeError on failure."""
        self._ensure_hedge_mode()
        try:
            data = self._client.futures_account()
        except _API_ERRORS as exc:
            raise ExchangeError(f"account_failed: {exc}") from exc

        wallet = float(data.get("totalWalletBalance", 0.0))
        unrealized = float(data.get("totalUnrealizedProfit", 0.0))
        return AccountInfo(
            total_equity=wallet + unrealized,
            available_balance=float(data.get("availableBalance", 0.0)),
            total_margin_used=float(data.get("totalInitialMargin", 0.0)),
            total_unrealized_pnl=unrealized,
            positions=self.get_positions(),
        )

    def get_positions(self) -> list[Position]:
        try:
            rows = self._client.futures_position_information()
        except _API_ERRORS as exc:
            raise ExchangeError(f"positions_failed: {exc}") from exc

        positions: list[Position] = []
        for row in rows:
            amount = float(row.get("positionAmt", 0.0))
            if amount == 0:
                continue
            position_side = str(row.get("positionSide", "BOTH")).upper()
            if position_side in {"LONG", "SHORT"}:
                side: Side = position_side  # type: ignore[assignment]
            else:
                side = "LONG" if amount > 0 else "SHORT"
            liquidation = float(row.get("liquidationPrice") or 0.0)
            positions.append(
                Position(
                    symbol=row["symbol"],
                    side=side,
                    quantity=abs(amount),
                    entry_price=float(row.get("entryPrice", 0.0)),
                    current_price=float(row.get("markPrice", 0.0)),
                    leverage=int(float(row.get("leverage", 1) or 1)),
                    open_time=int(row.get("updateTime", 0) or 0),
                    margin_type="isolated" if str(row.get("marginType", "")).lower() == "isolated" else "cross",
                    liquidation_price=liquidation or None,
                )
            )
        return positions

    def get_open_orders(self, symbol: str | None = None) -> list[Order]:
        params = {"symbol": symbol} if symbol else {}
        try:
            rows = self._client.futures_get_open_orders(**params)
        except _API_ERRORS as exc:
            raise ExchangeError(f"open_orders_failed: {exc}") from exc
        return [
            Order(
                order_id=str(row["orderId"]),
                symbol=row["symbol"],
                side=row["side"],
                type=row["type"],
                position_side=row.get("positionSide", "BOTH"),
                quantity=float(row.get("origQty", 0.0)),
                status=row.get("status", "NEW"),
                price=float(row["price"]) if float(row.get("price") or 0) else None,
                stop_price=float(row["stopPrice"]) if float(row.get("stopPrice") or 0) else None,
            )
            for row in rows
        ]

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
        """Market-open a hedge-mode position and attach protection orders."""
        self._ensure_hedge_mode()
        try:
            self._set_leverage(symbol, leverage)
            qty_text = self._format_qty(symbol, quantity)
            response = self._client.futures_create_order(
                symbol=symbol,
                side="BUY" if side == "LONG" else "SELL",
                positionSide=side,
                type="MARKET",
                quantity=qty_text,
                newOrderRespType="RESULT",
            )
        except (ExchangeError, *_API_ERRORS) as exc:
            self._logger.error("open_failed", symbol=symbol, side=side, error=str(exc))
            return ExecutionResult(success=False, error=str(exc))

        result = self._result_from_response(response, qty_text)
        log_order_execution(
            self._logger,
            symbol=symbol,
            side=side,
            quantity=result.executed_quantity or 0.0,
            price=result.executed_price,
            order_id=result.order_id,
            status="filled",
            leverage=leverage,
        )
        if stop_loss or take_profit:
            self._place_protection(symbol, side, qty_text, stop_loss, take_profit)
        return result

    def close_position(
        self,
        symbol: str,
        side: Side,
        quantity: float | None = None,
    ) -> ExecutionResult:
        """Market-close a position; the full size when ``quantity`` is None."""
        self._cancel_protection(symbol, side)

        try:
            if not quantity:
                position = next(
                    (p for p in self.get_positions() if p.symbol == symbol and p.side == side),
                    None,
                )
                if position is None:
                    return ExecutionResult(success=False, error=f"no {side} position for {symbol}")
                quantity = position.quantity
            qty_text = self._format_qty(symbol, quantity)
            response = self._client.futures_create_order(
                symbol=symbol,
                side="SELL" if side == "LONG" else "BUY",
                positionSide=side,
                type="MARKET",
                quantity=qty_text,
                newOrderRespType="RESULT",
            )
        except (ExchangeError, *_API_ERRORS) as exc:
            self._logger.error("close_failed", symbol=symbol, side=side, error=str(exc))
            return ExecutionResult(success=False, error=str(exc))

        result = self._result_from_response(response, qty_text)
        log_order_execution(
            self._logger,
            symbol=symbol,
            side=side,
            quantity=result.executed_quantity or 0.0,
            price=result.executed_price,
            order_id=result.order_id,
            status="closed",
        )
        return result

    # ---- helpers ----

    def _ensure_hedge_mode(self) -> None:
        if self._hedge_mode_checked:
            return
        try:
            self._client.futures_change_position_mode(dualSidePosition="true")
            self._logger.info("hedge_mode_enabled")
        except BinanceAPIException as exc:
            if exc.code not in _NO_CHANGE_CODES:
                self._logger.warning("hedge_mode_failed", error=str(exc))
        except (BinanceRequestException, RequestException) as exc:
            self._logger.warning("hedge_mode_failed", error=str(exc))
            return
        self._hedge_mode_checked = True

    def _cancel_protection(self, symbol: str, side: Side) -> None:
        # only this side's orders: the opposite hedge leg keeps its protection
        try:
            for order in self.get_open_orders(symbol):
                if order.position_side == side:
                    self._client.futures_cancel_order(symbol=symbol, orderId=order.order_id)
        except (ExchangeError, *_API_ERRORS) as exc:
            self._logger.warning("cancel_orders_failed", symbol=symbol, side=side, error=str(exc))

    def _set_leverage(self, symbol: str, leverage: int) -> None:
        try:
            self._client.futures_change_leverage(symbol=symbol, leverage=int(leverage))
        except BinanceAPIException as exc:
            if exc.code not in _NO_CHANGE_CODES:
                raise

    def _format_qty(self, symbol: str, quantity: float) -> str:
        info = self.get_symbol_info(symbol)
        if info is None:
            raise ExchangeError(f"unknown_symbol: {symbol}")
        step = None
        for f in info.get("filters", []):
            if f.get("filterType") in {"MARKET_LOT_SIZE", "LOT_SIZE"} and f.get("stepSize"):
                step = f["stepSize"]
                if f.get("filterType") == "MARKET_LOT_SIZE":
                    break
        return _format_decimal(quantity, step)

    def _format_price(self, symbol: str, price: float) -> str:
        info = self.get_symbol_info(symbol) or {}
        tick = next(
            (f.get("tickSize") for f in info.get("filters", []) if f.get("filterType") == "PRICE_FILTER"),
            None,
        )
        return _format_decimal(price, tick)

    def _place_protection(
        self,
        symbol: str,
        side: Side,
        qty_text: str,
        stop_loss: float | None,
        take_profit: float | None,
    ) -> None:
        exit_side = "SELL" if side == "LONG" else "BUY"
        for order_type, level in (("STOP_MARKET", stop_loss), ("TAKE_PROFIT_MARKET", take_profit)):
            if not level:
                continue
            try:
                self._client.futures_create_order(
                    symbol=symbol,
                    side=exit_side,
                    positionSide=side,
                    type=order_type,
                    stopPrice=self._format_price(symbol, level),
                    workingType="MARK_PRICE",
                    quantity=qty_text,
                )
                self._logger.info("protection_order_placed", symbol=symbol, type=order_type, price=level)
            except (ExchangeError, *_API_ERRORS) as exc:
                # position stays open; the take-profit safety net covers a missing TP
                self._logger.warning(
                    "protection_order_failed",
                    symbol=symbol,
                    type=order_type,
                    error=str(exc),
                )

    @staticmethod
    def _result_from_response(response: dict[str, Any], qty_text: str) -> ExecutionResult:
        executed_qty = float(response.get("executedQty") or 0.0) or float(qty_text)
        avg_price = float(response.get("avgPrice") or 0.0)
        return ExecutionResult(
            success=True,
            order_id=str(response.get("orderId", "")),
            executed_price=avg_price or None,
            executed_quantity=executed_qty,
        )

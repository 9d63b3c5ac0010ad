"""Binance USDⓈ-M futures market data client."""

from __future__ import annotations

import threading
from typing import Any

import pandas as pd  # type: ignore[import-untyped]
from binance.client import Client  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]
from requests.exceptions import RequestException

from perp_trader.config import Settings
from perp_trader.exec.base import ExchangeError
from perp_trader.utils.logging import get_logger

KLINE_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
    "quote_asset_volume",
    "number_of_trades",
    "taker_buy_base_asset_volume",
    "taker_buy_quote_asset_volume",
    "ignore",
]
_NUMERIC_COLS = ["open", "high", "low", "close", "volume", "quote_asset_volume"]

_API_ERRORS = (BinanceAPIException, BinanceRequestException, RequestException)


def build_client(settings: Settings) -> Client:
    """Create a python-binance client honoring the configured timeout."""
    return Client(
        api_key=settings.binance_api_key or None,
        api_secret=settings.binance_api_secret or None,
        testnet=settings.binance_testnet,
        requests_params={"timeout": settings.binance_timeout},
    )


def klines_to_frame(rows: list[list[Any]]) -> pd.DataFrame:
    """Normalize raw kline rows into a numeric dataframe."""
    df = pd.DataFrame(rows, columns=KLINE_COLUMNS)
    if df.empty:
        raise ExchangeError("empty_kline_response")

    for col in _NUMERIC_COLS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
    df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
    df = df.dropna(subset=_NUMERIC_COLS).reset_index(drop=True)
    return df[["open_time", "open", "high", "low", "close", "volume", "close_time", "quote_asset_volume"]]


class BinanceDataClient:
    """Read-only client for klines, prices, funding and open interest."""

    def __init__(self, settings: Settings, client: Client | None = None) -> None:
        self._settings = settings
        self._logger = get_logger("perp_trader.data.binance")
        self._client = client or build_client(settings)
        self._symbol_cache: dict[str, dict[str, Any]] = {}
        self._cache_lock = threading.Lock()

    @property
    def client(self) -> Client:
        return self._client

    def get_klines(self, symbol: str, interval: str, limit: int = 100) -> pd.DataFrame:
        """Fetch futures klines as a dataframe."""
        try:
            rows = self._client.futures_klines(symbol=symbol, interval=interval, limit=limit)
        except _API_ERRORS as exc:
            raise ExchangeError(f"klines_failed: {symbol} {interval}: {exc}") from exc
        return klines_to_frame(rows)

    def get_market_price(self, symbol: str) -> float:
        """Latest traded price."""
        try:
            payload = self._client.futures_symbol_ticker(symbol=symbol)
        except _API_ERRORS as exc:
            raise ExchangeError(f"price_failed: {symbol}: {exc}") from exc
        return float(payload["price"])

    def get_funding_rate(self, symbol: str) -> float:
        """Last funding rate from the premium index; 0 when unavailable."""
        try:
            payload = self._client.futures_mark_price(symbol=symbol)
            return float(payload.get("lastFundingRate") or 0.0)
        except _API_ERRORS as exc:
            self._logger.warning("funding_fetch_failed", symbol=symbol, error=str(exc))
            return 0.0

    def get_open_interest(self, symbol: str) -> float:
        """Open interest converted to USD at the current price; 0 when unavailable."""
        try:
            payload: dict[str, Any] = self._client.futures_open_interest(symbol=symbol)
            base_oi = float(payload.get("openInterest") or 0.0)
            return base_oi * self.get_market_price(symbol)
        except (ExchangeError, *_API_ERRORS) as exc:
            self._logger.warning("oi_fetch_failed", symbol=symbol, error=str(exc))
            return 0.0

    def get_symbol_info(self, symbol: str) -> dict[str, Any] | None:
        """Exchange-info entry for ``symbol`` (cached after the first fetch)."""
        key = symbol.upper()
        with self._cache_lock:
            if not self._symbol_cache:
                try:
                    info = self._client.futures_exchange_info()
                except _API_ERRORS as exc:
                    raise ExchangeError(f"exchange_info_failed: {exc}") from exc
                for item in info.get("symbols", []):
                    self._symbol_cache[str(item.get("symbol", "")).upper()] = item
            return self._symbol_cache.get(key)

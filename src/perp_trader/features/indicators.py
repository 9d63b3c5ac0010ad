"""Indicator computation for the 3m and 4h timeframes."""

from __future__ import annotations

import math
from typing import Any

import pandas as pd  # type: ignore[import-untyped]

from perp_trader.types import Trend

SEQUENCE_LENGTH = 50


def classify_trend(ema20: float | None, ema50: float | None) -> Trend:
    """Trend from the EMA20 / EMA50 crossover."""
    if not ema20 or not ema50:
        return "neutral"
    if ema20 > ema50:
        return "bullish"
    if ema20 < ema50:
        return "bearish"
    return "neutral"


def compute_3m_indicators(df_3m: pd.DataFrame) -> dict[str, Any]:
    """Short-term momentum snapshot: RSI7, EMA20, MACD and recent sequences."""
    if df_3m.empty:
        raise ValueError("input_ohlcv_empty")

    close = df_3m["close"].astype(float)
    volume = df_3m["volume"].astype(float)
    macd_line, signal_line, histogram = _macd(close)

    return {
        "rsi7": _last(_rsi(close, 7)),
        "ema20": _last(_ema(close, 20), min_len=20, n=len(close)),
        "macd": _last(macd_line, min_len=26, n=len(close)),
        "macd_signal": _last(signal_line, min_len=34, n=len(close)),
        "macd_histogram": _last(histogram, min_len=34, n=len(close)),
        "volume": float(volume.iloc[-1]),
        "price_sequence": [float(v) for v in close.iloc[-SEQUENCE_LENGTH:]],
        "volume_sequence": [float(v) for v in volume.iloc[-SEQUENCE_LENGTH:]],
    }


def compute_4h_indicators(df_4h: pd.DataFrame) -> dict[str, Any]:
    """Higher-timeframe context: RSI14, EMA20/50, ATR14 and trend."""
    if df_4h.empty:
        raise ValueError("input_ohlcv_empty")

    close = df_4h["close"].astype(float)
    ema20 = _last(_ema(close, 20), min_len=20, n=len(close))
    ema50 = _last(_ema(close, 50), min_len=50, n=len(close))

    return {
        "rsi14": _last(_rsi(close, 14)),
        "ema20": ema20,
        "ema50": ema50,
        "atr": _last(_atr(df_4h, period=14)),
        "trend": classify_trend(ema20, ema50),
        "price_sequence": [float(v) for v in close.iloc[-SEQUENCE_LENGTH:]],
    }


def _last(series: pd.Series, *, min_len: int = 0, n: int | None = None) -> float:
    """Latest finite value, 0.0 when the window is too short."""
    if n is not None and n < min_len:
        return 0.0
    clean = series.dropna()
    if clean.empty:
        return 0.0
    value = float(clean.iloc[-1])
    return value if math.isfinite(value) else 0.0


def _ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False).mean()


def _rsi(close: pd.Series, period: int) -> pd.Series:
    # Wilder smoothing
    delta = close.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    rs = avg_gain / avg_loss
    rsi = 100.0 - 100.0 / (1.0 + rs)
    # no losses in the window
    rsi = rsi.where(avg_loss != 0, 100.0)
    return rsi.where(avg_gain.notna())


def _macd(
    close: pd.Series,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> tuple[pd.Series, pd.Series, pd.Series]:
    macd_line = _ema(close, fast) - _ema(close, slow)
    signal_line = _ema(macd_line, signal)
    return macd_line, signal_line, macd_line - signal_line


def _atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    close = df["close"].astype(float)
    prev_close = close.shift(1)
    tr_components = pd.concat(
        [
            (high - low).abs(),
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    )
    tr = tr_components.max(axis=1)
    return tr.rolling(window=period, min_periods=period).mean()

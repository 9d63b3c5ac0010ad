from __future__ import annotations

import pandas as pd
import pytest
from conftest import build_klines

from perp_trader.features.indicators import (
    SEQUENCE_LENGTH,
    classify_trend,
    compute_3m_indicators,
    compute_4h_indicators,
)


def test_classify_trend() -> None:
    assert classify_trend(105.0, 100.0) == "bullish"
    assert classify_trend(95.0, 100.0) == "bearish"
    assert classify_trend(100.0, 100.0) == "neutral"
    assert classify_trend(0.0, 100.0) == "neutral"


def test_4h_indicators_on_uptrend() -> None:
    df_4h = build_klines(rows=120, start_price=40_000.0, drift=30.0, step_minutes=240)
    indicators = compute_4h_indicators(df_4h)

    assert indicators["trend"] == "bullish"
    assert indicators["ema20"] > indicators["ema50"] > 0
    assert indicators["atr"] > 0
    assert indicators["rsi14"] == pytest.approx(100.0)
    assert len(indicators["price_sequence"]) == SEQUENCE_LENGTH
    assert indicators["price_sequence"][-1] == pytest.approx(40_000.0 + 119 * 30.0)


def test_4h_indicators_on_downtrend() -> None:
    df_4h = build_klines(rows=120, start_price=40_000.0, drift=-30.0, step_minutes=240)
    indicators = compute_4h_indicators(df_4h)
    assert indicators["trend"] == "bearish"
    assert indicators["rsi14"] == pytest.approx(0.0)


def test_3m_indicators_fields() -> None:
    df_3m = build_klines(rows=100, start_price=100.0, drift=0.1)
    indicators = compute_3m_indicators(df_3m)

    assert set(indicators) == {
        "rsi7",
        "ema20",
        "macd",
        "macd_signal",
        "macd_histogram",
        "volume",
        "price_sequence",
        "volume_sequence",
    }
    assert indicators["macd"] > 0
    assert indicators["volume"] == 1000.0
    assert len(indicators["volume_sequence"]) == SEQUENCE_LENGTH


def test_short_history_reports_zero_for_long_windows() -> None:
    df_4h = build_klines(rows=30, start_price=100.0, drift=1.0, step_minutes=240)
    indicators = compute_4h_indicators(df_4h)
    assert indicators["ema50"] == 0.0
    assert indicators["ema20"] > 0
    assert indicators["trend"] == "neutral"
    assert len(indicators["price_sequence"]) == 30


def test_empty_frame_raises() -> None:
    with pytest.raises(ValueError):
        compute_3m_indicators(pd.DataFrame(columns=["close", "volume"]))

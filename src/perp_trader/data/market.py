"""Candidate pools and indicator-enriched market snapshots."""

from __future__ import annotations

import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor

from perp_trader.config import CoinSelectionMode, Settings
from perp_trader.exec.base import ExchangeError, MarketSource
from perp_trader.features.indicators import compute_3m_indicators, compute_4h_indicators
from perp_trader.types import MarketData, Position
from perp_trader.utils.logging import get_logger

DEFAULT_COIN_POOL: tuple[str, ...] = (
    "BTCUSDT",
    "ETHUSDT",
    "SOLUSDT",
    "BNBUSDT",
    "XRPUSDT",
    "ADAUSDT",
    "DOGEUSDT",
    "DOTUSDT",
    "AVAXUSDT",
    "LINKUSDT",
    "UNIUSDT",
    "ATOMUSDT",
    "LTCUSDT",
    "NEARUSDT",
    "APTUSDT",
    "ARBUSDT",
    "OPUSDT",
    "INJUSDT",
    "SUIUSDT",
)
ADVANCED_EXTRA_COINS: tuple[str, ...] = (
    "SEIUSDT",
    "TIAUSDT",
    "WLDUSDT",
    "RNDRUSDT",
    "PENDLEUSDT",
    "ARUSDT",
    "STXUSDT",
    "THETAUSDT",
    "GALAUSDT",
    "FETUSDT",
)

KLINE_LIMIT = 100
# 6 x 4h candles cover 24h
_CANDLES_PER_DAY_4H = 6


class MarketDataService:
    """Builds the market view the decision oracle sees."""

    def __init__(self, source: MarketSource, settings: Settings) -> None:
        self._source = source
        self._min_liquidity_usd = settings.min_liquidity_usd
        self._selection_mode = settings.coin_selection_mode
        self._workers = settings.market_data_workers
        self._logger = get_logger("perp_trader.data.market")

    def candidate_coins(self, mode: CoinSelectionMode | None = None) -> list[str]:
        """Symbol pool for the configured selection mode."""
        mode = mode or self._selection_mode
        if mode == CoinSelectionMode.ADVANCED:
            # dict keeps first-seen order while de-duplicating
            return list(dict.fromkeys([*DEFAULT_COIN_POOL, *ADVANCED_EXTRA_COINS]))
        return list(DEFAULT_COIN_POOL)

    def filter_by_liquidity(self, symbols: Iterable[str]) -> list[str]:
        """Keep symbols whose open interest (USD) meets the floor."""
        kept: list[str] = []
        for symbol in symbols:
            try:
                open_interest = self._source.get_open_interest(symbol)
            except ExchangeError as exc:
                self._logger.warning("liquidity_check_failed", symbol=symbol, error=str(exc))
                continue
            if open_interest >= self._min_liquidity_usd:
                kept.append(symbol)
            else:
                self._logger.debug(
                    "liquidity_filtered",
                    symbol=symbol,
                    open_interest=round(open_interest),
                    floor=self._min_liquidity_usd,
                )
        return kept

    def get_market_data(self, symbol: str) -> MarketData:
        """Fetch price, klines, OI and funding for one symbol and derive indicators."""
        current_price = self._source.get_market_price(symbol)
        df_3m = self._source.get_klines(symbol, "3m", KLINE_LIMIT)
        df_4h = self._source.get_klines(symbol, "4h", KLINE_LIMIT)
        if df_3m.empty or df_4h.empty:
            raise ValueError(f"no_klines: {symbol}")
        open_interest = self._source.get_open_interest(symbol)
        funding_rate = self._source.get_funding_rate(symbol)

        closes_4h = df_4h["close"].astype(float)
        if len(closes_4h) >= _CANDLES_PER_DAY_4H:
            price_24h_ago = float(closes_4h.iloc[-_CANDLES_PER_DAY_4H])
        else:
            price_24h_ago = float(closes_4h.iloc[0])
        change = current_price - price_24h_ago
        change_pct = change / price_24h_ago * 100 if price_24h_ago else 0.0
        volume_24h = float(df_4h["quote_asset_volume"].astype(float).iloc[-_CANDLES_PER_DAY_4H:].sum())

        return MarketData(
            symbol=symbol,
            current_price=current_price,
            price_change_24h=change,
            price_change_percent_24h=change_pct,
            volume_24h=volume_24h,
            timestamp=int(time.time() * 1000),
            open_interest=open_interest,
            funding_rate=funding_rate,
            indicators_3m=compute_3m_indicators(df_3m),
            indicators_4h=compute_4h_indicators(df_4h),
        )

    def batch_get_market_data(self, symbols: Sequence[str]) -> list[MarketData]:
        """Concurrent fetch; symbols that fail are skipped and logged."""
        if not symbols:
            return []
        results: list[MarketData] = []
        with ThreadPoolExecutor(max_workers=min(self._workers, len(symbols))) as pool:
            futures = [(symbol, pool.submit(self.get_market_data, symbol)) for symbol in symbols]
            for symbol, future in futures:
                try:
                    results.append(future.result())
                except Exception as exc:  # noqa: BLE001 - one bad symbol must not sink the batch.
                    self._logger.warning("market_data_failed", symbol=symbol, error=str(exc))
        self._logger.info("market_data_fetched", ok=len(results), requested=len(symbols))
        return results

    def get_market_data_for_positions(self, positions: Iterable[Position]) -> dict[str, MarketData]:
        symbols = list(dict.fromkeys(position.symbol for position in positions))
        return {data.symbol: data for data in self.batch_get_market_data(symbols)}

    def analyze_opportunities(self, market_data: Iterable[MarketData]) -> list[MarketData]:
        """Score each snapshot (0-100) and sort best first."""
        scored = list(market_data)
        for data in scored:
            data.opportunity_score = opportunity_score(data)
        scored.sort(key=lambda data: data.opportunity_score, reverse=True)
        return scored


def opportunity_score(data: MarketData) -> float:
    """Heuristic ranking of how actionable a symbol looks right now."""
    score = 0.0
    ind_3m = data.indicators_3m
    ind_4h = data.indicators_4h

    volumes = ind_3m.get("volume_sequence") or []
    if len(volumes) > 1:
        avg_volume = sum(volumes[:-1]) / (len(volumes) - 1)
        if volumes[-1] > avg_volume * 2:
            score += 20

    rsi7 = float(ind_3m.get("rsi7") or 0.0)
    rsi14 = float(ind_4h.get("rsi14") or 0.0)
    if rsi7 < 30 or rsi14 < 30 or rsi7 > 70 or rsi14 > 70:
        score += 15

    histogram = float(ind_3m.get("macd_histogram") or 0.0)
    trend = ind_4h.get("trend")
    if (trend == "bullish" and histogram > 0) or (trend == "bearish" and histogram < 0):
        score += 20

    atr = float(ind_4h.get("atr") or 0.0)
    if atr > 0 and data.current_price > 0:
        score += min(15.0, atr / data.current_price * 1000)

    if abs(data.price_change_percent_24h) > 5:
        score += 10

    return score

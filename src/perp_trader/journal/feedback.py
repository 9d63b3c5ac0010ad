"""Performance statistics derived from closed trades and the equity series."""

from __future__ import annotations

from collections import defaultdict
from typing import Sequence

import numpy as np

from perp_trader.journal.models import Trade
from perp_trader.types import CoinPerformance, HistoricalFeedback, Side

_TOP_COINS = 5
_RECENT_TRADES = 5
_PATTERN_MIN_TRADES = 3
_FAVOR_WIN_RATE = 70.0
_AVOID_WIN_RATE = 30.0
# Reported when there are wins and no losses at all.
PROFIT_FACTOR_CAP = 999.0


def compute_trade_pnl(
    side: Side | str,
    entry_price: float,
    exit_price: float,
    quantity: float,
    leverage: int,
) -> tuple[float, float]:
    """Return ``(pnl, pnl_percent)`` for a closed position.

    Leverage multiplies the percentage return of the position value, not the
    notional: ``pnl = qty * entry * price_change_pct * leverage``.
    """
    if entry_price <= 0:
        raise ValueError("entry_price_must_be_positive")
    position_value = quantity * entry_price
    if side == "LONG":
        price_change_pct = (exit_price - entry_price) / entry_price
    else:
        price_change_pct = (entry_price - exit_price) / entry_price
    pnl = position_value * price_change_pct * leverage
    pnl_percent = price_change_pct * leverage * 100
    return pnl, pnl_percent


def compute_historical_feedback(
    trades: Sequence[Trade],
    equity_values: Sequence[float],
) -> HistoricalFeedback:
    """Aggregate closed trades (newest first) into feedback for the oracle."""
    if not trades:
        return HistoricalFeedback.empty()

    pnls = [float(trade.pnl or 0.0) for trade in trades]
    wins = [pnl for pnl in pnls if pnl > 0]
    losses = [pnl for pnl in pnls if pnl < 0]

    total_trades = len(trades)
    total_profit = sum(wins)
    total_loss = abs(sum(losses))
    if total_loss > 0:
        profit_factor = total_profit / total_loss
    else:
        profit_factor = PROFIT_FACTOR_CAP if total_profit > 0 else 0.0

    coins = per_coin_stats(trades)
    best = coins[:_TOP_COINS]
    worst = list(reversed(coins[-_TOP_COINS:]))

    chronological = list(reversed(pnls))

    return HistoricalFeedback(
        total_trades=total_trades,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / total_trades * 100,
        average_profit=total_profit / len(wins) if wins else 0.0,
        average_loss=total_loss / len(losses) if losses else 0.0,
        profit_factor=float(profit_factor),
        sharpe_ratio=sharpe_ratio([float(trade.pnl_percent or 0.0) for trade in trades]),
        max_drawdown=max_drawdown_pct(equity_values),
        per_coin_stats=coins,
        best_coins=best,
        worst_coins=worst,
        recent_trades=[trade.to_dict() for trade in trades[:_RECENT_TRADES]],
        consecutive_wins=longest_streak(chronological, winning=True),
        consecutive_losses=longest_streak(chronological, winning=False),
        favor_symbols=[
            coin.symbol
            for coin in best
            if coin.win_rate > _FAVOR_WIN_RATE and coin.total_trades >= _PATTERN_MIN_TRADES
        ],
        avoid_symbols=[
            coin.symbol
            for coin in worst
            if coin.win_rate < _AVOID_WIN_RATE and coin.total_trades >= _PATTERN_MIN_TRADES
        ],
    )


def per_coin_stats(trades: Sequence[Trade]) -> list[CoinPerformance]:
    """Group by symbol, ranked by total realized pnl descending."""
    grouped: dict[str, list[float]] = defaultdict(list)
    for trade in trades:
        grouped[trade.symbol].append(float(trade.pnl or 0.0))

    stats = [
        CoinPerformance(
            symbol=symbol,
            total_trades=len(pnls),
            win_rate=sum(1 for pnl in pnls if pnl > 0) / len(pnls) * 100,
            average_pnl=sum(pnls) / len(pnls),
            total_pnl=sum(pnls),
            best_trade=max(pnls),
            worst_trade=min(pnls),
        )
        for symbol, pnls in grouped.items()
    ]
    stats.sort(key=lambda coin: coin.total_pnl, reverse=True)
    return stats


def sharpe_ratio(returns_pct: Sequence[float]) -> float:
    """Mean over population standard deviation of per-trade returns."""
    if not returns_pct:
        return 0.0
    returns = np.asarray(returns_pct, dtype=float)
    std = float(np.std(returns))
    if std == 0:
        return 0.0
    return float(np.mean(returns)) / std


def longest_streak(pnls_chronological: Sequence[float], *, winning: bool) -> int:
    """Longest run of strictly positive (or strictly negative) pnl."""
    longest = 0
    current = 0
    for pnl in pnls_chronological:
        matches = pnl > 0 if winning else pnl < 0
        if matches:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return longest


def max_drawdown_pct(values: Sequence[float]) -> float:
    """Largest peak-to-trough decline of the equity series, in percent."""
    if not values:
        return 0.0
    peak_value = values[0]
    max_dd = 0.0
    for value in values:
        if value > peak_value:
            peak_value = value
        drawdown = 0.0 if peak_value <= 0 else (peak_value - value) / peak_value * 100.0
        if drawdown > max_dd:
            max_dd = drawdown
    return float(max_dd)


def feedback_as_dict(feedback: HistoricalFeedback) -> dict[str, object]:
    """Convert feedback to a JSON-friendly dict."""
    return {
        "total_trades": feedback.total_trades,
        "winning_trades": feedback.winning_trades,
        "losing_trades": feedback.losing_trades,
        "win_rate": feedback.win_rate,
        "average_profit": feedback.average_profit,
        "average_loss": feedback.average_loss,
        "profit_factor": feedback.profit_factor,
        "sharpe_ratio": feedback.sharpe_ratio,
        "max_drawdown": feedback.max_drawdown,
        "best_coins": [_coin_row(coin) for coin in feedback.best_coins],
        "worst_coins": [_coin_row(coin) for coin in feedback.worst_coins],
        "recent_trades": feedback.recent_trades,
        "consecutive_wins": feedback.consecutive_wins,
        "consecutive_losses": feedback.consecutive_losses,
        "favor_symbols": feedback.favor_symbols,
        "avoid_symbols": feedback.avoid_symbols,
    }


def _coin_row(coin: CoinPerformance) -> dict[str, object]:
    return {
        "symbol": coin.symbol,
        "total_trades": coin.total_trades,
        "win_rate": coin.win_rate,
        "average_pnl": coin.average_pnl,
        "total_pnl": coin.total_pnl,
        "best_trade": coin.best_trade,
        "worst_trade": coin.worst_trade,
    }

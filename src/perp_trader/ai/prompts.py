"""Prompt builders for the decision oracle."""

from __future__ import annotations

from collections.abc import Sequence

from perp_trader.types import AccountInfo, HistoricalFeedback, MarketData, Position

_PROMPT_SEQUENCE = 30

SYSTEM_PROMPT = "\n".join(
    [
        "Role: you are a quantitative trader for USDT-margined perpetual futures.",
        "Your first priority is capital preservation; only act on clear setups.",
        "",
        "Actions: open_long, open_short, close_long, close_short, hold, wait.",
        "A LONG and a SHORT may be held on the same symbol, but never two of the same side.",
        "Every open must carry a stop_loss on the losing side of entry and a take_profit",
        "on the winning side, with reward:risk at or above the stated minimum.",
        "Trade with the 4h trend; use the 3m series for timing.",
        "",
        "Think briefly, then answer with one JSON array as described by the user.",
        "Return [] when nothing qualifies.",
    ]
)


def build_user_prompt(
    account: AccountInfo,
    market_data: Sequence[MarketData],
    feedback: HistoricalFeedback,
    positions: Sequence[Position],
    *,
    min_risk_reward: float,
    max_leverage_major: int,
    max_leverage_altcoin: int,
) -> str:
    """Assemble the per-cycle prompt."""
    lines: list[str] = ["# Trading decision", ""]
    lines.extend(_account_lines(account))
    lines.append("")
    lines.extend(_feedback_lines(feedback))
    lines.append("")

    if positions:
        lines.append("## Open positions")
        for pos in positions:
            protection = []
            if pos.stop_loss:
                protection.append(f"SL {pos.stop_loss:.4f}")
            if pos.take_profit:
                protection.append(f"TP {pos.take_profit:.4f}")
            suffix = f" ({', '.join(protection)})" if protection else ""
            lines.append(
                f"- {pos.symbol} {pos.side}: qty {pos.quantity:g}, entry {pos.entry_price:.4f}, "
                f"mark {pos.current_price:.4f}, P&L {pos.unrealized_pnl_percent:+.2f}%, "
                f"lev {pos.leverage}x{suffix}"
            )
        lines.append("")

    lines.append(f"## Candidates ({len(market_data)})")
    for data in market_data:
        lines.extend(_market_lines(data))
        lines.append("")

    lines.extend(
        [
            "## Output",
            f"- Minimum reward:risk {min_risk_reward:g}",
            f"- Max leverage {max_leverage_major}x for BTC/ETH, {max_leverage_altcoin}x for others",
            "- confidence is 0-100",
            "",
            "```json",
            "[",
            "  {",
            '    "action": "open_long | open_short | close_long | close_short | hold | wait",',
            '    "symbol": "BTCUSDT",',
            '    "position_size_usd": 500,',
            '    "leverage": 5,',
            '    "profit_target": 61500,',
            '    "stop_loss": 60800,',
            '    "invalidation_condition": "4h close below EMA20",',
            '    "confidence": 80,',
            '    "risk_usd": 25,',
            '    "reasoning": "short justification"',
            "  }",
            "]",
            "```",
        ]
    )
    return "\n".join(lines)


def _account_lines(account: AccountInfo) -> list[str]:
    daily = f" | Daily P&L ${account.daily_pnl:+.2f}" if account.daily_pnl is not None else ""
    return [
        "## Account",
        f"Equity ${account.total_equity:.2f} | Available ${account.available_balance:.2f} | "
        f"Margin used {account.margin_usage_percent * 100:.1f}% | "
        f"Positions {account.total_positions}{daily}",
    ]


def _feedback_lines(feedback: HistoricalFeedback) -> list[str]:
    if feedback.total_trades == 0:
        return ["## History", "No closed trades yet."]
    lines = [
        "## History",
        f"Last {feedback.total_trades} trades: win rate {feedback.win_rate:.1f}%, "
        f"profit factor {feedback.profit_factor:.2f}, sharpe {feedback.sharpe_ratio:.2f}, "
        f"max drawdown {feedback.max_drawdown:.1f}%",
        f"Avg win ${feedback.average_profit:.2f} | Avg loss ${feedback.average_loss:.2f} | "
        f"Longest streaks: {feedback.consecutive_wins} wins, {feedback.consecutive_losses} losses",
    ]
    if feedback.favor_symbols:
        lines.append(f"Favor: {', '.join(feedback.favor_symbols)}")
    if feedback.avoid_symbols:
        lines.append(f"Avoid: {', '.join(feedback.avoid_symbols)}")
    for trade in feedback.recent_trades:
        lines.append(
            f"- {trade.get('symbol')} {trade.get('side')}: pnl ${float(trade.get('pnl') or 0):+.2f} "
            f"({float(trade.get('pnl_percent') or 0):+.2f}%) {trade.get('close_reason') or ''}".rstrip()
        )
    return lines


def _market_lines(data: MarketData) -> list[str]:
    ind_3m = data.indicators_3m
    ind_4h = data.indicators_4h
    lines = [
        f"### {data.symbol} (score {data.opportunity_score:.1f})",
        f"Price {data.current_price:.4f} | 24h {data.price_change_percent_24h:+.2f}% | "
        f"Vol24h ${data.volume_24h / 1_000_000:.2f}M | OI ${(data.open_interest or 0) / 1_000_000:.2f}M | "
        f"Funding {(data.funding_rate or 0) * 100:.4f}%",
        f"3m: RSI7 {ind_3m.get('rsi7', 0):.1f}, EMA20 {ind_3m.get('ema20', 0):.4f}, "
        f"MACD {ind_3m.get('macd', 0):.4f}/{ind_3m.get('macd_signal', 0):.4f}/"
        f"{ind_3m.get('macd_histogram', 0):.4f}",
        f"4h: RSI14 {ind_4h.get('rsi14', 0):.1f}, EMA20 {ind_4h.get('ema20', 0):.4f}, "
        f"EMA50 {ind_4h.get('ema50', 0):.4f}, ATR {ind_4h.get('atr', 0):.4f}, "
        f"trend {ind_4h.get('trend', 'neutral')}",
    ]
    seq_3m = ind_3m.get("price_sequence") or []
    if seq_3m:
        tail = seq_3m[-_PROMPT_SEQUENCE:]
        lines.append(f"3m closes (last {len(tail)}): [{', '.join(f'{p:.4f}' for p in tail)}]")
    seq_4h = ind_4h.get("price_sequence") or []
    if seq_4h:
        tail = seq_4h[-_PROMPT_SEQUENCE:]
        lines.append(f"4h closes (last {len(tail)}): [{', '.join(f'{p:.4f}' for p in tail)}]")
        lines.append(f"Support {min(seq_4h):.4f} | Resistance {max(seq_4h):.4f}")
    return lines

"""Decision oracles: LLM-backed and deterministic."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from perp_trader.ai.llm_client import LLMAPIError, LLMClient
from perp_trader.ai.prompts import SYSTEM_PROMPT, build_user_prompt
from perp_trader.ai.schemas import TradingDecision, parse_oracle_response
from perp_trader.config import OracleProvider, Settings
from perp_trader.types import AccountInfo, HistoricalFeedback, MarketData, Position
from perp_trader.utils.logging import get_logger


@dataclass(slots=True)
class OracleResponse:
    """Decisions plus the text that produced them."""

    decisions: list[TradingDecision] = field(default_factory=list)
    chain_of_thought: str = ""
    prompt: str = ""
    error: str | None = None


class DecisionOracle(Protocol):
    """Turns the cycle's context into proposed actions."""

    def decide(
        self,
        account: AccountInfo,
        market_data: Sequence[MarketData],
        feedback: HistoricalFeedback,
        positions: Sequence[Position],
    ) -> OracleResponse:
        """Return proposed actions; implementations may raise on transport failure."""


class LLMDecisionOracle:
    """Production oracle backed by an OpenAI-compatible chat model."""

    def __init__(self, settings: Settings, client: LLMClient | None = None) -> None:
        self._settings = settings
        self._client = client or LLMClient(settings)
        self._logger = get_logger("perp_trader.ai.provider")

    def decide(
        self,
        account: AccountInfo,
        market_data: Sequence[MarketData],
        feedback: HistoricalFeedback,
        positions: Sequence[Position],
    ) -> OracleResponse:
        prompt = build_user_prompt(
            account,
            market_data,
            feedback,
            positions,
            min_risk_reward=self._settings.min_risk_reward_ratio,
            max_leverage_major=self._settings.max_leverage_major,
            max_leverage_altcoin=self._settings.max_leverage_altcoin,
        )
        try:
            text = self._client.complete(SYSTEM_PROMPT, prompt)
        except LLMAPIError as exc:
            return OracleResponse(
                decisions=[TradingDecision.wait(f"oracle error: {exc}")],
                chain_of_thought=f"oracle error: {exc}",
                prompt=prompt,
                error=str(exc),
            )

        parsed = parse_oracle_response(text)
        if parsed.error:
            self._logger.warning("oracle_parse_failed", error=parsed.error)
        for reason in parsed.dropped:
            self._logger.warning("oracle_decision_dropped", reason=reason)
        return OracleResponse(
            decisions=parsed.decisions,
            chain_of_thought=parsed.chain_of_thought,
            prompt=prompt,
            error=parsed.error,
        )


class HeuristicDecisionOracle:
    """Deterministic offline oracle.

    Closes positions whose unrealized pnl percent is at or beyond the loss or
    profit band; otherwise waits. Never opens.
    """

    def __init__(self, *, stop_loss_pct: float = -5.0, take_profit_pct: float = 10.0) -> None:
        self._stop_loss_pct = stop_loss_pct
        self._take_profit_pct = take_profit_pct

    def decide(
        self,
        account: AccountInfo,
        market_data: Sequence[MarketData],
        feedback: HistoricalFeedback,
        positions: Sequence[Position],
    ) -> OracleResponse:
        decisions: list[TradingDecision] = []
        for pos in positions:
            pnl_pct = pos.unrealized_pnl_percent
            if pnl_pct <= self._stop_loss_pct:
                reason = f"loss band hit ({pnl_pct:.2f}% <= {self._stop_loss_pct:.2f}%)"
            elif pnl_pct >= self._take_profit_pct:
                reason = f"profit band hit ({pnl_pct:.2f}% >= {self._take_profit_pct:.2f}%)"
            else:
                continue
            decisions.append(
                TradingDecision(
                    action="close_long" if pos.side == "LONG" else "close_short",
                    symbol=pos.symbol,
                    confidence=1.0,
                    reasoning=reason,
                )
            )
        if not decisions:
            decisions.append(TradingDecision.wait("no position outside its bands"))
        return OracleResponse(decisions=decisions, chain_of_thought="heuristic bands")


def build_oracle(settings: Settings) -> DecisionOracle:
    """Oracle for the configured provider."""
    if settings.oracle_provider == OracleProvider.HEURISTIC:
        return HeuristicDecisionOracle()
    return LLMDecisionOracle(settings)

"""Risk admission gate for proposed open and close actions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from perp_trader.config import Settings
from perp_trader.types import (
    AccountInfo,
    PositionLimit,
    RiskCheckResult,
    Side,
    StopLossCheck,
)

if TYPE_CHECKING:
    from perp_trader.ai.schemas import TradingDecision

# Share of the requested quantity offered when the margin cap is hit.
MARGIN_FALLBACK_FRACTION = 0.3


@dataclass(slots=True, frozen=True)
class RiskLimits:
    """Immutable limit set consumed by the gate."""

    max_positions: int = 5
    max_leverage_major: int = 50
    max_leverage_altcoin: int = 20
    max_position_size_major_multiplier: float = 10.0
    max_position_size_altcoin_multiplier: float = 1.5
    max_margin_usage: float = 0.9
    min_risk_reward_ratio: float = 2.0
    major_symbols: frozenset[str] = frozenset({"BTCUSDT", "ETHUSDT", "BTCUSD", "ETHUSD"})

    @classmethod
    def from_settings(cls, settings: Settings) -> RiskLimits:
        return cls(
            max_positions=settings.max_positions,
            max_leverage_major=settings.max_leverage_major,
            max_leverage_altcoin=settings.max_leverage_altcoin,
            max_position_size_major_multiplier=settings.max_position_size_major_multiplier,
            max_position_size_altcoin_multiplier=settings.max_position_size_altcoin_multiplier,
            max_margin_usage=settings.max_margin_usage,
            min_risk_reward_ratio=settings.min_risk_reward_ratio,
            major_symbols=settings.major_symbol_set,
        )


class RiskGate:
    """Stateless admission checks.

    Every method is a pure function of its arguments and the limits: no I/O and
    no mutation. For opens the checks run in a fixed order and the first
    failure wins.
    """

    def __init__(self, limits: RiskLimits) -> None:
        self._limits = limits

    @property
    def limits(self) -> RiskLimits:
        return self._limits

    def is_major(self, symbol: str) -> bool:
        return symbol.upper() in self._limits.major_symbols

    def max_leverage_for(self, symbol: str) -> int:
        if self.is_major(symbol):
            return self._limits.max_leverage_major
        return self._limits.max_leverage_altcoin

    def size_multiplier_for(self, symbol: str) -> float:
        if self.is_major(symbol):
            return self._limits.max_position_size_major_multiplier
        return self._limits.max_position_size_altcoin_multiplier

    def check_open(
        self,
        symbol: str,
        side: Side,
        quantity: float,
        leverage: int,
        price: float,
        account: AccountInfo,
    ) -> RiskCheckResult:
        """Admit or reject a new position."""
        if quantity <= 0 or price <= 0:
            return RiskCheckResult(allowed=False, reason="quantity_and_price_must_be_positive")

        notional = quantity * price

        if account.find_position(symbol, side) is not None:
            return RiskCheckResult(
                allowed=False,
                reason=f"anti_stacking: {side} position already open on {symbol}",
            )

        max_leverage = self.max_leverage_for(symbol)
        if leverage > max_leverage:
            asset_class = "major" if self.is_major(symbol) else "altcoin"
            return RiskCheckResult(
                allowed=False,
                reason=f"leverage {leverage}x exceeds {max_leverage}x for {asset_class}",
                adjusted_leverage=max_leverage,
            )

        equity = account.total_equity
        if equity <= 0:
            return RiskCheckResult(allowed=False, reason="non_positive_equity")

        multiplier = self.size_multiplier_for(symbol)
        max_notional = equity * multiplier
        if notional > max_notional:
            return RiskCheckResult(
                allowed=False,
                reason=(
                    f"position value ${notional:.2f} exceeds ${max_notional:.2f} "
                    f"({multiplier}x equity)"
                ),
                adjusted_quantity=max_notional / price,
            )

        if account.total_positions >= self._limits.max_positions:
            return RiskCheckResult(
                allowed=False,
                reason=f"max_positions reached ({self._limits.max_positions})",
            )

        cap = self._limits.max_margin_usage
        projected_usage = (account.total_margin_used + notional) / equity
        if projected_usage > cap:
            reason = f"projected margin usage {projected_usage * 100:.1f}% exceeds {cap * 100:.1f}%"
            room = max(0.0, cap * equity - account.total_margin_used)
            fallback = min(quantity * MARGIN_FALLBACK_FRACTION, room / price)
            if 0 < fallback < quantity:
                return RiskCheckResult(
                    allowed=False,
                    reason=f"{reason}; fallback quantity {fallback:.6f}",
                    adjusted_quantity=fallback,
                )
            return RiskCheckResult(allowed=False, reason=reason)

        # cross margin: required margin is taken as the notional
        if notional > account.available_balance:
            return RiskCheckResult(
                allowed=False,
                reason=(
                    f"insufficient balance: required ${notional:.2f}, "
                    f"available ${account.available_balance:.2f}"
                ),
            )

        return RiskCheckResult(allowed=True)

    def check_close(self, symbol: str, side: Side, account: AccountInfo) -> RiskCheckResult:
        """A close is admitted iff the position exists."""
        if account.find_position(symbol, side) is None:
            return RiskCheckResult(allowed=False, reason=f"no {side} position found for {symbol}")
        return RiskCheckResult(allowed=True)

    def check(
        self,
        decision: TradingDecision,
        account: AccountInfo,
        price: float | None = None,
        quantity: float | None = None,
    ) -> RiskCheckResult:
        """Dispatch a decision to the matching check."""
        side = decision.side
        if side is None:
            return RiskCheckResult(allowed=False, reason=f"non_actionable: {decision.action}")
        if decision.is_close:
            return self.check_close(decision.symbol, side, account)

        qty = quantity if quantity is not None else decision.quantity
        if qty is None or price is None:
            return RiskCheckResult(allowed=False, reason="missing_quantity_or_price")
        return self.check_open(
            decision.symbol,
            side,
            qty,
            decision.leverage or 1,
            price,
            account,
        )

    def validate_stop_loss_take_profit(
        self,
        side: Side,
        entry_price: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> StopLossCheck:
        """Check protection levels sit on the correct side of entry."""
        if not stop_loss and not take_profit:
            return StopLossCheck(valid=True)

        if stop_loss:
            if side == "LONG" and stop_loss >= entry_price:
                return StopLossCheck(valid=False, reason="stop_loss must be below entry for LONG")
            if side == "SHORT" and stop_loss <= entry_price:
                return StopLossCheck(valid=False, reason="stop_loss must be above entry for SHORT")

        if take_profit:
            if side == "LONG" and take_profit <= entry_price:
                return StopLossCheck(valid=False, reason="take_profit must be above entry for LONG")
            if side == "SHORT" and take_profit >= entry_price:
                return StopLossCheck(valid=False, reason="take_profit must be below entry for SHORT")

        if stop_loss and take_profit:
            risk = abs(entry_price - stop_loss)
            reward = abs(take_profit - entry_price)
            ratio = reward / risk
            if ratio < self._limits.min_risk_reward_ratio:
                return StopLossCheck(
                    valid=False,
                    reason=(
                        f"risk_reward {ratio:.2f} below minimum "
                        f"{self._limits.min_risk_reward_ratio}"
                    ),
                    risk_reward_ratio=ratio,
                )
            return StopLossCheck(valid=True, risk_reward_ratio=ratio)

        return StopLossCheck(valid=True)

    def get_limit(self, symbol: str, account: AccountInfo) -> PositionLimit:
        """Sizing envelope for ``symbol`` given current exposure."""
        max_value = account.total_equity * self.size_multiplier_for(symbol)
        exposure = sum(
            position.quantity * position.current_price * position.leverage
            for position in account.positions
            if position.symbol.upper() == symbol.upper()
        )
        return PositionLimit(
            max_position_value=max_value,
            max_leverage=self.max_leverage_for(symbol),
            current_exposure=exposure,
            available_room=max(0.0, max_value - exposure),
        )

    def recommended_position_size(
        self,
        symbol: str,
        price: float,
        leverage: int,
        account: AccountInfo,
        risk_pct: float = 2.0,
    ) -> float:
        """Quantity that risks ``risk_pct`` of equity, capped at the room left."""
        if price <= 0:
            return 0.0
        limit = self.get_limit(symbol, account)
        position_value = account.total_equity * (risk_pct / 100.0) * leverage
        return min(position_value, limit.available_room) / price

    def risk_summary(self, account: AccountInfo) -> str:
        """One-line LOW / MEDIUM / HIGH assessment."""
        margin_pct = account.margin_usage_percent * 100
        positions_pct = account.total_positions / self._limits.max_positions * 100
        if margin_pct > 70 or positions_pct > 80:
            level = "HIGH"
        elif margin_pct > 50 or positions_pct > 60:
            level = "MEDIUM"
        else:
            level = "LOW"
        return (
            f"Risk Level: {level} | Margin: {margin_pct:.1f}%/"
            f"{self._limits.max_margin_usage * 100:.1f}% | "
            f"Positions: {account.total_positions}/{self._limits.max_positions}"
        )

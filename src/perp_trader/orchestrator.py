"""Decision cycle orchestrator."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict
from time import perf_counter
from typing import Any

import structlog

from perp_trader.ai.provider import DecisionOracle, OracleResponse
from perp_trader.ai.schemas import TradingDecision
from perp_trader.config import Settings
from perp_trader.data.market import MarketDataService
from perp_trader.exec.base import ExchangeError, ExchangeProvider
from perp_trader.exec.sizing import floor_order_size, normalize_order_size, quantity_from_notional
from perp_trader.journal.feedback import feedback_as_dict
from perp_trader.journal.ledger import LedgerError, PerformanceLedger
from perp_trader.journal.store import JournalStore
from perp_trader.risk.gate import RiskGate
from perp_trader.types import (
    AccountInfo,
    CycleResult,
    HistoricalFeedback,
    MarketData,
    Order,
    Position,
    Side,
)
from perp_trader.utils.logging import get_logger, log_risk_event

_RECENT_ACTIONS_SHOWN = 20
_CYCLE_HISTORY_SHOWN = 50
_CYCLE_HISTORY_KEPT = 100


def _now_ms() -> int:
    return int(time.time() * 1000)


class Orchestrator:
    """Runs the seven-phase decision cycle for one trader.

    Collaborators are injected; the orchestrator owns only its timer thread,
    the cycle counter and the status ring buffers. Cycles never overlap: the
    worker waits the interval only after a cycle has returned, and
    ``run_cycle`` itself is serialized.
    """

    def __init__(
        self,
        *,
        exchange: ExchangeProvider,
        oracle: DecisionOracle,
        ledger: PerformanceLedger,
        gate: RiskGate,
        market: MarketDataService,
        journal: JournalStore,
        settings: Settings,
        dry_run: bool = False,
        interval_sec: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._exchange = exchange
        self._oracle = oracle
        self._ledger = ledger
        self._gate = gate
        self._market = market
        self._journal = journal
        self._settings = settings
        self._dry_run = dry_run
        self._interval_sec = float(interval_sec or settings.decision_interval_sec)
        self._sleep = sleep
        self._logger = get_logger("perp_trader.orchestrator")

        self._trader_id = settings.trader_id
        self._cycle_number = 0
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_account: AccountInfo | None = None
        self._recent_actions: deque[dict[str, Any]] = deque(maxlen=_CYCLE_HISTORY_KEPT)
        self._cycle_history: deque[dict[str, Any]] = deque(maxlen=_CYCLE_HISTORY_KEPT)
        self._orders_this_cycle = 0

    # ---- lifecycle ----

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        """Run a cycle now, then one per interval, on a worker thread."""
        if self._thread is not None and self._thread.is_alive():
            self._logger.warning("orchestrator_already_running", trader_id=self._trader_id)
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"orchestrator-{self._trader_id}",
            daemon=True,
        )
        self._thread.start()
        self._logger.info(
            "orchestrator_started",
            trader_id=self._trader_id,
            interval_sec=self._interval_sec,
            dry_run=self._dry_run,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Stop scheduling; a cycle past phase 2 finishes before the thread exits."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._logger.info("orchestrator_stopped", trader_id=self._trader_id, cycles=self._cycle_number)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._run_cycle(abandonable=True)
            if self._stop_event.wait(self._interval_sec):
                break

    # ---- cycle ----

    def run_cycle(self) -> CycleResult:
        """Run exactly one cycle synchronously."""
        return self._run_cycle(abandonable=False)

    def _run_cycle(self, *, abandonable: bool) -> CycleResult:
        with self._cycle_lock:
            self._cycle_number += 1
            cycle = self._cycle_number
            started = perf_counter()
            result = CycleResult(status="unknown", cycle_number=cycle)
            with structlog.contextvars.bound_contextvars(trader_id=self._trader_id, cycle=cycle):
                self._logger.info("cycle_start", dry_run=self._dry_run)
                try:
                    self._run_phases(result, abandonable=abandonable)
                except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
                    self._logger.exception("cycle_failed", error=str(exc))
                    result.status = "failed"
                    result.warnings.append(f"cycle_failed: {exc}")
                result.elapsed_ms = (perf_counter() - started) * 1000
                self._logger.info(
                    "cycle_end",
                    status=result.status,
                    elapsed_ms=round(result.elapsed_ms, 2),
                    decisions=len(result.decisions),
                    orders=len(result.orders),
                )
            return result

    def _run_phases(self, result: CycleResult, *, abandonable: bool) -> None:
        cycle_ts = _now_ms()
        self._orders_this_cycle = 0

        # 1. historical feedback
        feedback = self._load_feedback(result)
        if abandonable and self._stop_event.is_set():
            result.status = "stopped"
            return

        # 2. account
        try:
            account = self._exchange.get_account_info()
        except Exception as exc:  # noqa: BLE001 - any collaborator failure aborts this cycle only.
            self._logger.error("account_unavailable", error=str(exc))
            result.status = "account_unavailable"
            result.warnings.append(f"account_unavailable: {exc}")
            return
        self._last_account = account
        self._logger.info(
            "account_snapshot",
            equity=round(account.total_equity, 2),
            available=round(account.available_balance, 2),
            positions=account.total_positions,
            risk=self._gate.risk_summary(account),
        )
        if abandonable and self._stop_event.is_set():
            result.status = "stopped"
            return

        # 3. open positions + take-profit safety net
        position_data = self._position_market_data(account, result)
        if self._take_profit_safety_net(account, position_data, result):
            account = self._refresh_account(account, result)

        # 4. candidates
        ranked = self._candidate_market_data(position_data, result)
        all_market = [*position_data.values(), *ranked]

        # 5. oracle
        response = self._consult_oracle(account, all_market, feedback, result)
        result.decisions.extend(decision.model_dump() for decision in response.decisions)

        # 6. execution: closes then opens
        actionable = [decision for decision in response.decisions if decision.is_actionable]
        for decision in (d for d in actionable if d.is_close):
            result.orders.append(self._handle_close_decision(decision, account))
        for decision in (d for d in actionable if d.is_open):
            result.orders.append(self._execute_open(decision))

        # 7. log + equity snapshot
        final_account = self._refresh_account(account, result)
        self._record_cycle(result, cycle_ts, final_account, all_market, feedback, response)
        result.status = "completed"

    # ---- phase helpers ----

    def _load_feedback(self, result: CycleResult) -> HistoricalFeedback:
        try:
            feedback = self._ledger.get_historical_feedback(self._settings.historical_trades_count)
        except LedgerError as exc:
            self._logger.warning("feedback_unavailable", error=str(exc))
            result.warnings.append("feedback_unavailable")
            return HistoricalFeedback.empty()
        if feedback.total_trades:
            self._logger.info(
                "feedback_loaded",
                trades=feedback.total_trades,
                win_rate=round(feedback.win_rate, 1),
                profit_factor=round(feedback.profit_factor, 2),
            )
        return feedback

    def _refresh_account(self, fallback: AccountInfo, result: CycleResult) -> AccountInfo:
        try:
            account = self._exchange.get_account_info()
        except Exception as exc:  # noqa: BLE001 - keep the previous snapshot.
            self._logger.warning("account_refresh_failed", error=str(exc))
            result.warnings.append("account_refresh_failed")
            return fallback
        self._last_account = account
        return account

    def _position_market_data(self, account: AccountInfo, result: CycleResult) -> dict[str, MarketData]:
        if not account.positions:
            return {}
        try:
            return self._market.get_market_data_for_positions(account.positions)
        except Exception as exc:  # noqa: BLE001 - degrade to no position data.
            self._logger.warning("position_market_data_failed", error=str(exc))
            result.warnings.append("position_market_data_failed")
            return {}

    def _take_profit_safety_net(
        self,
        account: AccountInfo,
        position_data: dict[str, MarketData],
        result: CycleResult,
    ) -> bool:
        """Close positions whose recorded take-profit was crossed with no exchange TP order."""
        if not account.positions:
            return False
        try:
            open_orders = self._exchange.get_open_orders()
        except Exception as exc:  # noqa: BLE001 - cannot tell whether a TP order exists.
            self._logger.warning("open_orders_unavailable", error=str(exc))
            result.warnings.append("take_profit_check_skipped")
            return False

        closed_any = False
        for position in list(account.positions):
            take_profit = self._recorded_take_profit(position)
            if not take_profit:
                continue
            data = position_data.get(position.symbol)
            price = data.current_price if data is not None else position.current_price
            crossed = price >= take_profit if position.side == "LONG" else price <= take_profit
            if not crossed or _has_take_profit_order(open_orders, position):
                continue
            self._logger.warning(
                "take_profit_crossed",
                symbol=position.symbol,
                side=position.side,
                price=price,
                take_profit=take_profit,
            )
            outcome = self._execute_close(
                position.symbol,
                position.side,
                account,
                reason="take_profit",
                source="take_profit_safety_net",
            )
            result.orders.append(outcome)
            closed_any = closed_any or outcome["status"] == "executed"
        return closed_any

    def _recorded_take_profit(self, position: Position) -> float | None:
        try:
            trade = self._ledger.get_open_trade(position.symbol, position.side)
        except LedgerError as exc:
            self._logger.warning("ledger_lookup_failed", symbol=position.symbol, error=str(exc))
            trade = None
        if trade is not None and trade.take_profit:
            return trade.take_profit
        return position.take_profit

    def _candidate_market_data(
        self,
        position_data: dict[str, MarketData],
        result: CycleResult,
    ) -> list[MarketData]:
        try:
            candidates = [
                symbol for symbol in self._market.candidate_coins() if symbol not in position_data
            ]
            liquid = self._market.filter_by_liquidity(candidates)
            fetched = self._market.batch_get_market_data(liquid)
            ranked = self._market.analyze_opportunities(fetched)
        except Exception as exc:  # noqa: BLE001 - proceed with position data only.
            self._logger.warning("candidate_scan_failed", error=str(exc))
            result.warnings.append("candidate_scan_failed")
            return []
        self._logger.info(
            "candidates_ranked",
            pool=len(candidates),
            liquid=len(liquid),
            fetched=len(ranked),
        )
        return ranked

    def _consult_oracle(
        self,
        account: AccountInfo,
        market_data: list[MarketData],
        feedback: HistoricalFeedback,
        result: CycleResult,
    ) -> OracleResponse:
        try:
            response = self._oracle.decide(account, market_data, feedback, account.positions)
        except Exception as exc:  # noqa: BLE001 - oracle failure becomes a wait.
            self._logger.warning("oracle_failed", error=str(exc))
            response = OracleResponse(
                decisions=[TradingDecision.wait(f"oracle error: {exc}")],
                chain_of_thought=f"oracle error: {exc}",
                error=str(exc),
            )
        if response.error:
            result.warnings.append(f"oracle_error: {response.error}")
        for decision in response.decisions:
            self._logger.info(
                "oracle_decision",
                action=decision.action,
                symbol=decision.symbol,
                confidence=decision.confidence,
            )
            self._recent_actions.append(
                {
                    "timestamp": _now_ms(),
                    "action": decision.action,
                    "symbol": decision.symbol,
                    "details": decision.reasoning,
                }
            )
        return response

    def _below_confidence_floor(self, decision: TradingDecision) -> bool:
        floor = (
            self._settings.min_close_confidence
            if decision.is_close
            else self._settings.min_open_confidence
        )
        if floor <= 0:
            return False
        return decision.confidence is None or decision.confidence < floor

    def _handle_close_decision(self, decision: TradingDecision, account: AccountInfo) -> dict[str, Any]:
        symbol, side = decision.symbol, decision.side
        if symbol is None or side is None:
            return _outcome(decision.action, symbol or "", side, "rejected", reason="close_requires_symbol_and_side")
        if self._below_confidence_floor(decision):
            return _outcome(decision.action, symbol, side, "skipped", reason="below_confidence_floor")
        return self._execute_close(
            symbol,
            side,
            account,
            reason="ai_decision",
            source="oracle",
            quantity=decision.quantity,
        )

    def _execute_close(
        self,
        symbol: str,
        side: Side,
        account: AccountInfo,
        *,
        reason: str,
        source: str,
        quantity: float | None = None,
    ) -> dict[str, Any]:
        action = "close_long" if side == "LONG" else "close_short"
        check = self._gate.check_close(symbol, side, account)
        if not check.allowed:
            log_risk_event(self._logger, event_type="close_rejected", action=action, symbol=symbol, reason=check.reason)
            return _outcome(action, symbol, side, "rejected", reason=check.reason, source=source)
        if self._dry_run:
            return _outcome(action, symbol, side, "dry_run", reason=reason, source=source)

        self._pause_between_orders()
        try:
            execution = self._exchange.close_position(symbol, side, quantity)
        except Exception as exc:  # noqa: BLE001 - skip this decision only.
            self._logger.error("close_failed", symbol=symbol, side=side, error=str(exc))
            return _outcome(action, symbol, side, "failed", reason=str(exc), source=source)
        if not execution.success:
            self._logger.error("close_failed", symbol=symbol, side=side, error=execution.error)
            return _outcome(action, symbol, side, "failed", reason=execution.error, source=source)

        position = account.find_position(symbol, side)
        exit_price = execution.executed_price or (position.current_price if position else 0.0)
        try:
            self._ledger.record_close(
                symbol,
                side,
                exit_price,
                reason,
                close_order_id=execution.order_id,
            )
        except (LedgerError, ValueError) as exc:
            self._logger.warning("ledger_close_failed", symbol=symbol, side=side, error=str(exc))
        return _outcome(
            action,
            symbol,
            side,
            "executed",
            reason=reason,
            source=source,
            order_id=execution.order_id,
            price=exit_price,
            quantity=execution.executed_quantity,
        )

    def _execute_open(self, decision: TradingDecision) -> dict[str, Any]:
        symbol = decision.symbol
        side = decision.side
        action = decision.action
        if symbol is None or side is None:
            return _outcome(action, symbol or "", side, "rejected", reason="open_requires_symbol_and_side")

        if self._below_confidence_floor(decision):
            return _outcome(action, symbol, side, "skipped", reason="below_confidence_floor")

        # margin checks must see post-close / post-open state
        try:
            account = self._exchange.get_account_info()
        except Exception as exc:  # noqa: BLE001 - reject this decision only.
            return _outcome(action, symbol, side, "rejected", reason=f"account_unavailable: {exc}")
        self._last_account = account

        try:
            price = self._exchange.get_market_price(symbol)
        except Exception as exc:  # noqa: BLE001 - reject this decision only.
            return _outcome(action, symbol, side, "rejected", reason=f"price_unavailable: {exc}")
        if price <= 0:
            return _outcome(action, symbol, side, "rejected", reason="price_unavailable")

        if decision.position_size_usd is not None:
            quantity = quantity_from_notional(decision.position_size_usd, price)
        elif decision.quantity is not None:
            quantity = decision.quantity
        else:
            return _outcome(action, symbol, side, "rejected", reason="open_requires_position_size_usd_or_quantity")

        try:
            symbol_info = self._exchange.get_symbol_info(symbol)
        except ExchangeError as exc:
            self._logger.warning("symbol_info_unavailable", symbol=symbol, error=str(exc))
            symbol_info = None
        size = normalize_order_size(symbol_info, quantity, price)
        leverage = decision.leverage or self._settings.default_leverage

        check = self._gate.check_open(symbol, side, size.quantity, leverage, price, account)
        if not check.allowed and check.adjusted_quantity:
            # the offered size is a ceiling: floor it onto the grid
            retry_size = floor_order_size(symbol_info, check.adjusted_quantity, price)
            if retry_size is None:
                reason = f"{check.reason}; adjusted quantity below exchange minimum"
                log_risk_event(self._logger, event_type="open_rejected", action=action, symbol=symbol, reason=reason)
                return _outcome(action, symbol, side, "rejected", reason=reason)
            self._logger.info(
                "open_retry_adjusted",
                symbol=symbol,
                requested=size.quantity,
                adjusted=retry_size.quantity,
                reason=check.reason,
            )
            retry = self._gate.check_open(symbol, side, retry_size.quantity, leverage, price, account)
            if retry.allowed:
                check, size = retry, retry_size
            else:
                check = retry
        if not check.allowed:
            log_risk_event(self._logger, event_type="open_rejected", action=action, symbol=symbol, reason=check.reason)
            return _outcome(action, symbol, side, "rejected", reason=check.reason)

        protection = self._gate.validate_stop_loss_take_profit(
            side,
            price,
            decision.stop_loss,
            decision.take_profit,
        )
        if not protection.valid:
            log_risk_event(
                self._logger,
                event_type="protection_invalid",
                action=action,
                symbol=symbol,
                reason=protection.reason,
            )
            return _outcome(action, symbol, side, "rejected", reason=protection.reason)

        if self._dry_run:
            return _outcome(action, symbol, side, "dry_run", price=price, quantity=size.quantity, leverage=leverage)

        self._pause_between_orders()
        try:
            execution = self._exchange.open_position(
                symbol,
                side,
                size.quantity,
                leverage,
                decision.stop_loss,
                decision.take_profit,
            )
        except Exception as exc:  # noqa: BLE001 - skip this decision only.
            self._logger.error("open_failed", symbol=symbol, side=side, error=str(exc))
            return _outcome(action, symbol, side, "failed", reason=str(exc))
        if not execution.success:
            self._logger.error("open_failed", symbol=symbol, side=side, error=execution.error)
            return _outcome(action, symbol, side, "failed", reason=execution.error)

        executed_price = execution.executed_price or price
        executed_qty = execution.executed_quantity or size.quantity
        try:
            self._ledger.record_open(
                symbol=symbol,
                side=side,
                entry_price=executed_price,
                quantity=executed_qty,
                leverage=leverage,
                open_order_id=execution.order_id,
                stop_loss=decision.stop_loss,
                take_profit=decision.take_profit,
            )
        except LedgerError as exc:
            self._logger.warning("ledger_open_failed", symbol=symbol, side=side, error=str(exc))
        return _outcome(
            action,
            symbol,
            side,
            "executed",
            order_id=execution.order_id,
            price=executed_price,
            quantity=executed_qty,
            leverage=leverage,
        )

    def _pause_between_orders(self) -> None:
        if self._orders_this_cycle > 0 and self._settings.order_delay_ms > 0:
            self._sleep(self._settings.order_delay_ms / 1000.0)
        self._orders_this_cycle += 1

    def _record_cycle(
        self,
        result: CycleResult,
        cycle_ts: int,
        account: AccountInfo,
        market_data: list[MarketData],
        feedback: HistoricalFeedback,
        response: OracleResponse,
    ) -> None:
        daily_pnl, daily_pnl_pct = self._daily_pnl(account.total_equity)
        account.daily_pnl = daily_pnl

        if not self._dry_run:
            try:
                self._ledger.record_equity_snapshot(account.total_equity, daily_pnl, daily_pnl_pct)
            except LedgerError as exc:
                self._logger.warning("equity_snapshot_failed", error=str(exc))
                result.warnings.append("equity_snapshot_failed")

        log = {
            "timestamp": cycle_ts,
            "trader_id": self._trader_id,
            "cycle_number": result.cycle_number,
            "dry_run": self._dry_run,
            "account_snapshot": account.to_dict(),
            "market_snapshot": [asdict(data) for data in market_data],
            "historical_feedback": feedback_as_dict(feedback),
            "chain_of_thought": response.chain_of_thought,
            "prompt": response.prompt,
            "decisions": result.decisions,
            "execution_results": result.orders,
            "warnings": result.warnings,
        }
        try:
            path = self._journal.write_cycle(log)
            self._logger.info("cycle_log_written", path=str(path))
        except Exception as exc:  # noqa: BLE001 - a lost journal entry must not fail the cycle.
            self._logger.warning("cycle_log_failed", error=str(exc))
            result.warnings.append("cycle_log_failed")

        self._cycle_history.append(
            {
                "cycle": result.cycle_number,
                "equity": account.total_equity,
                "decisions": len(result.decisions),
                "timestamp": _now_ms(),
            }
        )

    def _daily_pnl(self, equity: float) -> tuple[float, float]:
        try:
            start_equity = self._ledger.day_start_equity()
        except LedgerError as exc:
            self._logger.warning("day_start_equity_unavailable", error=str(exc))
            return 0.0, 0.0
        if not start_equity:
            return 0.0, 0.0
        pnl = equity - start_equity
        return pnl, pnl / start_equity * 100

    # ---- status ----

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "cycle_number": self._cycle_number,
            "trader_id": self._trader_id,
            "dry_run": self._dry_run,
            "last_account": self._last_account.to_dict() if self._last_account else None,
            "recent_actions": list(self._recent_actions)[-_RECENT_ACTIONS_SHOWN:],
            "cycle_history": list(self._cycle_history)[-_CYCLE_HISTORY_SHOWN:],
        }


def _has_take_profit_order(orders: list[Order], position: Position) -> bool:
    return any(
        order.symbol == position.symbol
        and order.is_take_profit
        and order.position_side in (position.side, "BOTH")
        for order in orders
    )


def _outcome(
    action: str,
    symbol: str,
    side: Side | None,
    status: str,
    *,
    reason: str | None = None,
    source: str = "oracle",
    order_id: str | None = None,
    price: float | None = None,
    quantity: float | None = None,
    leverage: int | None = None,
) -> dict[str, Any]:
    return {
        "action": action,
        "symbol": symbol,
        "side": side,
        "status": status,
        "reason": reason,
        "source": source,
        "order_id": order_id,
        "price": price,
        "quantity": quantity,
        "leverage": leverage,
        "timestamp": _now_ms(),
    }

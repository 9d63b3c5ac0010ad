from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from conftest import FakeExchange, FakeOracle

from perp_trader.ai.schemas import TradingDecision
from perp_trader.config import Settings
from perp_trader.data.market import MarketDataService
from perp_trader.journal.ledger import PerformanceLedger
from perp_trader.journal.store import JournalStore
from perp_trader.orchestrator import Orchestrator
from perp_trader.risk.gate import RiskGate, RiskLimits
from perp_trader.types import CycleResult, Order


class _Harness:
    def __init__(
        self,
        tmp_path: Path,
        exchange: FakeExchange,
        oracle: FakeOracle,
        *,
        dry_run: bool = False,
        **overrides: Any,
    ) -> None:
        overrides.setdefault("order_delay_ms", 0)
        self.settings = Settings(
            trader_id="t1",
            data_dir=tmp_path,
            journal_dir=tmp_path / "logs",
            **overrides,
        )
        self.exchange = exchange
        self.oracle = oracle
        self.ledger = PerformanceLedger("t1", f"sqlite:///{tmp_path / 'ledger.db'}")
        self.journal = JournalStore(self.settings.journal_dir, "t1")
        self.sleeps: list[float] = []
        self.orchestrator = Orchestrator(
            exchange=exchange,
            oracle=oracle,
            ledger=self.ledger,
            gate=RiskGate(RiskLimits.from_settings(self.settings)),
            market=MarketDataService(exchange, self.settings),
            journal=self.journal,
            settings=self.settings,
            dry_run=dry_run,
            sleep=self.sleeps.append,
        )

    def run(self) -> CycleResult:
        return self.orchestrator.run_cycle()


@pytest.fixture
def harness_factory(tmp_path: Path):
    created: list[_Harness] = []

    def _factory(exchange: FakeExchange, oracle: FakeOracle, **kwargs: Any) -> _Harness:
        harness = _Harness(tmp_path, exchange, oracle, **kwargs)
        created.append(harness)
        return harness

    yield _factory
    for harness in created:
        harness.ledger.close()


def test_closes_run_before_opens_and_free_margin(fake_exchange: FakeExchange, harness_factory) -> None:
    # 80% of equity is tied up until SOL is closed
    fake_exchange.add_position("SOLUSDT", "LONG", 80.0, 100.0)
    oracle = FakeOracle(
        [
            TradingDecision(action="open_long", symbol="BTCUSDT", position_size_usd=5_000, leverage=5),
            TradingDecision(action="close_long", symbol="SOLUSDT"),
        ]
    )
    harness = harness_factory(fake_exchange, oracle, order_delay_ms=500)

    result = harness.run()

    assert result.status == "completed"
    assert [call[:3] for call in fake_exchange.calls] == [
        ("close", "SOLUSDT", "LONG"),
        ("open", "BTCUSDT", "LONG"),
    ]
    assert fake_exchange.calls[1][3] == pytest.approx(0.1)
    assert [o["status"] for o in result.orders] == ["executed", "executed"]
    assert harness.sleeps == [0.5]

    trade = harness.ledger.get_open_trade("BTCUSDT", "LONG")
    assert trade is not None
    assert trade.entry_price == 50_000.0
    assert trade.leverage == 5


def test_take_profit_safety_net_closes_crossed_position(fake_exchange: FakeExchange, harness_factory) -> None:
    fake_exchange.prices["BTCUSDT"] = 105.0
    fake_exchange.add_position("BTCUSDT", "LONG", 1.0, 100.0)
    harness = harness_factory(fake_exchange, FakeOracle([TradingDecision.wait("flat")]))
    harness.ledger.record_open(
        symbol="BTCUSDT",
        side="LONG",
        entry_price=100.0,
        quantity=1.0,
        leverage=1,
        take_profit=103.0,
    )

    result = harness.run()

    assert result.orders[0]["source"] == "take_profit_safety_net"
    assert result.orders[0]["status"] == "executed"
    closed = harness.ledger.get_closed_trades(5)
    assert len(closed) == 1
    assert closed[0].close_reason == "take_profit"
    assert closed[0].pnl == pytest.approx(5.0)
    # the oracle sees the post-close account
    assert harness.oracle.calls[0]["positions"] == []


def test_take_profit_safety_net_defers_to_exchange_order(fake_exchange: FakeExchange, harness_factory) -> None:
    fake_exchange.prices["BTCUSDT"] = 105.0
    fake_exchange.add_position("BTCUSDT", "LONG", 1.0, 100.0)
    fake_exchange.open_orders.append(
        Order(
            order_id="1",
            symbol="BTCUSDT",
            side="SELL",
            type="TAKE_PROFIT_MARKET",
            position_side="LONG",
            quantity=1.0,
            stop_price=103.0,
        )
    )
    harness = harness_factory(fake_exchange, FakeOracle([TradingDecision.wait("flat")]))
    harness.ledger.record_open(
        symbol="BTCUSDT", side="LONG", entry_price=100.0, quantity=1.0, leverage=1, take_profit=103.0
    )

    harness.run()

    assert fake_exchange.calls == []
    assert harness.ledger.get_open_trade("BTCUSDT", "LONG") is not None


def test_account_failure_aborts_cycle(fake_exchange: FakeExchange, harness_factory) -> None:
    fake_exchange.fail_account = True
    oracle = FakeOracle([TradingDecision(action="open_long", symbol="BTCUSDT", quantity=0.1)])
    harness = harness_factory(fake_exchange, oracle)

    result = harness.run()

    assert result.status == "account_unavailable"
    assert oracle.calls == []
    assert fake_exchange.calls == []
    assert list(harness.journal.directory.glob("cycle_*.json")) == []


def test_oracle_failure_becomes_wait(fake_exchange: FakeExchange, harness_factory) -> None:
    harness = harness_factory(fake_exchange, FakeOracle(error=RuntimeError("model offline")))

    result = harness.run()

    assert result.status == "completed"
    assert [d["action"] for d in result.decisions] == ["wait"]
    assert result.orders == []
    assert any("model offline" in warning for warning in result.warnings)


_WHOLE_UNITS = {"filters": [{"filterType": "LOT_SIZE", "stepSize": "1", "minQty": "1"}]}


def test_size_cap_rejection_is_retried_at_adjusted_quantity(
    fake_exchange: FakeExchange,
    harness_factory,
) -> None:
    fake_exchange.prices["SOLUSDT"] = 7.0
    fake_exchange.symbol_info["SOLUSDT"] = _WHOLE_UNITS
    oracle = FakeOracle(
        [TradingDecision(action="open_long", symbol="SOLUSDT", position_size_usd=8_000, leverage=2)]
    )
    harness = harness_factory(fake_exchange, oracle, max_position_size_altcoin_multiplier=0.5)

    result = harness.run()

    # cap is $5000 -> 714.28 SOL; 715 would breach it
    executed = result.orders[0]
    assert executed["status"] == "executed"
    assert executed["quantity"] == pytest.approx(714.0)
    assert executed["quantity"] * 7.0 <= 5_000.0
    assert fake_exchange.calls == [("open", "SOLUSDT", "LONG", pytest.approx(714.0), 2)]


def test_margin_fallback_is_retried_once(fake_exchange: FakeExchange, harness_factory) -> None:
    fake_exchange.add_position("BTCUSDT", "LONG", 0.178, 50_000.0)
    fake_exchange.prices["SOLUSDT"] = 7.0
    fake_exchange.symbol_info["SOLUSDT"] = _WHOLE_UNITS
    oracle = FakeOracle(
        [TradingDecision(action="open_long", symbol="SOLUSDT", position_size_usd=1_000, leverage=2)]
    )
    harness = harness_factory(fake_exchange, oracle)

    result = harness.run()

    # $100 of margin room left -> 14.28 SOL
    executed = result.orders[0]
    assert executed["status"] == "executed"
    assert executed["quantity"] == pytest.approx(14.0)
    assert fake_exchange.calls == [("open", "SOLUSDT", "LONG", pytest.approx(14.0), 2)]


def test_adjusted_quantity_below_exchange_minimum_is_rejected(
    fake_exchange: FakeExchange,
    harness_factory,
) -> None:
    fake_exchange.add_position("BTCUSDT", "LONG", 0.178, 50_000.0)
    fake_exchange.prices["SOLUSDT"] = 7.0
    fake_exchange.symbol_info["SOLUSDT"] = {
        "filters": [{"filterType": "LOT_SIZE", "stepSize": "1", "minQty": "20"}]
    }
    oracle = FakeOracle(
        [TradingDecision(action="open_long", symbol="SOLUSDT", position_size_usd=1_000, leverage=2)]
    )
    harness = harness_factory(fake_exchange, oracle)

    result = harness.run()

    assert result.orders[0]["status"] == "rejected"
    assert "below exchange minimum" in result.orders[0]["reason"]
    assert fake_exchange.calls == []


def test_open_without_size_is_rejected(fake_exchange: FakeExchange, harness_factory) -> None:
    decision = TradingDecision.model_construct(action="open_long", symbol="BTCUSDT", leverage=2)
    harness = harness_factory(fake_exchange, FakeOracle([decision]))

    result = harness.run()

    assert result.orders[0]["status"] == "rejected"
    assert result.orders[0]["reason"] == "open_requires_position_size_usd_or_quantity"
    assert fake_exchange.calls == []


def test_rejections_are_recorded_with_reason(fake_exchange: FakeExchange, harness_factory) -> None:
    fake_exchange.add_position("ETHUSDT", "LONG", 0.1, 3_000.0)
    oracle = FakeOracle(
        [
            TradingDecision(action="open_long", symbol="ETHUSDT", quantity=0.1, leverage=2),
            TradingDecision(
                action="open_short",
                symbol="SOLUSDT",
                quantity=1.0,
                leverage=2,
                stop_loss=99.0,
                take_profit=90.0,
            ),
            TradingDecision(action="close_short", symbol="BTCUSDT"),
        ]
    )
    harness = harness_factory(fake_exchange, oracle)

    result = harness.run()

    by_symbol = {o["symbol"]: o for o in result.orders}
    assert by_symbol["BTCUSDT"]["status"] == "rejected"
    assert by_symbol["ETHUSDT"]["status"] == "rejected"
    assert "anti_stacking" in by_symbol["ETHUSDT"]["reason"]
    assert by_symbol["SOLUSDT"]["status"] == "rejected"
    assert "stop_loss" in by_symbol["SOLUSDT"]["reason"]
    assert fake_exchange.calls == []


def test_hedge_open_on_opposite_side_is_allowed(fake_exchange: FakeExchange, harness_factory) -> None:
    fake_exchange.add_position("BTCUSDT", "LONG", 0.01, 50_000.0)
    oracle = FakeOracle([TradingDecision(action="open_short", symbol="BTCUSDT", quantity=0.01, leverage=3)])
    harness = harness_factory(fake_exchange, oracle)

    result = harness.run()

    assert result.orders[0]["status"] == "executed"
    assert "BTCUSDT_SHORT" in fake_exchange.positions


def test_confidence_floor_skips_low_confidence_opens(fake_exchange: FakeExchange, harness_factory) -> None:
    oracle = FakeOracle(
        [TradingDecision(action="open_long", symbol="BTCUSDT", quantity=0.01, leverage=2, confidence=0.5)]
    )
    harness = harness_factory(fake_exchange, oracle, min_open_confidence=0.6)

    result = harness.run()

    assert result.orders[0]["status"] == "skipped"
    assert fake_exchange.calls == []


def test_dry_run_places_no_orders_and_writes_no_ledger_rows(
    fake_exchange: FakeExchange,
    harness_factory,
) -> None:
    fake_exchange.add_position("SOLUSDT", "LONG", 1.0, 100.0)
    oracle = FakeOracle(
        [
            TradingDecision(action="close_long", symbol="SOLUSDT"),
            TradingDecision(action="open_long", symbol="BTCUSDT", quantity=0.01, leverage=2),
        ]
    )
    harness = harness_factory(fake_exchange, oracle, dry_run=True)

    result = harness.run()

    assert [o["status"] for o in result.orders] == ["dry_run", "dry_run"]
    assert fake_exchange.calls == []
    assert harness.ledger.get_open_trades() == []
    assert harness.ledger.get_equity_history() == []
    assert len(list(harness.journal.directory.glob("cycle_*.json"))) == 1


def test_cycle_log_and_equity_snapshot(fake_exchange: FakeExchange, harness_factory) -> None:
    oracle = FakeOracle([TradingDecision.wait("nothing qualifies")])
    harness = harness_factory(fake_exchange, oracle)

    harness.run()
    harness.run()

    logs = harness.journal.load_recent(5)
    assert [log["cycle_number"] for log in logs] == [1, 2]
    assert logs[0]["chain_of_thought"] == "fake reasoning"
    assert logs[0]["decisions"][0]["action"] == "wait"
    assert logs[0]["account_snapshot"]["total_equity"] == 10_000.0

    history = harness.ledger.get_equity_history()
    assert [snapshot.equity for snapshot in history] == [10_000.0, 10_000.0]
    assert history[1].daily_pnl == 0.0


def test_feedback_reaches_the_oracle(fake_exchange: FakeExchange, harness_factory) -> None:
    oracle = FakeOracle([TradingDecision.wait("flat")])
    harness = harness_factory(fake_exchange, oracle)
    harness.ledger.record_open(symbol="BTCUSDT", side="LONG", entry_price=100.0, quantity=1.0, leverage=1)
    harness.ledger.record_close("BTCUSDT", "LONG", 110.0)

    harness.run()

    assert oracle.calls[0]["feedback"].total_trades == 1
    assert oracle.calls[0]["feedback"].winning_trades == 1


def test_candidates_are_scanned_and_passed_to_oracle(fake_exchange: FakeExchange, harness_factory) -> None:
    fake_exchange.open_interest["ETHUSDT"] = 1e9
    oracle = FakeOracle([TradingDecision.wait("flat")])
    harness = harness_factory(fake_exchange, oracle)

    harness.run()

    assert [data.symbol for data in oracle.calls[0]["market_data"]] == ["ETHUSDT"]


def test_status_exposes_recent_actions_and_history(fake_exchange: FakeExchange, harness_factory) -> None:
    oracle = FakeOracle([TradingDecision.wait("nothing")])
    harness = harness_factory(fake_exchange, oracle)

    harness.run()
    status = harness.orchestrator.status()

    assert status["running"] is False
    assert status["cycle_number"] == 1
    assert status["trader_id"] == "t1"
    assert status["recent_actions"][0]["action"] == "wait"
    assert status["cycle_history"][0]["equity"] == 10_000.0
    assert status["last_account"]["total_equity"] == 10_000.0
    json.dumps(status)


def test_stop_during_cycle_abandons_before_oracle(fake_exchange: FakeExchange, harness_factory) -> None:
    oracle = FakeOracle([TradingDecision(action="open_long", symbol="BTCUSDT", quantity=0.01)])
    harness = harness_factory(fake_exchange, oracle)
    fake_exchange.on_account = harness.orchestrator.stop

    harness.orchestrator.start()
    harness.orchestrator.join(timeout=10)

    assert not harness.orchestrator.running
    assert harness.orchestrator.status()["cycle_number"] == 1
    assert oracle.calls == []
    assert fake_exchange.calls == []


def test_stop_during_execution_finishes_the_wave(fake_exchange: FakeExchange, harness_factory) -> None:
    fake_exchange.add_position("SOLUSDT", "LONG", 1.0, 100.0)
    oracle = FakeOracle(
        [
            TradingDecision(action="close_long", symbol="SOLUSDT"),
            TradingDecision(action="open_long", symbol="BTCUSDT", quantity=0.01, leverage=2),
            TradingDecision(action="open_long", symbol="ETHUSDT", quantity=0.1, leverage=2),
        ]
    )
    harness = harness_factory(fake_exchange, oracle)
    harness.ledger.record_open(symbol="SOLUSDT", side="LONG", entry_price=100.0, quantity=1.0, leverage=1)
    # stop arrives while the first order is in flight
    fake_exchange.on_order = harness.orchestrator.stop

    harness.orchestrator.start()
    harness.orchestrator.join(timeout=10)

    assert not harness.orchestrator.running
    assert harness.orchestrator.status()["cycle_number"] == 1
    assert [call[:3] for call in fake_exchange.calls] == [
        ("close", "SOLUSDT", "LONG"),
        ("open", "BTCUSDT", "LONG"),
        ("open", "ETHUSDT", "LONG"),
    ]
    assert len(harness.ledger.get_closed_trades(5)) == 1
    assert {trade.symbol for trade in harness.ledger.get_open_trades()} == {"BTCUSDT", "ETHUSDT"}
    assert len(harness.ledger.get_equity_history()) == 1
    assert len(list(harness.journal.directory.glob("cycle_*.json"))) == 1


def test_journal_failure_keeps_cycle_and_equity_snapshot(
    fake_exchange: FakeExchange,
    harness_factory,
) -> None:
    harness = harness_factory(fake_exchange, FakeOracle([TradingDecision.wait("flat")]))

    def _boom(log: dict) -> Path:
        raise RuntimeError("disk on fire")

    harness.journal.write_cycle = _boom  # type: ignore[method-assign]
    result = harness.run()

    assert result.status == "completed"
    assert "cycle_log_failed" in result.warnings
    assert [snapshot.equity for snapshot in harness.ledger.get_equity_history()] == [10_000.0]
    assert harness.orchestrator.status()["cycle_history"][0]["cycle"] == 1


def test_unexpected_error_marks_cycle_failed(fake_exchange: FakeExchange, harness_factory) -> None:
    oracle = FakeOracle([TradingDecision.wait("flat")])
    harness = harness_factory(fake_exchange, oracle)

    def _boom(count: int) -> None:
        raise RuntimeError("database on fire")

    harness.ledger.get_historical_feedback = _boom  # type: ignore[method-assign]
    result = harness.run()

    assert result.status == "failed"
    assert any("database on fire" in warning for warning in result.warnings)
    assert oracle.calls == []

"""Wiring of collaborators into a decision cycle orchestrator."""

from __future__ import annotations

from perp_trader.ai.provider import DecisionOracle, build_oracle
from perp_trader.config import Settings
from perp_trader.data.binance import BinanceDataClient
from perp_trader.data.market import MarketDataService
from perp_trader.exec.base import ExchangeProvider
from perp_trader.exec.binance import BinanceFuturesExchange
from perp_trader.exec.paper import PaperExchange
from perp_trader.journal.ledger import PerformanceLedger
from perp_trader.journal.store import JournalStore
from perp_trader.orchestrator import Orchestrator
from perp_trader.risk.gate import RiskGate, RiskLimits
from perp_trader.types import CycleResult
from perp_trader.utils.logging import get_logger


def build_exchange(settings: Settings) -> ExchangeProvider:
    """Paper exchange over live market data, or the live futures account."""
    if settings.is_live_mode:
        return BinanceFuturesExchange(settings)
    return PaperExchange(
        BinanceDataClient(settings),
        settings.data_dir / f"paper_state_{settings.trader_id}.json",
        slippage_bps=settings.paper_slippage_bps,
        initial_equity=settings.paper_initial_equity,
    )


def build_orchestrator(
    settings: Settings,
    dry_run: bool = False,
    *,
    exchange: ExchangeProvider | None = None,
    oracle: DecisionOracle | None = None,
    ledger: PerformanceLedger | None = None,
    interval_sec: float | None = None,
) -> Orchestrator:
    """Assemble an orchestrator; any collaborator may be supplied by the caller."""
    exchange = exchange or build_exchange(settings)
    return Orchestrator(
        exchange=exchange,
        oracle=oracle or build_oracle(settings),
        ledger=ledger or PerformanceLedger(settings.trader_id, settings.resolved_database_url),
        gate=RiskGate(RiskLimits.from_settings(settings)),
        market=MarketDataService(exchange, settings),
        journal=JournalStore(settings.journal_dir, settings.trader_id),
        settings=settings,
        dry_run=dry_run,
        interval_sec=interval_sec,
    )


def run_trading_cycle(settings: Settings, dry_run: bool) -> CycleResult:
    """Run one full decision cycle."""
    logger = get_logger("perp_trader.pipeline")
    settings.ensure_directories()
    ledger = PerformanceLedger(settings.trader_id, settings.resolved_database_url)
    try:
        orchestrator = build_orchestrator(settings, dry_run, ledger=ledger)
        result = orchestrator.run_cycle()
    finally:
        ledger.close()
    logger.info("pipeline_cycle_done", status=result.status, cycle=result.cycle_number)
    return result

"""命令行入口 - AI 永续合约决策系统。

子命令：once / loop 运行决策周期，status / feedback / journal 查看状态与记录，
check 检查依赖。
"""

import json
import sys
from pathlib import Path

import click
import structlog

from perp_trader import __version__
from perp_trader.config import Settings, get_settings
from perp_trader.journal.feedback import feedback_as_dict
from perp_trader.journal.ledger import LedgerError, PerformanceLedger
from perp_trader.journal.store import JournalStore
from perp_trader.pipeline import build_orchestrator, run_trading_cycle
from perp_trader.utils.logging import get_logger, setup_logging

_RULE = "=" * 50

# (导入名, 用途)
_RUNTIME_PACKAGES = (
    ("pydantic", "Decision schema validation"),
    ("pydantic_settings", "Environment settings"),
    ("structlog", "Structured logging"),
    ("click", "CLI framework"),
    ("httpx", "LLM HTTP client"),
    ("tenacity", "LLM retries"),
    ("pandas", "Kline frames and indicators"),
    ("numpy", "Feedback statistics"),
    ("binance", "Binance futures API (python-binance)"),
    ("requests", "python-binance transport"),
    ("sqlmodel", "Performance ledger storage"),
)


def _prepare_runtime(*, cycle_command: bool) -> tuple[Settings, structlog.stdlib.BoundLogger]:
    """加载配置并初始化日志与目录。

    实盘模式下运行周期前校验必要密钥，缺失时以状态码 1 退出。
    """
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("perp_trader.main")
    settings.ensure_directories()

    if cycle_command and settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置必要的 API 密钥",
            )
            sys.exit(1)
    return settings, logger


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """AI Perp Trader - LLM 驱动的永续合约决策系统。

    每个周期：历史反馈 → 账户 → 持仓行情 → 候选币 → AI 决策 → 风控准入 → 执行/记账。
    """
    if version:
        click.echo(f"perp-trader version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--dry-run", is_flag=True, default=False, help="试运行：不下单、不写交易记录")
def once(dry_run: bool) -> None:
    """执行单次决策周期。"""
    settings, logger = _prepare_runtime(cycle_command=True)
    logger.info("single_cycle_requested", mode=settings.mode.value, trader_id=settings.trader_id, dry_run=dry_run)

    try:
        result = run_trading_cycle(settings, dry_run=dry_run)
    except KeyboardInterrupt:
        logger.info("single_cycle_interrupted")
        sys.exit(0)
    except Exception as exc:  # noqa: BLE001 - wiring failures end the command, not a traceback.
        logger.exception("single_cycle_crashed", error=str(exc))
        sys.exit(1)

    logger.info(
        "single_cycle_finished",
        status=result.status,
        cycle=result.cycle_number,
        elapsed_ms=round(result.elapsed_ms, 2),
        decisions=len(result.decisions),
        orders=len(result.orders),
        warnings=result.warnings,
    )
    if result.status in {"failed", "account_unavailable"}:
        sys.exit(2)


@cli.command()
@click.option(
    "--interval-sec",
    "-i",
    type=click.IntRange(min=1),
    default=None,
    help="周期间隔（秒），默认取 DECISION_INTERVAL_SEC",
)
@click.option("--dry-run", is_flag=True, default=False, help="试运行：不下单、不写交易记录")
def loop(interval_sec: int | None, dry_run: bool) -> None:
    """后台线程按间隔运行决策周期，Ctrl+C 停止。

    启动即运行第一个周期；停止时已进入执行阶段的周期会先完成。
    """
    settings, logger = _prepare_runtime(cycle_command=True)
    orchestrator = build_orchestrator(settings, dry_run, interval_sec=interval_sec)

    orchestrator.start()
    try:
        while orchestrator.running:
            orchestrator.join(timeout=1.0)
    except KeyboardInterrupt:
        logger.info("loop_interrupt_received")
    finally:
        orchestrator.stop()
        summary = orchestrator.status()
        logger.info(
            "loop_exited",
            trader_id=summary["trader_id"],
            cycles=summary["cycle_number"],
            recent_actions=len(summary["recent_actions"]),
        )
    sys.exit(0)


def _status_sections(settings: Settings) -> list[tuple[str, list[str]]]:
    def configured(value: str) -> str:
        return "[OK] Configured" if value else "[--] Not configured"

    return [
        (
            "Trader",
            [
                f"Mode: {'Paper Trading' if settings.is_paper_mode else 'Live Trading'}",
                f"Trader ID: {settings.trader_id}",
                f"Interval: {settings.decision_interval_sec}s",
            ],
        ),
        (
            "Exchange & Oracle",
            [
                f"Binance API: {configured(settings.binance_api_key)}"
                f" ({'testnet' if settings.binance_testnet else 'mainnet'})",
                f"Oracle provider: {settings.oracle_provider.value}",
                f"LLM API: {configured(settings.llm_api_key)}",
                f"LLM Model: {settings.llm_model or '(provider default)'}",
            ],
        ),
        (
            "Risk Limits",
            [
                f"Max positions: {settings.max_positions}",
                f"Leverage ceiling: {settings.max_leverage_major}x major / {settings.max_leverage_altcoin}x altcoin",
                f"Position value cap: {settings.max_position_size_major_multiplier}x / "
                f"{settings.max_position_size_altcoin_multiplier}x equity",
                f"Max margin usage: {settings.max_margin_usage * 100:.0f}%",
                f"Min reward:risk: {settings.min_risk_reward_ratio}",
                f"Major symbols: {', '.join(sorted(settings.major_symbol_set))}",
            ],
        ),
        (
            "Market Scan",
            [
                f"Coin selection: {settings.coin_selection_mode.value}",
                f"Min liquidity: ${settings.min_liquidity_usd:,.0f}",
                f"Feedback window: {settings.historical_trades_count} trades",
            ],
        ),
        (
            "Storage",
            [
                f"Ledger: {settings.resolved_database_url}",
                f"Journal dir: {settings.journal_dir}",
                f"Log: {settings.log_level} / {settings.log_format.value}",
            ],
        ),
    ]


def _ledger_lines(settings: Settings) -> list[str]:
    ledger = PerformanceLedger(settings.trader_id, settings.resolved_database_url)
    try:
        open_trades = ledger.get_open_trades()
        history = ledger.get_equity_history(limit=1)
    except LedgerError as exc:
        return [f"[ERROR] {exc}"]
    finally:
        ledger.close()

    lines = [f"Open trades: {len(open_trades)}"]
    lines.extend(
        f"  {trade.symbol} {trade.side} qty {trade.quantity:g} @ {trade.entry_price:g} x{trade.leverage}"
        for trade in open_trades
    )
    if history:
        lines.append(f"Last equity: ${history[-1].equity:,.2f}")
    return lines


@cli.command()
def status() -> None:
    """显示配置摘要与账本中的未平仓交易。"""
    settings, _ = _prepare_runtime(cycle_command=False)

    click.echo(_RULE)
    click.echo("AI Perp Trader - Status")
    click.echo(_RULE)
    for title, rows in [*_status_sections(settings), ("Ledger", _ledger_lines(settings))]:
        click.echo(f"[{title}]")
        for row in rows:
            click.echo(f"   {row}")
        click.echo()

    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo(f"[ERROR] Live mode configuration incomplete, missing: {', '.join(missing)}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require exchange API keys")
    click.echo(_RULE)


@cli.command()
@click.option(
    "--trades",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="统计的平仓笔数，默认取 HISTORICAL_TRADES_COUNT",
)
def feedback(trades: int | None) -> None:
    """以 JSON 输出账本中的历史表现统计。"""
    settings, logger = _prepare_runtime(cycle_command=False)

    ledger = PerformanceLedger(settings.trader_id, settings.resolved_database_url)
    try:
        stats = ledger.get_historical_feedback(trades or settings.historical_trades_count)
    except LedgerError as exc:
        logger.error("feedback_failed", error=str(exc))
        sys.exit(1)
    finally:
        ledger.close()

    click.echo(json.dumps(feedback_as_dict(stats), indent=2, ensure_ascii=False))


@cli.command()
@click.option("--last", "-n", type=click.IntRange(min=1), default=5, help="显示最近的周期数")
def journal(last: int) -> None:
    """列出最近的周期日志摘要。"""
    settings, _ = _prepare_runtime(cycle_command=False)

    logs = JournalStore(settings.journal_dir, settings.trader_id).load_recent(last)
    if not logs:
        click.echo("No cycle logs yet.")
        return
    for log in logs:
        actions = ", ".join(
            f"{d.get('action')} {d.get('symbol') or ''}".strip() for d in log.get("decisions", [])
        ) or "-"
        outcomes = ", ".join(
            f"{o.get('symbol')}:{o.get('status')}" for o in log.get("execution_results", [])
        ) or "-"
        equity = (log.get("account_snapshot") or {}).get("total_equity")
        equity_text = f"${equity:,.2f}" if isinstance(equity, (int, float)) else "n/a"
        click.echo(f"#{log.get('cycle_number')} equity {equity_text} | decisions: {actions} | orders: {outcomes}")


@cli.command()
def check() -> None:
    """检查运行依赖与 .env 配置文件。"""
    _, logger = _prepare_runtime(cycle_command=False)

    click.echo("Checking runtime dependencies...")
    missing: list[str] = []
    for module_name, purpose in _RUNTIME_PACKAGES:
        try:
            __import__(module_name)
        except ImportError:
            missing.append(module_name)
            click.echo(f"  [MISSING] {module_name} - {purpose}")
        else:
            click.echo(f"  [OK] {module_name} - {purpose}")

    click.echo()
    if Path(".env").exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")
    click.echo()

    if missing:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")
    else:
        click.echo("[OK] All dependency checks passed")
    logger.info("dependency_check_completed", missing=missing)


if __name__ == "__main__":
    cli()

"""交易员日志配置。

所有模块通过 structlog 输出事件，事件名为 snake_case，字段结构化。
决策周期通过 contextvars 绑定 trader_id 与 cycle，单条日志无需重复传入。
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from perp_trader.config import LogFormat, Settings, get_settings

# 第三方 HTTP 客户端在 DEBUG 级别会逐条打印请求
_CHATTY_LOGGERS = ("httpx", "httpcore", "urllib3", "binance")


def _base_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer_chain(log_format: LogFormat) -> list[Processor]:
    if log_format == LogFormat.JSON:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def setup_logging(settings: Settings | None = None) -> None:
    """按配置初始化日志。

    Args:
        settings: 配置对象，为 None 时读取全局配置。
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[*_base_processors(), *_renderer_chain(settings.log_format)],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取指定名称的日志记录器。"""
    return structlog.get_logger(name)


def log_llm_call(
    logger: structlog.stdlib.BoundLogger,
    *,
    model: str,
    success: bool,
    latency_ms: float,
    **fields: Any,
) -> None:
    """记录一次决策模型调用；失败以 warning 级别输出。"""
    emit = logger.info if success else logger.warning
    emit("llm_call", model=model, success=success, latency_ms=round(latency_ms, 2), **fields)


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    side: str,
    quantity: float,
    price: float | None = None,
    order_id: str | None = None,
    status: str = "filled",
    **fields: Any,
) -> None:
    """记录一笔成交（开仓或平仓）。"""
    notional = round(quantity * price, 4) if price else None
    logger.info(
        "order_execution",
        symbol=symbol,
        side=side,
        status=status,
        quantity=quantity,
        price=price,
        notional=notional,
        order_id=order_id,
        **fields,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    symbol: str | None = None,
    reason: str | None = None,
    **fields: Any,
) -> None:
    """记录风控拦截或保护单校验失败。"""
    logger.warning("risk_event", event_type=event_type, action=action, symbol=symbol, reason=reason, **fields)

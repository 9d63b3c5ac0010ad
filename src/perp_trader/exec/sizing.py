"""Exchange quantity rules: step size, minimum quantity and minimum notional."""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any

from perp_trader.types import OrderSize


def _to_decimal(x: Any) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def _get_filter(symbol_info: dict[str, Any], filter_type: str) -> dict[str, Any] | None:
    for f in symbol_info.get("filters", []):
        if f.get("filterType") == filter_type:
            return f
    return None


def _lot_filter(symbol_info: dict[str, Any]) -> dict[str, Any] | None:
    return _get_filter(symbol_info, "MARKET_LOT_SIZE") or _get_filter(symbol_info, "LOT_SIZE")


def min_notional(symbol_info: dict[str, Any]) -> Decimal:
    """Minimum order value, 0 when the symbol declares none."""
    f = _get_filter(symbol_info, "MIN_NOTIONAL")
    if not f:
        return Decimal("0")
    # futures exchangeInfo uses "notional", spot uses "minNotional"
    raw = f.get("notional", f.get("minNotional", "0"))
    return _to_decimal(raw)


def round_qty_up(qty: Decimal, step: Decimal) -> Decimal:
    """Round quantity UP to the nearest valid step."""
    if step <= 0:
        return qty
    return (qty / step).to_integral_value(rounding=ROUND_CEILING) * step


def round_qty_down(qty: Decimal, step: Decimal) -> Decimal:
    """Round quantity DOWN to the nearest valid step."""
    if step <= 0:
        return qty
    return (qty / step).to_integral_value(rounding=ROUND_FLOOR) * step


def normalize_order_size(
    symbol_info: dict[str, Any] | None,
    desired_qty: float,
    price: float,
) -> OrderSize:
    """Snap ``desired_qty`` onto the exchange grid without ever going below a minimum.

    The result is the smallest multiple of the step size that is at least
    ``desired_qty``, at least ``minQty`` and whose notional at ``price`` is at
    least the minimum notional. ``adjusted`` is True when the quantity changed.
    """
    if desired_qty <= 0:
        raise ValueError("desired_qty_must_be_positive")
    if price <= 0:
        raise ValueError("price_must_be_positive")
    if not symbol_info:
        return OrderSize(quantity=float(desired_qty), adjusted=False)

    desired = _to_decimal(desired_qty)
    px = _to_decimal(price)
    target = desired

    lot = _lot_filter(symbol_info)
    step = _to_decimal(lot.get("stepSize", "0")) if lot else Decimal("0")
    min_qty = _to_decimal(lot.get("minQty", "0")) if lot else Decimal("0")

    if target < min_qty:
        target = min_qty

    floor_notional = min_notional(symbol_info)
    if floor_notional > 0 and target * px < floor_notional:
        target = floor_notional / px

    quantity = round_qty_up(target, step)
    # grid rounding may land exactly on the boundary from below for inexact divisions
    if floor_notional > 0 and quantity * px < floor_notional:
        quantity += step

    return OrderSize(quantity=float(quantity), adjusted=quantity != desired)


def floor_order_size(
    symbol_info: dict[str, Any] | None,
    max_qty: float,
    price: float,
) -> OrderSize | None:
    """Largest quantity on the exchange grid that does not exceed ``max_qty``.

    Used for sizes that are upper limits (a risk cap), where rounding up would
    break the limit. Returns None when the floored quantity falls below
    ``minQty`` or the minimum notional.
    """
    if max_qty <= 0:
        raise ValueError("max_qty_must_be_positive")
    if price <= 0:
        raise ValueError("price_must_be_positive")
    if not symbol_info:
        return OrderSize(quantity=float(max_qty), adjusted=False)

    limit = _to_decimal(max_qty)
    lot = _lot_filter(symbol_info)
    step = _to_decimal(lot.get("stepSize", "0")) if lot else Decimal("0")
    min_qty = _to_decimal(lot.get("minQty", "0")) if lot else Decimal("0")

    quantity = round_qty_down(limit, step)
    if quantity <= 0 or quantity < min_qty:
        return None
    if quantity * _to_decimal(price) < min_notional(symbol_info):
        return None
    return OrderSize(quantity=float(quantity), adjusted=quantity != limit)


def quantity_from_notional(notional_usd: float, price: float) -> float:
    """Convert a USD notional to base-asset quantity at ``price``."""
    if price <= 0:
        raise ValueError("price_must_be_positive")
    if notional_usd <= 0:
        raise ValueError("notional_must_be_positive")
    return notional_usd / price

from __future__ import annotations

from typing import Any

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError

from perp_trader.config import Settings
from perp_trader.data.binance import BinanceDataClient, klines_to_frame
from perp_trader.exec.base import ExchangeError
from perp_trader.exec.binance import BinanceFuturesExchange

_SYMBOL_INFO = {
    "symbol": "BTCUSDT",
    "filters": [
        {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
        {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
    ],
}


def _kline_row(open_time: int, close: float) -> list[Any]:
    return [open_time, str(close), str(close + 1), str(close - 1), str(close), "12.5", open_time + 179_999, "1250.0", 10, "6", "600", "0"]


class _FakeClient:
    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.cancelled: list[dict[str, Any]] = []
        self.exchange_info_calls = 0
        self.fail_orders = False
        self.fail_funding = False
        self.positions: list[dict[str, Any]] = []
        self.open_orders: list[dict[str, Any]] = []

    def futures_klines(self, **kwargs: Any) -> list[list[Any]]:
        return [_kline_row(1_700_000_000_000 + i * 180_000, 100.0 + i) for i in range(kwargs["limit"])]

    def futures_symbol_ticker(self, symbol: str) -> dict[str, str]:
        return {"symbol": symbol, "price": "50000.0"}

    def futures_mark_price(self, symbol: str) -> dict[str, str]:
        if self.fail_funding:
            raise RequestsConnectionError("down")
        return {"symbol": symbol, "lastFundingRate": "0.00010000"}

    def futures_open_interest(self, symbol: str) -> dict[str, str]:
        return {"symbol": symbol, "openInterest": "10.0"}

    def futures_exchange_info(self) -> dict[str, Any]:
        self.exchange_info_calls += 1
        return {"symbols": [_SYMBOL_INFO]}

    def futures_change_position_mode(self, **kwargs: Any) -> dict[str, Any]:
        return {"code": 200}

    def futures_change_leverage(self, **kwargs: Any) -> dict[str, Any]:
        return {"leverage": kwargs["leverage"]}

    def futures_account(self) -> dict[str, str]:
        return {
            "totalWalletBalance": "1000.0",
            "totalUnrealizedProfit": "25.0",
            "availableBalance": "800.0",
            "totalInitialMargin": "200.0",
        }

    def futures_position_information(self) -> list[dict[str, Any]]:
        return self.positions

    def futures_get_open_orders(self, **kwargs: Any) -> list[dict[str, Any]]:
        symbol = kwargs.get("symbol")
        return [o for o in self.open_orders if symbol is None or o["symbol"] == symbol]

    def futures_create_order(self, **kwargs: Any) -> dict[str, Any]:
        if self.fail_orders:
            raise RequestsConnectionError("timeout")
        self.created.append(kwargs)
        return {"orderId": len(self.created), "executedQty": kwargs["quantity"], "avgPrice": "50010.0"}

    def futures_cancel_order(self, **kwargs: Any) -> dict[str, Any]:
        self.cancelled.append(kwargs)
        return {}


@pytest.fixture
def client() -> _FakeClient:
    return _FakeClient()


def test_klines_to_frame_is_numeric() -> None:
    df = klines_to_frame([_kline_row(1_700_000_000_000, 100.0)])
    assert list(df.columns) == [
        "open_time",
        "open",
        "high",
        "low",
        "close",
        "volume",
        "close_time",
        "quote_asset_volume",
    ]
    assert df["close"].iloc[0] == 100.0
    assert str(df["open_time"].dt.tz) == "UTC"

    with pytest.raises(ExchangeError):
        klines_to_frame([])


def test_data_client_reads(client: _FakeClient) -> None:
    data = BinanceDataClient(Settings(), client=client)

    assert len(data.get_klines("BTCUSDT", "3m", 20)) == 20
    assert data.get_market_price("BTCUSDT") == 50_000.0
    assert data.get_open_interest("BTCUSDT") == pytest.approx(500_000.0)
    assert data.get_funding_rate("BTCUSDT") == pytest.approx(0.0001)

    client.fail_funding = True
    assert data.get_funding_rate("BTCUSDT") == 0.0


def test_symbol_info_is_cached(client: _FakeClient) -> None:
    data = BinanceDataClient(Settings(), client=client)
    assert data.get_symbol_info("btcusdt") == _SYMBOL_INFO
    assert data.get_symbol_info("ETHUSDT") is None
    assert client.exchange_info_calls == 1


def test_account_maps_hedge_positions(client: _FakeClient) -> None:
    client.positions = [
        {"symbol": "BTCUSDT", "positionAmt": "0.010", "positionSide": "LONG", "entryPrice": "49000", "markPrice": "50000", "leverage": "5", "marginType": "cross", "liquidationPrice": "0"},
        {"symbol": "BTCUSDT", "positionAmt": "-0.020", "positionSide": "SHORT", "entryPrice": "51000", "markPrice": "50000", "leverage": "3", "marginType": "isolated", "liquidationPrice": "60000"},
        {"symbol": "ETHUSDT", "positionAmt": "0", "positionSide": "LONG", "entryPrice": "0", "markPrice": "3000", "leverage": "5"},
    ]
    account = BinanceFuturesExchange(Settings(), client=client).get_account_info()

    assert account.total_equity == pytest.approx(1_025.0)
    assert account.available_balance == 800.0
    assert account.total_margin_used == 200.0
    assert [(p.symbol, p.side, p.quantity) for p in account.positions] == [
        ("BTCUSDT", "LONG", 0.01),
        ("BTCUSDT", "SHORT", 0.02),
    ]
    assert account.positions[0].liquidation_price is None
    assert account.positions[1].margin_type == "isolated"


def test_open_places_market_order_and_protection(client: _FakeClient) -> None:
    exchange = BinanceFuturesExchange(Settings(), client=client)
    result = exchange.open_position("BTCUSDT", "LONG", 0.1234, 5, stop_loss=48_000.05, take_profit=55_000.0)

    assert result.success
    assert result.executed_price == 50_010.0
    market, stop, target = client.created
    assert market["type"] == "MARKET"
    assert market["quantity"] == "0.123"
    assert market["positionSide"] == "LONG"
    assert stop["type"] == "STOP_MARKET"
    assert stop["side"] == "SELL"
    assert stop["stopPrice"] == "48000.0"
    assert target["type"] == "TAKE_PROFIT_MARKET"
    assert all("reduceOnly" not in order for order in client.created)


def test_close_cancels_only_same_side_protection(client: _FakeClient) -> None:
    client.positions = [
        {"symbol": "BTCUSDT", "positionAmt": "-0.050", "positionSide": "SHORT", "entryPrice": "51000", "markPrice": "50000", "leverage": "3"},
    ]
    client.open_orders = [
        {"orderId": 1, "symbol": "BTCUSDT", "side": "BUY", "type": "TAKE_PROFIT_MARKET", "positionSide": "SHORT", "origQty": "0.05", "stopPrice": "45000"},
        {"orderId": 2, "symbol": "BTCUSDT", "side": "SELL", "type": "STOP_MARKET", "positionSide": "LONG", "origQty": "0.01", "stopPrice": "47000"},
    ]
    exchange = BinanceFuturesExchange(Settings(), client=client)

    result = exchange.close_position("BTCUSDT", "SHORT")

    assert result.success
    assert client.cancelled == [{"symbol": "BTCUSDT", "orderId": "1"}]
    assert client.created[0]["side"] == "BUY"
    assert client.created[0]["quantity"] == "0.050"


def test_order_transport_failure_is_reported(client: _FakeClient) -> None:
    client.fail_orders = True
    result = BinanceFuturesExchange(Settings(), client=client).open_position("BTCUSDT", "SHORT", 0.01, 2)
    assert not result.success
    assert "timeout" in (result.error or "")


def test_open_orders_detect_take_profit(client: _FakeClient) -> None:
    client.open_orders = [
        {"orderId": 9, "symbol": "ETHUSDT", "side": "SELL", "type": "TAKE_PROFIT_MARKET", "positionSide": "LONG", "origQty": "1", "price": "0", "stopPrice": "3500"},
    ]
    orders = BinanceFuturesExchange(Settings(), client=client).get_open_orders()
    assert orders[0].is_take_profit
    assert orders[0].price is None
    assert orders[0].stop_price == 3_500.0

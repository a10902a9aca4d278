"""Shared fakes and candle builders for the trader tests (no network)."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from libs.common.errors import OrderNotFoundError
from libs.common.models import (
    Candle, CandleSeries, Instrument, InstrumentPrecision, OpenOrder, PlacedOrder, Position,
)
from services.trader.config import AppConfig, deep_merge

TF = "5m"
TF_MS = 300_000
T0 = 1_699_999_800_000  # aligned on a 5m boundary

DEFAULT_PRECISION = InstrumentPrecision(quantity_decimals=3, price_decimals=2, min_qty=0.001, min_notional=5.0)


def closes_from_diffs(start: float, diffs: List[float]) -> List[float]:
    out = [start]
    for d in diffs:
        out.append(out[-1] + d)
    return out


# 15 closes = 14 diffs: first RSI(14) value is exactly 100 * gains / (gains + losses)
LONG_CLOSES = closes_from_diffs(100.0, [1.0] * 3 + [-1.0] * 11)   # RSI ~21.4, last close 92
SHORT_CLOSES = closes_from_diffs(100.0, [-1.0] * 3 + [1.0] * 11)  # RSI ~78.6, last close 108
FLAT_CLOSES = closes_from_diffs(100.0, [1.0, -1.0] * 7)            # RSI 50
# gains 2.1 / losses 11.9 over 14 diffs: RSI(14) = 100 * 2.1 / 14 = 15 (85 mirrored)
RSI15_CLOSES = closes_from_diffs(100.0, [0.7] * 3 + [0.0] * 4 + [-1.7] * 7)
RSI85_CLOSES = closes_from_diffs(100.0, [-0.7] * 3 + [0.0] * 4 + [1.7] * 7)


def make_series(closes: List[float], volumes: Optional[List[float]] = None,
                t0: int = T0, tf_ms: int = TF_MS, spread: float = 0.5) -> CandleSeries:
    """open = previous close, high/low = body +/- spread. With unit moves every TR is 2*spread + 1."""
    candles = []
    prev = closes[0]
    for i, c in enumerate(closes):
        candles.append(Candle(
            ts=t0 + i * tf_ms,
            open=prev,
            high=max(prev, c) + spread,
            low=min(prev, c) - spread,
            close=c,
            volume=volumes[i] if volumes else 1000.0,
        ))
        prev = c
    return CandleSeries.of(candles)


def with_forming(series: CandleSeries, close: float, tf_ms: int = TF_MS) -> CandleSeries:
    last = series.last
    forming = Candle(ts=last.ts + tf_ms, open=last.close, high=max(last.close, close),
                     low=min(last.close, close), close=close, volume=1.0)
    return CandleSeries.of(series.candles + (forming,))


def forming_clock(series: CandleSeries):
    """Clock 1s into the last candle of `series`: that candle is still forming."""
    now = series.last.ts + 1_000
    return lambda: now


def make_config(**over: Any) -> AppConfig:
    base = {
        "strategy": {"rule_set": "rsi_reversal", "timeframe": TF, "min_lookback": 15, "candle_limit": 20},
        "universe": {"allowlist": ["BTCUSDT", "ETHUSDT"]},
        "scheduler": {"enabled": False},
    }
    return AppConfig(**deep_merge(base, over))


def default_instruments() -> List[Instrument]:
    return [
        Instrument(symbol="BTCUSDT", quote_asset="USDT", active=True, is_perpetual=True, is_contract=True),
        Instrument(symbol="ETHUSDT", quote_asset="USDT", active=True, is_perpetual=True, is_contract=True),
        Instrument(symbol="SOLUSDT", quote_asset="USDT", active=True, is_perpetual=True, is_contract=True),
        Instrument(symbol="DEADUSDT", quote_asset="USDT", active=False, is_perpetual=True, is_contract=True),
        Instrument(symbol="BTCUSDT_240329", quote_asset="USDT", active=True, is_perpetual=False, is_contract=True),
        Instrument(symbol="BTCBUSD", quote_asset="BUSD", active=True, is_perpetual=True, is_contract=True),
    ]


class FakeGateway:
    """
    In-memory MarketGateway. Every call is recorded in `calls`; `fail[key]` makes the
    matching call raise (keys: instruments, market, STOP, TAKE_PROFIT, candles:<sym>,
    open_orders:<sym>, cancel:<id>, position:<sym>, precision:<sym>).
    """

    def __init__(self) -> None:
        self.instruments: List[Instrument] = default_instruments()
        self.candles: Dict[str, CandleSeries] = {}
        self.open_orders: Dict[str, List[OpenOrder]] = {}
        self.positions: Dict[str, Position] = {}
        self.precision: Dict[str, Optional[InstrumentPrecision]] = {}
        self.fail: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.fill_positions = True
        self._next_id = 1

    def _maybe_fail(self, key: str) -> None:
        err = self.fail.get(key)
        if err is not None:
            raise err

    def _new_id(self) -> str:
        oid = str(self._next_id)
        self._next_id += 1
        return oid

    def named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def list_instruments(self) -> List[Instrument]:
        self.calls.append(("list_instruments",))
        self._maybe_fail("instruments")
        return list(self.instruments)

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> CandleSeries:
        self.calls.append(("fetch_candles", symbol, timeframe, limit))
        self._maybe_fail(f"candles:{symbol}")
        return self.candles.get(symbol, CandleSeries())

    async def fetch_open_orders(self, symbol: str) -> List[OpenOrder]:
        self.calls.append(("fetch_open_orders", symbol))
        self._maybe_fail(f"open_orders:{symbol}")
        return list(self.open_orders.get(symbol, []))

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        self.calls.append(("cancel_order", order_id, symbol))
        self._maybe_fail(f"cancel:{order_id}")
        orders = self.open_orders.get(symbol, [])
        if not any(o.id == order_id for o in orders):
            raise OrderNotFoundError(f"unknown order {order_id}", status_code=400, error_code=-2011)
        self.open_orders[symbol] = [o for o in orders if o.id != order_id]

    async def submit_market_order(self, symbol: str, side: str, quantity: float) -> PlacedOrder:
        self.calls.append(("market", symbol, side, quantity))
        self._maybe_fail("market")
        series = self.candles.get(symbol)
        price = series.last.close if series is not None and len(series) else 1.0
        if self.fill_positions:
            self.positions[symbol] = Position(symbol=symbol, side="LONG" if side == "BUY" else "SHORT",
                                              entry_price=price, amount=quantity)
        return PlacedOrder(id=self._new_id(), symbol=symbol, side=side, kind="MARKET",
                           quantity=quantity, avg_price=price, status="FILLED")

    async def submit_conditional_order(self, symbol: str, kind: str, side: str, quantity: float,
                                       trigger_price: float, reduce_only: bool = True) -> PlacedOrder:
        self.calls.append((kind, symbol, side, quantity, trigger_price, reduce_only))
        self._maybe_fail(kind)
        oid = self._new_id()
        order_type = "STOP_MARKET" if kind == "STOP" else "TAKE_PROFIT_MARKET"
        self.open_orders.setdefault(symbol, []).append(
            OpenOrder(id=oid, symbol=symbol, side=side, type=order_type, reduce_only=reduce_only))
        return PlacedOrder(id=oid, symbol=symbol, side=side, kind=kind, quantity=quantity,
                           trigger_price=trigger_price, status="NEW")

    async def fetch_position(self, symbol: str) -> Optional[Position]:
        self.calls.append(("fetch_position", symbol))
        self._maybe_fail(f"position:{symbol}")
        return self.positions.get(symbol)

    async def instrument_precision(self, symbol: str) -> Optional[InstrumentPrecision]:
        self.calls.append(("instrument_precision", symbol))
        self._maybe_fail(f"precision:{symbol}")
        return self.precision.get(symbol, DEFAULT_PRECISION)


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: List[str] = []

    async def send(self, text: str, extra: Optional[Dict[str, Any]] = None) -> bool:
        self.messages.append(text)
        return True


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()

from __future__ import annotations
import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import requests
from binance.error import ClientError, ServerError
from binance.um_futures import UMFutures

from libs.common.errors import (
    GatewayError, GatewayRejectedError, GatewayTransientError, OrderNotFoundError,
)
from libs.common.models import (
    Candle, CandleSeries, Instrument, InstrumentPrecision, OpenOrder, OrderKind,
    PlacedOrder, Position, Side,
)
from libs.common.precision import filter_minimums

logger = logging.getLogger(__name__)

BASE_URLS = {
    "mainnet": "https://fapi.binance.com",
    "testnet": "https://testnet.binancefuture.com",
}

_CONDITIONAL_TYPES = {"STOP": "STOP_MARKET", "TAKE_PROFIT": "TAKE_PROFIT_MARKET"}
_KIND_FROM_TYPE = {"MARKET": "MARKET", "STOP_MARKET": "STOP", "TAKE_PROFIT_MARKET": "TAKE_PROFIT"}

# -2011 "Unknown order sent", -2013 "Order does not exist"
_ORDER_NOT_FOUND_CODES = {-2011, -2013}
# -1021 timestamp hors recvWindow, -1003 trop de requêtes
_TRANSIENT_CODES = {-1021, -1003, -1001}


class MarketGateway(Protocol):
    async def list_instruments(self) -> List[Instrument]: ...

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> CandleSeries: ...

    async def fetch_open_orders(self, symbol: str) -> List[OpenOrder]: ...

    async def cancel_order(self, order_id: str, symbol: str) -> None: ...

    async def submit_market_order(self, symbol: str, side: Side, quantity: float) -> PlacedOrder: ...

    async def submit_conditional_order(self, symbol: str, kind: OrderKind, side: Side, quantity: float,
                                       trigger_price: float, reduce_only: bool = True) -> PlacedOrder: ...

    async def fetch_position(self, symbol: str) -> Optional[Position]: ...

    async def instrument_precision(self, symbol: str) -> Optional[InstrumentPrecision]: ...


def build_futures_client(mode: str, key: str | None, secret: str | None, timeout: float) -> UMFutures:
    base_url = BASE_URLS["mainnet"] if mode == "mainnet" else BASE_URLS["testnet"]
    return UMFutures(key=key or None, secret=secret or None, base_url=base_url, timeout=timeout)


def _plain(x: float) -> str:
    """Décimal fixe, sans notation scientifique ni zéros inutiles."""
    s = format(Decimal(str(x)).normalize(), "f")
    return s if s else "0"


def _map_client_error(what: str, e: ClientError) -> GatewayError:
    status = getattr(e, "status_code", None)
    code = getattr(e, "error_code", None)
    msg = f"{what}: HTTP {status} code={code} {getattr(e, 'error_message', e)}"
    if status in (418, 429) or code in _TRANSIENT_CODES:
        return GatewayTransientError(msg, status_code=status, error_code=code)
    if code in _ORDER_NOT_FOUND_CODES:
        return OrderNotFoundError(msg, status_code=status, error_code=code)
    return GatewayRejectedError(msg, status_code=status, error_code=code)


class BinanceFuturesGateway:
    """
    Passerelle Binance USDⓈ-M futures.
    Le connecteur est bloquant : chaque appel part dans un thread, borné par un timeout,
    et les appels sont sérialisés + espacés (discipline de rate-limit du compte).
    """

    def __init__(self, client: UMFutures, call_timeout_s: float = 10.0, min_call_interval_ms: int = 100,
                 exinfo_ttl_s: float = 3600.0, drain_timeout_s: float = 10.0):
        self.client = client
        self.call_timeout_s = float(call_timeout_s)
        self.min_interval_s = max(0.0, min_call_interval_ms / 1000.0)
        self.exinfo_ttl_s = exinfo_ttl_s
        # attente max d'un thread abandonné avant de rendre la main (>= timeout HTTP du connecteur)
        self.drain_timeout_s = float(drain_timeout_s)
        self._lock = asyncio.Lock()
        self._next_call_at = 0.0
        self._exinfo_cache: Dict[str, dict] = {}
        self._exinfo_loaded_at = 0.0

    async def _drain(self, what: str, fut: asyncio.Future) -> None:
        """wait_for abandonne l'await, pas le thread : on le laisse finir sous le verrou."""
        done, _ = await asyncio.wait({fut}, timeout=self.drain_timeout_s)
        if not done:
            fut.add_done_callback(lambda f: f.cancelled() or f.exception())
            logger.error("[gw] %s still running after %.1fs drain, releasing lock", what, self.drain_timeout_s)
            return
        if not fut.cancelled() and fut.exception() is None:
            logger.warning("[gw] %s completed after its timeout", what)

    async def _call(self, what: str, fn, *args, **kwargs) -> Any:
        async with self._lock:
            wait = self._next_call_at - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            fut = asyncio.ensure_future(asyncio.to_thread(fn, *args, **kwargs))
            try:
                return await asyncio.wait_for(asyncio.shield(fut), timeout=self.call_timeout_s)
            except asyncio.TimeoutError as e:
                await self._drain(what, fut)
                raise GatewayTransientError(f"{what}: timeout after {self.call_timeout_s}s") from e
            except ClientError as e:
                raise _map_client_error(what, e) from e
            except ServerError as e:
                status = getattr(e, "status_code", None)
                raise GatewayTransientError(f"{what}: server error HTTP {status}: {getattr(e, 'message', e)}",
                                            status_code=status) from e
            except requests.exceptions.RequestException as e:
                raise GatewayTransientError(f"{what}: {e!r}") from e
            finally:
                self._next_call_at = time.monotonic() + self.min_interval_s

    # ---------- metadata ----------
    async def _refresh_exchange_info(self) -> Dict[str, dict]:
        data = await self._call("exchange_info", self.client.exchange_info)
        self._exinfo_cache = {s["symbol"]: s for s in (data or {}).get("symbols", []) if s.get("symbol")}
        self._exinfo_loaded_at = time.monotonic()
        return self._exinfo_cache

    async def _symbol_info(self, symbol: str) -> Optional[dict]:
        stale = (time.monotonic() - self._exinfo_loaded_at) > self.exinfo_ttl_s
        if stale or symbol not in self._exinfo_cache:
            await self._refresh_exchange_info()
        return self._exinfo_cache.get(symbol)

    async def list_instruments(self) -> List[Instrument]:
        infos = await self._refresh_exchange_info()
        out: List[Instrument] = []
        for sym, s in infos.items():
            contract_type = s.get("contractType") or ""
            out.append(Instrument(
                symbol=sym,
                quote_asset=s.get("quoteAsset", ""),
                active=s.get("status") == "TRADING",
                is_perpetual=contract_type == "PERPETUAL",
                is_contract=bool(contract_type),
            ))
        return out

    async def instrument_precision(self, symbol: str) -> Optional[InstrumentPrecision]:
        info = await self._symbol_info(symbol)
        if not info:
            return None
        try:
            mins = filter_minimums(info.get("filters", []))
            return InstrumentPrecision(
                quantity_decimals=int(info["quantityPrecision"]),
                price_decimals=int(info["pricePrecision"]),
                **mins,
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("[gw] malformed precision metadata for %s: %r", symbol, e)
            return None

    # ---------- market data ----------
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> CandleSeries:
        """kline: [openTime, open, high, low, close, volume, closeTime, ...]"""
        rows = await self._call("klines", self.client.klines, symbol, timeframe, limit=limit)
        try:
            return CandleSeries.of(
                Candle(ts=int(k[0]), open=float(k[1]), high=float(k[2]), low=float(k[3]),
                       close=float(k[4]), volume=float(k[5]))
                for k in rows or []
            )
        except (IndexError, TypeError, ValueError) as e:
            raise GatewayRejectedError(f"klines {symbol}: malformed payload: {e}") from e

    # ---------- orders ----------
    async def fetch_open_orders(self, symbol: str) -> List[OpenOrder]:
        rows = await self._call("open_orders", self.client.get_orders, symbol=symbol)
        return [
            OpenOrder(
                id=str(o["orderId"]),
                symbol=o.get("symbol", symbol),
                side=o.get("side"),
                type=o.get("type"),
                reduce_only=bool(o.get("reduceOnly", False) or o.get("closePosition", False)),
            )
            for o in rows or []
        ]

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        await self._call("cancel_order", self.client.cancel_order, symbol=symbol, orderId=int(order_id))

    def _placed(self, res: dict, symbol: str, side: Side, kind: str, quantity: float,
                trigger: Optional[float]) -> PlacedOrder:
        try:
            avg_price = float(res.get("avgPrice") or 0)
        except (TypeError, ValueError):
            avg_price = 0.0
        return PlacedOrder(
            id=str(res.get("orderId", "")),
            symbol=symbol,
            side=side,
            kind=kind,
            quantity=quantity,
            trigger_price=trigger,
            avg_price=avg_price or None,
            status=res.get("status"),
        )

    async def submit_market_order(self, symbol: str, side: Side, quantity: float) -> PlacedOrder:
        res = await self._call(
            "new_order MARKET", self.client.new_order,
            symbol=symbol, side=side, type="MARKET",
            quantity=_plain(quantity), newOrderRespType="RESULT",
        )
        logger.info("[gw] MARKET %s %s qty=%s -> %s", symbol, side, quantity, res.get("orderId"))
        return self._placed(res, symbol, side, "MARKET", quantity, None)

    async def submit_conditional_order(self, symbol: str, kind: OrderKind, side: Side, quantity: float,
                                       trigger_price: float, reduce_only: bool = True) -> PlacedOrder:
        order_type = _CONDITIONAL_TYPES[kind]
        params = dict(symbol=symbol, side=side, type=order_type,
                      quantity=_plain(quantity), stopPrice=_plain(trigger_price),
                      workingType="MARK_PRICE")
        if reduce_only:
            params["reduceOnly"] = "true"
        res = await self._call(f"new_order {order_type}", self.client.new_order, **params)
        logger.info("[gw] %s %s %s qty=%s trigger=%s -> %s",
                    order_type, symbol, side, quantity, trigger_price, res.get("orderId"))
        return self._placed(res, symbol, side, kind, quantity, trigger_price)

    # ---------- positions (jamais en cache) ----------
    async def fetch_position(self, symbol: str) -> Optional[Position]:
        rows = await self._call("position_risk", self.client.get_position_risk, symbol=symbol)
        for p in rows or []:
            try:
                amt = float(p.get("positionAmt", 0) or 0)
            except (TypeError, ValueError):
                continue
            if amt == 0:
                continue
            return Position(
                symbol=p.get("symbol", symbol),
                side="LONG" if amt > 0 else "SHORT",
                entry_price=float(p.get("entryPrice", 0) or 0),
                amount=abs(amt),
                unrealized_pnl=float(p.get("unRealizedProfit", 0) or 0),
            )
        return None

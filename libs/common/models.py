from __future__ import annotations
from typing import Optional, Literal, Tuple, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Side = Literal["BUY", "SELL"]
DecisionSide = Literal["LONG", "SHORT", "NONE"]
OrderKind = Literal["STOP", "TAKE_PROFIT"]

_TF_UNITS_MS = {"m": 60_000, "h": 3_600_000, "d": 86_400_000, "w": 604_800_000}


def timeframe_ms(tf: str) -> int:
    """'1m' -> 60000, '4h' -> 14400000 ..."""
    tf = (tf or "").strip()
    if len(tf) < 2 or tf[-1] not in _TF_UNITS_MS or not tf[:-1].isdigit():
        raise ValueError(f"unsupported timeframe {tf!r}")
    n = int(tf[:-1])
    if n <= 0:
        raise ValueError(f"unsupported timeframe {tf!r}")
    return n * _TF_UNITS_MS[tf[-1]]


def opposite(side: Side) -> Side:
    return "SELL" if side == "BUY" else "BUY"


class Candle(BaseModel):
    model_config = ConfigDict(frozen=True)

    ts: int  # ms epoch, ouverture de la bougie
    open: float
    high: float
    low: float
    close: float
    volume: float


class CandleSeries(BaseModel):
    """Série OHLCV ordonnée (ts strictement croissant), immuable une fois chargée."""
    model_config = ConfigDict(frozen=True)

    candles: Tuple[Candle, ...] = ()

    @field_validator("candles")
    @classmethod
    def _strictly_increasing(cls, v: Tuple[Candle, ...]) -> Tuple[Candle, ...]:
        for prev, cur in zip(v, v[1:]):
            if cur.ts <= prev.ts:
                raise ValueError(f"candle timestamps not strictly increasing at ts={cur.ts}")
        return v

    @classmethod
    def of(cls, candles: Iterable[Candle]) -> "CandleSeries":
        return cls(candles=tuple(candles))

    def __len__(self) -> int:
        return len(self.candles)

    @property
    def last(self) -> Optional[Candle]:
        return self.candles[-1] if self.candles else None

    def upto(self, index: int) -> "CandleSeries":
        """Sous-série [0..index] incluse (index négatif accepté)."""
        n = len(self.candles)
        if index < 0:
            index += n
        if index < 0:
            return CandleSeries()
        return CandleSeries(candles=self.candles[: index + 1])

    def closed(self, timeframe: str, now_ms: int) -> "CandleSeries":
        """Retire les bougies dont le bucket n'est pas terminé à `now_ms`."""
        span = timeframe_ms(timeframe)
        return CandleSeries(candles=tuple(c for c in self.candles if c.ts + span <= now_ms))

    def closes(self):
        return [c.close for c in self.candles]

    def highs(self):
        return [c.high for c in self.candles]

    def lows(self):
        return [c.low for c in self.candles]

    def volumes(self):
        return [c.volume for c in self.candles]


# --- snapshot indicateurs ---

class MacdValue(BaseModel):
    model_config = ConfigDict(frozen=True)
    line: float
    signal: float
    hist: float


class AdxValue(BaseModel):
    model_config = ConfigDict(frozen=True)
    adx: float
    plus_di: float
    minus_di: float


class BollingerValue(BaseModel):
    model_config = ConfigDict(frozen=True)
    upper: float
    middle: float
    lower: float


class StochValue(BaseModel):
    model_config = ConfigDict(frozen=True)
    k: float
    d: float
    k_prev: float
    d_prev: float


class IndicatorSnapshot(BaseModel):
    """
    Dernières valeurs, alignées sur la dernière bougie CLÔTURÉE.
    None = données insuffisantes (jamais 0).
    """
    model_config = ConfigDict(frozen=True)

    ts: Optional[int] = None
    candles: int = 0
    close: Optional[float] = None
    volume: Optional[float] = None
    volume_avg: Optional[float] = None
    rsi: Optional[float] = None
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    ema_fast_prev: Optional[float] = None
    ema_slow_prev: Optional[float] = None
    ema_trend: Optional[float] = None
    macd: Optional[MacdValue] = None
    adx: Optional[AdxValue] = None
    atr: Optional[float] = None
    bollinger: Optional[BollingerValue] = None
    stoch: Optional[StochValue] = None

    def missing(self, *names: str) -> Tuple[str, ...]:
        return tuple(n for n in names if getattr(self, n) is None)


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    side: DecisionSide = "NONE"
    entry: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    rule: Optional[str] = None

    @model_validator(mode="after")
    def _levels_consistent(self) -> "Decision":
        if self.side == "NONE":
            if self.stop_loss is not None or self.take_profit is not None:
                raise ValueError("NONE decision cannot carry risk levels")
            return self
        if self.entry is None or self.stop_loss is None or self.take_profit is None:
            raise ValueError(f"{self.side} decision needs entry, stop_loss and take_profit")
        if self.side == "LONG" and not (self.stop_loss < self.entry < self.take_profit):
            raise ValueError("LONG requires stop_loss < entry < take_profit")
        if self.side == "SHORT" and not (self.take_profit < self.entry < self.stop_loss):
            raise ValueError("SHORT requires take_profit < entry < stop_loss")
        return self

    @property
    def fired(self) -> bool:
        return self.side != "NONE"

    @property
    def order_side(self) -> Optional[Side]:
        if self.side == "LONG":
            return "BUY"
        if self.side == "SHORT":
            return "SELL"
        return None

    @classmethod
    def none(cls, rule: Optional[str] = None) -> "Decision":
        return cls(side="NONE", rule=rule)


# --- exchange (lecture seule) ---

class Instrument(BaseModel):
    model_config = ConfigDict(frozen=True)
    symbol: str
    quote_asset: str
    active: bool
    is_perpetual: bool
    is_contract: bool


class InstrumentPrecision(BaseModel):
    model_config = ConfigDict(frozen=True)
    quantity_decimals: int = Field(ge=0)
    price_decimals: int = Field(ge=0)
    min_qty: Optional[float] = None
    min_notional: Optional[float] = None


class OpenOrder(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    symbol: str
    side: Optional[Side] = None
    type: Optional[str] = None
    reduce_only: bool = False


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)
    symbol: str
    side: Literal["LONG", "SHORT"]
    entry_price: float
    amount: float  # toujours positif, le sens est dans `side`
    unrealized_pnl: float = 0.0


class OrderRequest(BaseModel):
    model_config = ConfigDict(frozen=True)
    symbol: str
    side: Side
    quantity: float = Field(gt=0)
    kind: Literal["MARKET", "STOP", "TAKE_PROFIT"] = "MARKET"
    trigger_price: Optional[float] = None
    reduce_only: bool = False


class BracketPlan(BaseModel):
    """Construit une fois par décision, soumis, puis jeté."""
    model_config = ConfigDict(frozen=True)
    entry: OrderRequest
    stop: OrderRequest
    take_profit: OrderRequest


class PlacedOrder(BaseModel):
    """Accusé de l'exchange pour un ordre soumis."""
    model_config = ConfigDict(frozen=True)
    id: str
    symbol: str
    side: Side
    kind: Literal["MARKET", "STOP", "TAKE_PROFIT"]
    quantity: float
    trigger_price: Optional[float] = None
    avg_price: Optional[float] = None
    status: Optional[str] = None

"""
Jeux de règles (confluences) et évaluateur de signal.

Chaque jeu de règles est évalué d'un bloc contre UN snapshot : si un champ requis
manque, le résultat est NONE, jamais une condition partiellement vraie.
Tous les jeux livrés ici sont exclusifs par construction (voir docstrings) ;
l'évaluateur applique malgré tout un départage explicite : LONG gagne.
"""
from __future__ import annotations
import logging
from typing import Dict, Any, Optional, Tuple, Type

from libs.common.errors import IndicatorUndefinedError
from libs.common.models import Decision, IndicatorSnapshot, DecisionSide
from libs.common.precision import truncate
from libs.common.signals import SignalsConfig

logger = logging.getLogger(__name__)


class RuleSet:
    name = "base"
    DEFAULTS: Dict[str, Any] = {}

    def __init__(self, **params):
        unknown = set(params) - set(self.DEFAULTS)
        if unknown:
            raise ValueError(f"{self.name}: unknown parameters {sorted(unknown)}")
        self.p = dict(self.DEFAULTS)
        self.p.update(params)
        self.validate()

    def validate(self) -> None:
        pass

    @property
    def required(self) -> Tuple[str, ...]:
        return ()

    def long(self, s: IndicatorSnapshot, close: float) -> bool:
        raise NotImplementedError

    def short(self, s: IndicatorSnapshot, close: float) -> bool:
        raise NotImplementedError


class RsiReversal(RuleSet):
    """
    Survente/surachat : RSI < low -> LONG, RSI > high -> SHORT.
    Exclusif dès que low <= high (vérifié à la construction).
    """
    name = "rsi_reversal"
    DEFAULTS = {"rsi_low": 30.0, "rsi_high": 70.0}

    def validate(self) -> None:
        if self.p["rsi_low"] > self.p["rsi_high"]:
            raise ValueError("rsi_low must be <= rsi_high")

    @property
    def required(self):
        return ("rsi",)

    def long(self, s, close):
        return s.rsi < self.p["rsi_low"]

    def short(self, s, close):
        return s.rsi > self.p["rsi_high"]


class TrendConfluence(RuleSet):
    """
    Croisement EMA rapide/lente + zone RSI + signe MACD (+ ADX / volume optionnels).
    Exclusif : LONG exige ema_fast > ema_slow, SHORT exige ema_fast < ema_slow.
    """
    name = "trend_confluence"
    DEFAULTS = {
        "long_rsi_min": 50.0, "long_rsi_max": 70.0,
        "short_rsi_min": 30.0, "short_rsi_max": 50.0,
        "adx_min": 0.0,        # 0 = filtre désactivé
        "volume_surge": 0.0,   # 0 = filtre désactivé ; sinon volume >= avg * surge
    }

    @property
    def required(self):
        req = ("ema_fast", "ema_slow", "ema_fast_prev", "ema_slow_prev", "rsi", "macd")
        if self.p["adx_min"] > 0:
            req += ("adx",)
        if self.p["volume_surge"] > 0:
            req += ("volume", "volume_avg")
        return req

    def _filters_ok(self, s) -> bool:
        if self.p["adx_min"] > 0 and s.adx.adx < self.p["adx_min"]:
            return False
        if self.p["volume_surge"] > 0 and s.volume < s.volume_avg * self.p["volume_surge"]:
            return False
        return True

    def long(self, s, close):
        crossed_up = s.ema_fast_prev <= s.ema_slow_prev and s.ema_fast > s.ema_slow
        return (crossed_up
                and self.p["long_rsi_min"] <= s.rsi <= self.p["long_rsi_max"]
                and s.macd.line > s.macd.signal
                and self._filters_ok(s))

    def short(self, s, close):
        crossed_down = s.ema_fast_prev >= s.ema_slow_prev and s.ema_fast < s.ema_slow
        return (crossed_down
                and self.p["short_rsi_min"] <= s.rsi <= self.p["short_rsi_max"]
                and s.macd.line < s.macd.signal
                and self._filters_ok(s))


class BandReversion(RuleSet):
    """
    MACD vs signal, bande RSI, ADX fort avec dominance directionnelle, prix sur/à travers
    une bande de Bollinger. Exclusif : LONG exige MACD > signal, SHORT MACD < signal.
    """
    name = "band_reversion"
    DEFAULTS = {
        "long_rsi_min": 30.0, "long_rsi_max": 40.0,
        "short_rsi_min": 60.0, "short_rsi_max": 70.0,
        "adx_min": 25.0,
    }

    @property
    def required(self):
        return ("macd", "rsi", "adx", "bollinger")

    def long(self, s, close):
        return (s.macd.line > s.macd.signal
                and self.p["long_rsi_min"] < s.rsi < self.p["long_rsi_max"]
                and s.adx.adx > self.p["adx_min"]
                and s.adx.plus_di > s.adx.minus_di
                and close <= s.bollinger.lower)

    def short(self, s, close):
        return (s.macd.line < s.macd.signal
                and self.p["short_rsi_min"] < s.rsi < self.p["short_rsi_max"]
                and s.adx.adx > self.p["adx_min"]
                and s.adx.minus_di > s.adx.plus_di
                and close >= s.bollinger.upper)


class StochMomentum(RuleSet):
    """
    Croisement %K/%D en zone extrême + MACD + prix vs EMA tendance + volume + ADX.
    Exclusif : LONG exige %K > %D, SHORT exige %K < %D.
    """
    name = "stoch_momentum"
    DEFAULTS = {
        "stoch_low": 20.0, "stoch_high": 80.0,
        "adx_min": 20.0,
        "volume_surge": 1.5,
    }

    def validate(self) -> None:
        if self.p["stoch_low"] > self.p["stoch_high"]:
            raise ValueError("stoch_low must be <= stoch_high")

    @property
    def required(self):
        return ("stoch", "macd", "ema_trend", "adx", "volume", "volume_avg")

    def _common_ok(self, s) -> bool:
        return (s.adx.adx >= self.p["adx_min"]
                and s.volume >= s.volume_avg * self.p["volume_surge"])

    def long(self, s, close):
        st = s.stoch
        return (st.k_prev <= st.d_prev and st.k > st.d and st.k_prev < self.p["stoch_low"]
                and s.macd.line > s.macd.signal
                and close > s.ema_trend
                and self._common_ok(s))

    def short(self, s, close):
        st = s.stoch
        return (st.k_prev >= st.d_prev and st.k < st.d and st.k_prev > self.p["stoch_high"]
                and s.macd.line < s.macd.signal
                and close < s.ema_trend
                and self._common_ok(s))


RULE_SETS: Dict[str, Type[RuleSet]] = {
    cls.name: cls for cls in (RsiReversal, TrendConfluence, BandReversion, StochMomentum)
}


def build_rule_set(name: str, params: Optional[Dict[str, Any]] = None) -> RuleSet:
    try:
        cls = RULE_SETS[name]
    except KeyError:
        raise ValueError(f"unknown rule set {name!r} (known: {', '.join(sorted(RULE_SETS))})") from None
    return cls(**(params or {}))


def risk_levels(side: DecisionSide, entry: float, atr: float, sl_mult: float, tp_mult: float,
                price_decimals: Optional[int] = None) -> Tuple[float, float]:
    """stop = entry -/+ ATR*k1, tp = entry +/- ATR*k2, tronqués vers zéro."""
    if side == "LONG":
        stop, tp = entry - atr * sl_mult, entry + atr * tp_mult
    elif side == "SHORT":
        stop, tp = entry + atr * sl_mult, entry - atr * tp_mult
    else:
        raise ValueError("risk levels only exist for LONG/SHORT")
    if price_decimals is not None:
        stop, tp = truncate(stop, price_decimals), truncate(tp, price_decimals)
    return stop, tp


class SignalEvaluator:
    def __init__(self, rule_set: RuleSet, sl_atr_mult: float = 1.5, tp_atr_mult: float = 3.0,
                 price_decimals: Optional[int] = None):
        if sl_atr_mult <= 0 or tp_atr_mult <= 0:
            raise ValueError("ATR multipliers must be > 0")
        self.rule_set = rule_set
        self.sl_atr_mult = float(sl_atr_mult)
        self.tp_atr_mult = float(tp_atr_mult)
        self.price_decimals = price_decimals

    @property
    def required(self) -> Tuple[str, ...]:
        # ATR toujours requis pour les niveaux de risque
        req = self.rule_set.required
        return req if "atr" in req else req + ("atr",)

    def required_lookback(self, cfg: SignalsConfig) -> int:
        return max(cfg.period_of(f) for f in self.required) + 1

    def evaluate(self, snapshot: IndicatorSnapshot, last_close: float,
                 price_decimals: Optional[int] = None, strict: bool = False) -> Decision:
        rule = self.rule_set.name
        missing = snapshot.missing(*self.required)
        if missing:
            if strict:
                raise IndicatorUndefinedError(rule, missing)
            return Decision.none(rule)

        go_long = self.rule_set.long(snapshot, last_close)
        go_short = self.rule_set.short(snapshot, last_close)
        if go_long and go_short:
            logger.warning("[signal] %s: LONG and SHORT both true, tie-break -> LONG", rule,
                           extra={"rule": rule, "ts": snapshot.ts})
        if go_long:
            side: DecisionSide = "LONG"
        elif go_short:
            side = "SHORT"
        else:
            return Decision.none(rule)

        decimals = price_decimals if price_decimals is not None else self.price_decimals
        stop, tp = risk_levels(side, last_close, snapshot.atr, self.sl_atr_mult, self.tp_atr_mult, decimals)
        ordered = (0 < stop < last_close < tp) if side == "LONG" else (0 < tp < last_close < stop)
        if not ordered:
            # ATR nul, écrasé par la troncature, ou niveau <= 0 (ordre refusé par l'exchange)
            logger.warning("[signal] %s %s degenerate levels entry=%s stop=%s tp=%s atr=%s -> NONE",
                           rule, side, last_close, stop, tp, snapshot.atr)
            return Decision.none(rule)
        return Decision(side=side, entry=last_close, stop_loss=stop, take_profit=tp, rule=rule)

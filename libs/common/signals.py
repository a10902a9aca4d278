from __future__ import annotations
from typing import List, Optional, Any

from libs.common import indicators as ind
from libs.common.models import (
    CandleSeries, IndicatorSnapshot, MacdValue, AdxValue, BollingerValue, StochValue,
)


class SignalsConfig(dict):
    """
    Périodes des indicateurs, avec défauts raisonnables (surchargées par la section
    `strategy.indicators` de app.yaml).
    """
    DEFAULTS = {
        "rsi_period": 14,
        "ema_fast": 9,
        "ema_slow": 21,
        "ema_trend": 50,
        "macd_fast": 12,
        "macd_slow": 26,
        "macd_signal": 9,
        "adx_period": 14,
        "atr_period": 14,
        "bb_period": 20,
        "bb_mult": 2.0,
        "stoch_k": 14,
        "stoch_d": 3,
        "stoch_smooth": 3,
        "volume_lookback": 20,
    }

    def __init__(self, **kwargs):
        d = dict(self.DEFAULTS)
        d.update(kwargs or {})
        super().__init__(d)

    def period_of(self, field: str) -> int:
        """Période P gouvernant un champ du snapshot (défini seulement si len >= P + 1)."""
        return {
            "rsi": self["rsi_period"],
            "ema_fast": self["ema_fast"],
            "ema_slow": self["ema_slow"],
            "ema_fast_prev": self["ema_fast"] + 1,
            "ema_slow_prev": self["ema_slow"] + 1,
            "ema_trend": self["ema_trend"],
            "macd": self["macd_slow"] + self["macd_signal"] - 1,
            "adx": 2 * self["adx_period"] - 1,
            "atr": self["atr_period"],
            "bollinger": self["bb_period"],
            "stoch": self["stoch_k"] + self["stoch_smooth"] + self["stoch_d"] - 1,
            "volume_avg": self["volume_lookback"],
        }.get(field, 0)


def _latest(values: List[Optional[Any]], n: int, period: int, offset: int = 0) -> Optional[Any]:
    """Valeur à l'index n-1-offset, seulement si la sous-série fait au moins period+1 bougies."""
    idx = n - 1 - offset
    if idx < 0 or (idx + 1) < period + 1:
        return None
    return values[idx]


class IndicatorPipeline:
    """Série de bougies clôturées -> IndicatorSnapshot. Pas d'I/O, pas d'exception pour manque de données."""

    def __init__(self, cfg: Optional[SignalsConfig] = None):
        self.cfg = cfg or SignalsConfig()

    def compute(self, series: CandleSeries, last_closed_index: Optional[int] = None) -> IndicatorSnapshot:
        if last_closed_index is not None:
            series = series.upto(last_closed_index)
        n = len(series)
        if n == 0:
            return IndicatorSnapshot()

        cfg = self.cfg
        close, high, low, vol = series.closes(), series.highs(), series.lows(), series.volumes()

        ema_f = ind.ema(close, cfg["ema_fast"])
        ema_s = ind.ema(close, cfg["ema_slow"])
        ema_t = ind.ema(close, cfg["ema_trend"])

        m = _latest(ind.macd(close, cfg["macd_fast"], cfg["macd_slow"], cfg["macd_signal"]),
                    n, cfg["macd_slow"])
        a = _latest(ind.adx(high, low, close, cfg["adx_period"]), n, cfg["adx_period"])
        bb = _latest(ind.bollinger(close, cfg["bb_period"], float(cfg["bb_mult"])), n, cfg["bb_period"])

        k, d = ind.stochastic(high, low, close, cfg["stoch_k"], cfg["stoch_d"], cfg["stoch_smooth"])
        stoch = None
        k_now, d_now = _latest(k, n, cfg["stoch_k"]), _latest(d, n, cfg["stoch_k"])
        k_prev, d_prev = _latest(k, n, cfg["stoch_k"], 1), _latest(d, n, cfg["stoch_k"], 1)
        if None not in (k_now, d_now, k_prev, d_prev):
            stoch = StochValue(k=k_now, d=d_now, k_prev=k_prev, d_prev=d_prev)

        return IndicatorSnapshot(
            ts=series.last.ts,
            candles=n,
            close=close[-1],
            volume=vol[-1],
            volume_avg=_latest(ind.trailing_mean(vol, cfg["volume_lookback"]), n, cfg["volume_lookback"]),
            rsi=_latest(ind.rsi(close, cfg["rsi_period"]), n, cfg["rsi_period"]),
            ema_fast=_latest(ema_f, n, cfg["ema_fast"]),
            ema_slow=_latest(ema_s, n, cfg["ema_slow"]),
            ema_fast_prev=_latest(ema_f, n, cfg["ema_fast"], 1),
            ema_slow_prev=_latest(ema_s, n, cfg["ema_slow"], 1),
            ema_trend=_latest(ema_t, n, cfg["ema_trend"]),
            macd=MacdValue(line=m[0], signal=m[1], hist=m[2]) if m else None,
            adx=AdxValue(adx=a[0], plus_di=a[1], minus_di=a[2]) if a else None,
            atr=_latest(ind.atr(high, low, close, cfg["atr_period"]), n, cfg["atr_period"]),
            bollinger=BollingerValue(upper=bb[0], middle=bb[1], lower=bb[2]) if bb else None,
            stoch=stoch,
        )

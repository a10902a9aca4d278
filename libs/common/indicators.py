from __future__ import annotations
from typing import List, Optional, Tuple
from math import fabs, sqrt

# Toutes les fonctions renvoient une liste alignée sur l'entrée, None là où
# l'indicateur n'est pas (encore) défini. Aucune ne modifie ses arguments.


def sma(values: List[float], period: int) -> List[Optional[float]]:
    n = len(values)
    out: List[Optional[float]] = [None] * n
    if period < 1 or n < period:
        return out
    window = sum(values[:period])
    out[period - 1] = window / period
    for i in range(period, n):
        window += values[i] - values[i - period]
        out[i] = window / period
    return out


def ema(values: List[float], period: int) -> List[Optional[float]]:
    n = len(values)
    if period < 1 or n == 0:
        return [None] * n
    k = 2.0 / (period + 1.0)
    out: List[Optional[float]] = [None] * n
    # seed: SMA
    if n >= period:
        prev = sum(values[:period]) / period
        out[period - 1] = prev
        for i in range(period, n):
            prev = values[i] * k + prev * (1.0 - k)
            out[i] = prev
    return out


def _ema_tail(values: List[Optional[float]], period: int) -> List[Optional[float]]:
    """EMA d'une série dont le début est indéfini (ex: ligne MACD)."""
    start = next((i for i, v in enumerate(values) if v is not None), None)
    out: List[Optional[float]] = [None] * len(values)
    if start is None:
        return out
    tail = ema([float(v) for v in values[start:]], period)
    out[start:] = tail
    return out


def true_range(high: List[float], low: List[float], close: List[float]) -> List[Optional[float]]:
    """TR à partir de la 2e bougie (il faut la clôture précédente)."""
    n = len(close)
    out: List[Optional[float]] = [None] * n
    for i in range(1, n):
        out[i] = max(high[i] - low[i], fabs(high[i] - close[i - 1]), fabs(low[i] - close[i - 1]))
    return out


def atr(high: List[float], low: List[float], close: List[float], period: int) -> List[Optional[float]]:
    n = len(close)
    out: List[Optional[float]] = [None] * n
    if period < 1 or n < period + 1:
        return out
    trs = true_range(high, low, close)
    # Wilder: seed = SMA(TR[1..period]), puis lissage
    prev = sum(trs[1:period + 1]) / period
    out[period] = prev
    for i in range(period + 1, n):
        prev = (prev * (period - 1) + trs[i]) / period
        out[i] = prev
    return out


def rsi(values: List[float], period: int) -> List[Optional[float]]:
    n = len(values)
    out: List[Optional[float]] = [None] * n
    if period < 1 or n < period + 1:
        return out

    def _value(g: float, l: float) -> float:
        if l == 0:
            return 50.0 if g == 0 else 100.0
        rs = g / l
        return 100.0 - 100.0 / (1.0 + rs)

    gains = losses = 0.0
    for i in range(1, period + 1):
        diff = values[i] - values[i - 1]
        gains += max(diff, 0.0)
        losses += max(-diff, 0.0)
    avg_g, avg_l = gains / period, losses / period
    out[period] = _value(avg_g, avg_l)
    for i in range(period + 1, n):
        diff = values[i] - values[i - 1]
        avg_g = (avg_g * (period - 1) + max(diff, 0.0)) / period
        avg_l = (avg_l * (period - 1) + max(-diff, 0.0)) / period
        out[i] = _value(avg_g, avg_l)
    return out


def macd(values: List[float], fast: int = 12, slow: int = 26,
         signal: int = 9) -> List[Optional[Tuple[float, float, float]]]:
    """(ligne, signal, histogramme) ; défini quand la ligne ET le signal le sont."""
    n = len(values)
    ef, es = ema(values, fast), ema(values, slow)
    line: List[Optional[float]] = [
        (ef[i] - es[i]) if (ef[i] is not None and es[i] is not None) else None for i in range(n)
    ]
    sig = _ema_tail(line, signal)
    out: List[Optional[Tuple[float, float, float]]] = [None] * n
    for i in range(n):
        if line[i] is not None and sig[i] is not None:
            out[i] = (line[i], sig[i], line[i] - sig[i])
    return out


def bollinger(values: List[float], period: int = 20,
              mult: float = 2.0) -> List[Optional[Tuple[float, float, float]]]:
    """(upper, middle, lower) ; écart-type population."""
    n = len(values)
    mid = sma(values, period)
    out: List[Optional[Tuple[float, float, float]]] = [None] * n
    for i in range(n):
        m = mid[i]
        if m is None:
            continue
        window = values[i - period + 1:i + 1]
        sd = sqrt(sum((v - m) ** 2 for v in window) / period)
        out[i] = (m + mult * sd, m, m - mult * sd)
    return out


def adx(high: List[float], low: List[float], close: List[float],
        period: int = 14) -> List[Optional[Tuple[float, float, float]]]:
    """(adx, +DI, -DI) façon Wilder ; défini à partir de l'index 2*period - 1."""
    n = len(close)
    out: List[Optional[Tuple[float, float, float]]] = [None] * n
    if period < 1 or n < 2 * period:
        return out

    trs = true_range(high, low, close)
    pdm: List[float] = [0.0] * n
    mdm: List[float] = [0.0] * n
    for i in range(1, n):
        up = high[i] - high[i - 1]
        down = low[i - 1] - low[i]
        pdm[i] = up if (up > down and up > 0) else 0.0
        mdm[i] = down if (down > up and down > 0) else 0.0

    s_tr = sum(trs[1:period + 1])
    s_p = sum(pdm[1:period + 1])
    s_m = sum(mdm[1:period + 1])

    def _di(sp: float, sm: float, st: float) -> Tuple[float, float, float]:
        if st <= 0:
            return 0.0, 0.0, 0.0
        p, m = 100.0 * sp / st, 100.0 * sm / st
        dx = 100.0 * fabs(p - m) / (p + m) if (p + m) > 0 else 0.0
        return p, m, dx

    dis: List[Optional[Tuple[float, float, float]]] = [None] * n
    dis[period] = _di(s_p, s_m, s_tr)
    for i in range(period + 1, n):
        s_tr = s_tr - s_tr / period + trs[i]
        s_p = s_p - s_p / period + pdm[i]
        s_m = s_m - s_m / period + mdm[i]
        dis[i] = _di(s_p, s_m, s_tr)

    first = 2 * period - 1
    prev = sum(dis[i][2] for i in range(period, first + 1)) / period
    out[first] = (prev, dis[first][0], dis[first][1])
    for i in range(first + 1, n):
        prev = (prev * (period - 1) + dis[i][2]) / period
        out[i] = (prev, dis[i][0], dis[i][1])
    return out


def stochastic(high: List[float], low: List[float], close: List[float],
               k_period: int = 14, d_period: int = 3,
               smooth_k: int = 1) -> Tuple[List[Optional[float]], List[Optional[float]]]:
    """%K (lissé si smooth_k > 1) et %D = SMA(%K, d_period)."""
    n = len(close)
    raw: List[Optional[float]] = [None] * n
    for i in range(k_period - 1, n):
        hh = max(high[i - k_period + 1:i + 1])
        ll = min(low[i - k_period + 1:i + 1])
        # range nul -> milieu de l'échelle
        raw[i] = 50.0 if hh == ll else 100.0 * (close[i] - ll) / (hh - ll)
    k = _sma_tail(raw, smooth_k) if smooth_k > 1 else raw
    d = _sma_tail(k, d_period)
    return k, d


def _sma_tail(values: List[Optional[float]], period: int) -> List[Optional[float]]:
    start = next((i for i, v in enumerate(values) if v is not None), None)
    out: List[Optional[float]] = [None] * len(values)
    if start is None:
        return out
    out[start:] = sma([float(v) for v in values[start:]], period)
    return out


def trailing_mean(values: List[float], lookback: int) -> List[Optional[float]]:
    """Moyenne des `lookback` valeurs PRÉCÉDENTES (bar courant exclu)."""
    n = len(values)
    out: List[Optional[float]] = [None] * n
    if lookback < 1:
        return out
    for i in range(lookback, n):
        out[i] = sum(values[i - lookback:i]) / lookback
    return out

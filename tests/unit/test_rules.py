"""Tests for rule sets and the signal evaluator."""

import logging

import pytest

from libs.common.errors import IndicatorUndefinedError
from libs.common.models import (
    AdxValue, BollingerValue, IndicatorSnapshot, MacdValue, StochValue,
)
from libs.common.rules import (
    RULE_SETS, RuleSet, SignalEvaluator, build_rule_set, risk_levels,
)
from libs.common.signals import IndicatorPipeline
from tests.conftest import FLAT_CLOSES, LONG_CLOSES, RSI15_CLOSES, RSI85_CLOSES, SHORT_CLOSES, make_series


def _evaluate(closes, rule="rsi_reversal", price_decimals=2, **kw):
    series = make_series(closes)
    snap = IndicatorPipeline().compute(series)
    return SignalEvaluator(build_rule_set(rule), **kw).evaluate(snap, series.last.close, price_decimals)


class TestRsiReversalEndToEnd:
    def test_oversold_goes_long(self):
        d = _evaluate(LONG_CLOSES)
        assert d.side == "LONG"
        assert d.order_side == "BUY"
        assert (d.entry, d.stop_loss, d.take_profit) == (92.0, 89.0, 98.0)
        assert d.stop_loss < d.entry < d.take_profit

    def test_overbought_goes_short(self):
        d = _evaluate(SHORT_CLOSES)
        assert d.side == "SHORT"
        assert (d.entry, d.stop_loss, d.take_profit) == (108.0, 111.0, 102.0)
        assert d.take_profit < d.entry < d.stop_loss

    def test_neutral_is_none(self):
        d = _evaluate(FLAT_CLOSES)
        assert d.side == "NONE"
        assert d.stop_loss is None and d.take_profit is None

    def test_custom_multipliers(self):
        d = _evaluate(LONG_CLOSES, sl_atr_mult=1.0, tp_atr_mult=2.0)
        assert (d.stop_loss, d.take_profit) == (90.0, 96.0)

    def test_rsi_15_goes_long(self):
        snap = IndicatorPipeline().compute(make_series(RSI15_CLOSES))
        assert snap.rsi == pytest.approx(15.0)
        d = _evaluate(RSI15_CLOSES)
        assert d.side == "LONG"
        assert d.stop_loss is not None and d.take_profit is not None
        assert d.stop_loss < d.entry < d.take_profit
        assert d.stop_loss == pytest.approx(d.entry - 3.0, abs=0.011)

    def test_rsi_85_goes_short(self):
        snap = IndicatorPipeline().compute(make_series(RSI85_CLOSES))
        assert snap.rsi == pytest.approx(85.0)
        d = _evaluate(RSI85_CLOSES)
        assert d.side == "SHORT"
        assert d.stop_loss is not None and d.take_profit is not None
        assert d.take_profit < d.entry < d.stop_loss
        assert d.take_profit == pytest.approx(d.entry - 6.0, abs=0.011)

    def test_rsi_50_is_none(self):
        assert IndicatorPipeline().compute(make_series(FLAT_CLOSES)).rsi == pytest.approx(50.0)
        assert _evaluate(FLAT_CLOSES).side == "NONE"


class TestMissingIndicators:
    def test_short_series_is_none(self):
        assert _evaluate(LONG_CLOSES[:10]).side == "NONE"

    def test_strict_raises(self):
        snap = IndicatorPipeline().compute(make_series(LONG_CLOSES[:10]))
        ev = SignalEvaluator(build_rule_set("rsi_reversal"))
        with pytest.raises(IndicatorUndefinedError) as exc:
            ev.evaluate(snap, 95.0, strict=True)
        assert set(exc.value.missing) == {"rsi", "atr"}

    def test_atr_always_required(self):
        snap = IndicatorSnapshot(rsi=10.0)
        ev = SignalEvaluator(build_rule_set("rsi_reversal"))
        assert ev.evaluate(snap, 100.0).side == "NONE"


class TestLevels:
    def test_truncated_toward_zero(self):
        ev = SignalEvaluator(build_rule_set("rsi_reversal"))
        d = ev.evaluate(IndicatorSnapshot(rsi=10.0, atr=1.0), 92.123, price_decimals=2)
        assert (d.stop_loss, d.take_profit) == (90.62, 95.12)
        assert d.entry == 92.123

    def test_zero_atr_is_none(self, caplog):
        ev = SignalEvaluator(build_rule_set("rsi_reversal"))
        with caplog.at_level(logging.WARNING):
            d = ev.evaluate(IndicatorSnapshot(rsi=10.0, atr=0.0), 100.0, price_decimals=2)
        assert d.side == "NONE"
        assert "degenerate" in caplog.text

    def test_long_stop_at_or_below_zero_is_none(self, caplog):
        ev = SignalEvaluator(build_rule_set("rsi_reversal"))
        with caplog.at_level(logging.WARNING):
            d = ev.evaluate(IndicatorSnapshot(rsi=10.0, atr=1.0), 1.0, price_decimals=2)
        assert d.side == "NONE"
        assert "degenerate" in caplog.text

    def test_short_take_profit_at_or_below_zero_is_none(self):
        ev = SignalEvaluator(build_rule_set("rsi_reversal"))
        assert ev.evaluate(IndicatorSnapshot(rsi=90.0, atr=1.0), 2.0, price_decimals=2).side == "NONE"

    def test_risk_levels_short(self):
        stop, tp = risk_levels("SHORT", 100.0, 2.0, 1.5, 3.0)
        assert (stop, tp) == (103.0, 94.0)

    def test_risk_levels_none_side(self):
        with pytest.raises(ValueError):
            risk_levels("NONE", 100.0, 2.0, 1.5, 3.0)

    def test_multipliers_must_be_positive(self):
        with pytest.raises(ValueError):
            SignalEvaluator(build_rule_set("rsi_reversal"), sl_atr_mult=0)


class _Both(RuleSet):
    name = "both"

    @property
    def required(self):
        return ("rsi",)

    def long(self, s, close):
        return True

    def short(self, s, close):
        return True


def test_tie_break_long_wins(caplog):
    ev = SignalEvaluator(_Both())
    with caplog.at_level(logging.WARNING):
        d = ev.evaluate(IndicatorSnapshot(rsi=50.0, atr=1.0), 100.0)
    assert d.side == "LONG"
    assert "tie-break" in caplog.text


def _snap(**kw):
    base = dict(
        close=100.0, volume=3000.0, volume_avg=1000.0, rsi=35.0, atr=1.0,
        ema_fast=101.0, ema_slow=100.0, ema_fast_prev=99.0, ema_slow_prev=100.0, ema_trend=95.0,
        macd=MacdValue(line=1.0, signal=0.5, hist=0.5),
        adx=AdxValue(adx=30.0, plus_di=25.0, minus_di=15.0),
        bollinger=BollingerValue(upper=110.0, middle=105.0, lower=100.0),
        stoch=StochValue(k=25.0, d=20.0, k_prev=15.0, d_prev=18.0),
    )
    base.update(kw)
    return IndicatorSnapshot(**base)


class TestBandReversion:
    rs = build_rule_set("band_reversion")

    def test_long_on_lower_band(self):
        assert self.rs.long(_snap(), 100.0)
        assert not self.rs.short(_snap(), 100.0)

    def test_long_needs_strong_trend(self):
        assert not self.rs.long(_snap(adx=AdxValue(adx=20.0, plus_di=25.0, minus_di=15.0)), 100.0)

    def test_long_needs_close_at_or_below_lower(self):
        assert not self.rs.long(_snap(), 100.5)

    def test_short_on_upper_band(self):
        s = _snap(rsi=65.0, macd=MacdValue(line=0.2, signal=0.5, hist=-0.3),
                  adx=AdxValue(adx=30.0, plus_di=10.0, minus_di=20.0))
        assert self.rs.short(s, 110.0)
        assert not self.rs.long(s, 110.0)

    def test_rsi_band_is_exclusive(self):
        assert not self.rs.long(_snap(rsi=40.0), 100.0)


class TestTrendConfluence:
    def test_bullish_cross(self):
        rs = build_rule_set("trend_confluence")
        assert rs.long(_snap(rsi=55.0), 100.0)
        assert not rs.short(_snap(rsi=55.0), 100.0)

    def test_no_cross_no_signal(self):
        rs = build_rule_set("trend_confluence")
        assert not rs.long(_snap(rsi=55.0, ema_fast_prev=101.0), 100.0)

    def test_volume_filter_enabled(self):
        rs = build_rule_set("trend_confluence", {"volume_surge": 5.0})
        assert "volume_avg" in rs.required
        assert not rs.long(_snap(rsi=55.0), 100.0)

    def test_bearish_cross(self):
        rs = build_rule_set("trend_confluence")
        s = _snap(rsi=45.0, ema_fast=99.0, ema_fast_prev=101.0,
                  macd=MacdValue(line=-1.0, signal=0.0, hist=-1.0))
        assert rs.short(s, 100.0)


class TestStochMomentum:
    def test_long_cross_from_oversold(self):
        rs = build_rule_set("stoch_momentum")
        assert rs.long(_snap(), 100.0)

    def test_needs_volume_surge(self):
        rs = build_rule_set("stoch_momentum")
        assert not rs.long(_snap(volume=1200.0), 100.0)

    def test_short_cross_from_overbought(self):
        rs = build_rule_set("stoch_momentum")
        s = _snap(stoch=StochValue(k=75.0, d=80.0, k_prev=85.0, d_prev=82.0), ema_trend=105.0,
                  macd=MacdValue(line=-1.0, signal=0.0, hist=-1.0))
        assert rs.short(s, 100.0)


class TestRegistry:
    def test_known_rule_sets(self):
        assert set(RULE_SETS) == {"rsi_reversal", "trend_confluence", "band_reversion", "stoch_momentum"}

    def test_unknown_rule_set(self):
        with pytest.raises(ValueError, match="unknown rule set"):
            build_rule_set("martingale")

    def test_unknown_param(self):
        with pytest.raises(ValueError, match="unknown parameters"):
            build_rule_set("rsi_reversal", {"rsi_lo": 25})

    def test_inverted_thresholds(self):
        with pytest.raises(ValueError):
            build_rule_set("rsi_reversal", {"rsi_low": 80, "rsi_high": 20})

from __future__ import annotations
import logging
from typing import Any, Callable, Dict, Optional

from services.trader.config import AppConfig
from services.trader.cycle import CycleContext, CycleReport, now_ms, run_cycle
from services.trader.gateway import BinanceFuturesGateway, MarketGateway, build_futures_client
from services.trader.notify import Notifier
from services.trader.scheduler import IntervalScheduler

logger = logging.getLogger(__name__)


class TraderRuntime:
    """Assemble passerelle, notifier, contexte de cycle et scheduler pour un process."""

    def __init__(self, config: AppConfig, gateway: MarketGateway, notifier: Notifier,
                 clock: Callable[[], int] = now_ms):
        self.config = config
        self.gateway = gateway
        self.notifier = notifier
        self.context = CycleContext.build(config, gateway, notifier, clock)
        self.scheduler = IntervalScheduler(config.scheduler.interval_s, self.run_once,
                                           config.scheduler.overlap_policy)
        self.last_report: Optional[CycleReport] = None

    async def run_once(self) -> CycleReport:
        report = await run_cycle(self.context)
        self.last_report = report
        return report

    async def preview(self, symbol: str) -> Dict[str, Any]:
        """Indicateurs + décision sur les bougies clôturées, sans nettoyage ni ordre."""
        ctx = self.context
        strat = self.config.strategy
        raw = await self.gateway.fetch_candles(symbol, strat.timeframe, strat.candle_limit)
        closed = raw.closed(strat.timeframe, ctx.clock())
        snapshot = ctx.pipeline.compute(closed)
        precision = await self.gateway.instrument_precision(symbol)
        decision = ctx.evaluator.evaluate(
            snapshot, snapshot.close if snapshot.close is not None else 0.0,
            precision.price_decimals if precision else None,
        )
        return {
            "symbol": symbol,
            "timeframe": strat.timeframe,
            "closed_candles": len(closed),
            "min_lookback": strat.min_lookback,
            "enough_data": len(closed) >= strat.min_lookback,
            "rule_set": ctx.evaluator.rule_set.name,
            "snapshot": snapshot.model_dump(),
            "decision": decision.model_dump(),
        }


def build_runtime(config: AppConfig, gateway: Optional[MarketGateway] = None,
                  notifier: Optional[Notifier] = None, clock: Callable[[], int] = now_ms) -> TraderRuntime:
    if gateway is None:
        ex = config.exchange
        if not (ex.api_key and ex.api_secret):
            logger.warning("[runtime] no Binance keys provided, order calls will be rejected")
        if ex.mode == "mainnet":
            logger.warning("[runtime] MAINNET mode: real orders")
        client = build_futures_client(ex.mode, ex.api_key, ex.api_secret, ex.http_timeout_s)
        gateway = BinanceFuturesGateway(client, call_timeout_s=ex.call_timeout_s,
                                        min_call_interval_ms=ex.min_call_interval_ms,
                                        exinfo_ttl_s=ex.exinfo_ttl_s,
                                        drain_timeout_s=ex.http_timeout_s + 1.0)
    if notifier is None:
        notifier = Notifier(**config.notify.model_dump())
    return TraderRuntime(config, gateway, notifier, clock)

from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from libs.common.errors import IndicatorUndefinedError, InsufficientDataError, TraderError
from libs.common.models import Decision
from libs.common.rules import SignalEvaluator
from libs.common.signals import IndicatorPipeline
from services.trader.config import AppConfig
from services.trader.gateway import MarketGateway
from services.trader.notify import Notifier
from services.trader.orchestrator import BracketReport, CleanupReport, OrderOrchestrator
from services.trader.universe import SymbolUniverse

logger = logging.getLogger(__name__)


def now_ms() -> int: return int(time.time() * 1000)


@dataclass
class CycleContext:
    """Tout ce dont un tick a besoin ; aucun client global."""
    config: AppConfig
    gateway: MarketGateway
    notifier: Notifier
    universe: SymbolUniverse
    pipeline: IndicatorPipeline
    evaluator: SignalEvaluator
    orchestrator: OrderOrchestrator
    clock: Callable[[], int] = now_ms

    @classmethod
    def build(cls, config: AppConfig, gateway: MarketGateway, notifier: Notifier,
              clock: Callable[[], int] = now_ms) -> "CycleContext":
        return cls(
            config=config,
            gateway=gateway,
            notifier=notifier,
            universe=SymbolUniverse(gateway, config.universe),
            pipeline=IndicatorPipeline(config.strategy.signals_config()),
            evaluator=config.strategy.build_evaluator(),
            orchestrator=OrderOrchestrator(gateway, notifier, config.execution),
            clock=clock,
        )


class SymbolStatus(str, Enum):
    NO_SIGNAL = "NO_SIGNAL"
    BRACKET = "BRACKET"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    INDICATOR_UNDEFINED = "INDICATOR_UNDEFINED"
    ERROR = "ERROR"


@dataclass
class SymbolReport:
    symbol: str
    status: SymbolStatus
    decision: Optional[Decision] = None
    cleanup: Optional[CleanupReport] = None
    bracket: Optional[BracketReport] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "decision": self.decision.model_dump() if self.decision else None,
            "cleanup": self.cleanup.to_dict() if self.cleanup else None,
            "bracket": self.bracket.to_dict() if self.bracket else None,
            "error": self.error,
        }


@dataclass
class CycleReport:
    started_ms: int
    finished_ms: Optional[int] = None
    symbols: List[SymbolReport] = field(default_factory=list)
    universe_error: Optional[str] = None

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for r in self.symbols:
            out[r.status.value] = out.get(r.status.value, 0) + 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_ms": self.started_ms,
            "finished_ms": self.finished_ms,
            "universe_error": self.universe_error,
            "counts": self.counts(),
            "symbols": [r.to_dict() for r in self.symbols],
        }


async def _process(ctx: CycleContext, symbol: str) -> SymbolReport:
    strat = ctx.config.strategy

    raw = await ctx.gateway.fetch_candles(symbol, strat.timeframe, strat.candle_limit)
    # jamais la bougie en formation
    closed = raw.closed(strat.timeframe, ctx.clock())
    if len(closed) < strat.min_lookback:
        raise InsufficientDataError(symbol, len(closed), strat.min_lookback)

    cleanup = await ctx.orchestrator.cleanup(symbol)

    snapshot = ctx.pipeline.compute(closed)
    precision = await ctx.gateway.instrument_precision(symbol)
    price_decimals = precision.price_decimals if precision else None
    try:
        decision = ctx.evaluator.evaluate(snapshot, closed.last.close, price_decimals, strict=True)
    except IndicatorUndefinedError as e:
        logger.warning("[cycle] %s: %s -> NONE", symbol, e, extra={"symbol": symbol, "missing": e.missing})
        return SymbolReport(symbol, SymbolStatus.INDICATOR_UNDEFINED, Decision.none(e.rule), cleanup)

    if not decision.fired:
        logger.info("[cycle] %s: no signal (%s)", symbol, decision.rule)
        return SymbolReport(symbol, SymbolStatus.NO_SIGNAL, decision, cleanup)

    logger.info("[cycle] %s: %s signal entry=%s stop=%s tp=%s", symbol, decision.side,
                decision.entry, decision.stop_loss, decision.take_profit)
    bracket = await ctx.orchestrator.execute(symbol, decision, cleanup)
    return SymbolReport(symbol, SymbolStatus.BRACKET, decision, cleanup, bracket)


async def process_symbol(ctx: CycleContext, symbol: str) -> SymbolReport:
    """Frontière d'isolation : rien de ce qui se passe ici n'atteint les autres symboles."""
    try:
        return await _process(ctx, symbol)
    except InsufficientDataError as e:
        logger.info("[cycle] skip %s: %s", symbol, e)
        return SymbolReport(symbol, SymbolStatus.INSUFFICIENT_DATA, error=str(e))
    except TraderError as e:
        logger.error("[cycle] %s aborted: %s: %s", symbol, type(e).__name__, e)
        await ctx.notifier.send(f"❌ {symbol} cycle ERROR — {type(e).__name__}: {e}")
        return SymbolReport(symbol, SymbolStatus.ERROR, error=f"{type(e).__name__}: {e}")
    except Exception as e:
        logger.exception("[cycle] %s unexpected error", symbol)
        await ctx.notifier.send(f"❌ {symbol} cycle ERROR (unexpected) — {e!r}")
        return SymbolReport(symbol, SymbolStatus.ERROR, error=repr(e))


async def run_cycle(ctx: CycleContext) -> CycleReport:
    report = CycleReport(started_ms=ctx.clock())
    try:
        symbols = await ctx.universe.resolve()
    except Exception as e:
        logger.error("[cycle] universe resolution failed: %r", e)
        await ctx.notifier.send(f"❌ universe ERROR — {e}")
        report.universe_error = str(e)
        report.finished_ms = ctx.clock()
        return report

    sem = asyncio.Semaphore(ctx.config.scheduler.max_concurrency)

    async def _guarded(sym: str) -> SymbolReport:
        async with sem:
            return await process_symbol(ctx, sym)

    report.symbols = list(await asyncio.gather(*(_guarded(s) for s in symbols)))
    report.finished_ms = ctx.clock()
    logger.info("[cycle] done in %sms: %s", report.finished_ms - report.started_ms, report.counts())
    return report

"""
Orchestration d'un bracket (entrée MARKET + STOP + TAKE_PROFIT reduce-only) pour un symbole.

IDLE -> STALE_ORDERS_CANCELLED -> ENTRY_SUBMITTED -> BRACKET_COMPLETE | BRACKET_PARTIAL -> DONE
Chemins d'abandon : SIZING_FAILED -> DONE, ENTRY_FAILED -> DONE.
Rien ne survit à DONE : le cycle suivant repart d'IDLE avec un nouveau nettoyage.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from libs.common.errors import (
    EntryPlacementError, GatewayError, GatewayTransientError, OrderCleanupError, OrderNotFoundError,
    ProtectiveLegError, SizingError, TraderError,
)
from libs.common.models import (
    BracketPlan, Decision, OpenOrder, OrderRequest, PlacedOrder, Position, opposite,
)
from libs.common.precision import quantity_for_notional, truncate
from services.trader.config import ExecutionConfig
from services.trader.gateway import MarketGateway
from services.trader.notify import Notifier

logger = logging.getLogger(__name__)


class BracketState(str, Enum):
    IDLE = "IDLE"
    STALE_ORDERS_CANCELLED = "STALE_ORDERS_CANCELLED"
    ENTRY_SUBMITTED = "ENTRY_SUBMITTED"
    BRACKET_COMPLETE = "BRACKET_COMPLETE"
    BRACKET_PARTIAL = "BRACKET_PARTIAL"
    SIZING_FAILED = "SIZING_FAILED"
    ENTRY_FAILED = "ENTRY_FAILED"
    DONE = "DONE"


_TERMINAL = (BracketState.BRACKET_COMPLETE, BracketState.BRACKET_PARTIAL,
             BracketState.SIZING_FAILED, BracketState.ENTRY_FAILED)


@dataclass
class CleanupReport:
    symbol: str
    cancelled: List[str] = field(default_factory=list)
    already_gone: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "cancelled": list(self.cancelled),
                "already_gone": list(self.already_gone), "kept": list(self.kept)}


@dataclass
class BracketReport:
    symbol: str
    decision: Decision
    states: List[BracketState] = field(default_factory=lambda: [BracketState.IDLE])
    plan: Optional[BracketPlan] = None
    entry: Optional[PlacedOrder] = None
    stop: Optional[PlacedOrder] = None
    take_profit: Optional[PlacedOrder] = None
    position: Optional[Position] = None
    error: Optional[TraderError] = None
    entry_uncertain: bool = False
    leg_errors: List[ProtectiveLegError] = field(default_factory=list)

    def advance(self, state: BracketState) -> None:
        self.states.append(state)

    @property
    def outcome(self) -> BracketState:
        for st in reversed(self.states):
            if st in _TERMINAL:
                return st
        return self.states[-1]

    def summary(self) -> str:
        d = self.decision
        head = f"{d.side} {self.symbol}"
        outcome = self.outcome
        if outcome == BracketState.SIZING_FAILED:
            return f"❌ Sizing FAIL {head} — {self.error}"
        if outcome == BracketState.ENTRY_FAILED:
            hint = ("état de l'entrée incertain, vérifier l'exchange ; aucun stop/tp envoyé"
                    if self.entry_uncertain else "aucun stop/tp envoyé")
            return f"❌ Entrée FAIL {head} — {self.error}\n({hint})"

        qty = self.plan.entry.quantity if self.plan else None
        fill = self.entry.avg_price if (self.entry and self.entry.avg_price) else d.entry
        lines = [
            f"entrée≈{fill} qty={qty} ({d.rule})",
            f"stop={d.stop_loss} {'✅' if self.stop else '❌'}",
            f"tp={d.take_profit} {'✅' if self.take_profit else '❌'}",
        ]
        if self.entry_uncertain:
            lines.append("réponse d'entrée perdue, exécution confirmée par la position")
        if outcome == BracketState.BRACKET_PARTIAL:
            lines += [f"- {e.kind}: {e.reason}" for e in self.leg_errors]
            return f"⚠️ Bracket PARTIAL {head} — position NON protégée\n" + "\n".join(lines)
        return f"✅ Bracket {head}\n" + "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "decision": self.decision.model_dump(),
            "states": [s.value for s in self.states],
            "outcome": self.outcome.value,
            "entry_order": self.entry.model_dump() if self.entry else None,
            "stop_order": self.stop.model_dump() if self.stop else None,
            "take_profit_order": self.take_profit.model_dump() if self.take_profit else None,
            "error": str(self.error) if self.error else None,
            "entry_uncertain": self.entry_uncertain,
            "leg_errors": [str(e) for e in self.leg_errors],
        }


class OrderOrchestrator:
    def __init__(self, gateway: MarketGateway, notifier: Notifier, cfg: ExecutionConfig):
        self.gateway = gateway
        self.notifier = notifier
        self.cfg = cfg

    # ---------- 1) nettoyage ----------
    async def cleanup(self, symbol: str) -> CleanupReport:
        """Annule les ordres ouverts du symbole avant toute nouvelle évaluation."""
        report = CleanupReport(symbol=symbol)
        orders: List[OpenOrder] = await self.gateway.fetch_open_orders(symbol)
        if not orders:
            return report

        to_cancel = orders
        if self.cfg.preserve_live_protection and any(o.reduce_only for o in orders):
            position = await self.gateway.fetch_position(symbol)
            if position is not None:
                to_cancel = [o for o in orders if not o.reduce_only]
                report.kept = [o.id for o in orders if o.reduce_only]

        failed: List[str] = []
        for o in to_cancel:
            try:
                await self.gateway.cancel_order(o.id, symbol)
                report.cancelled.append(o.id)
            except OrderNotFoundError:
                # déjà exécuté/annulé côté exchange
                report.already_gone.append(o.id)
            except GatewayError as e:
                logger.warning("[cleanup] %s cancel %s failed: %s", symbol, o.id, e)
                failed.append(o.id)

        if report.cancelled:
            logger.info("[cleanup] %s cancelled %d stale order(s)", symbol, len(report.cancelled),
                        extra={"symbol": symbol, "orders": report.cancelled})
        if failed:
            raise OrderCleanupError(symbol, failed)
        return report

    # ---------- 2..5) bracket ----------
    def build_plan(self, symbol: str, decision: Decision, quantity: float,
                   leg_quantity: Optional[float] = None) -> BracketPlan:
        side = decision.order_side
        exit_side = opposite(side)
        leg_qty = leg_quantity or quantity
        return BracketPlan(
            entry=OrderRequest(symbol=symbol, side=side, quantity=quantity),
            stop=OrderRequest(symbol=symbol, side=exit_side, quantity=leg_qty, kind="STOP",
                              trigger_price=decision.stop_loss, reduce_only=True),
            take_profit=OrderRequest(symbol=symbol, side=exit_side, quantity=leg_qty, kind="TAKE_PROFIT",
                                     trigger_price=decision.take_profit, reduce_only=True),
        )

    async def _size(self, symbol: str, decision: Decision):
        try:
            precision = await self.gateway.instrument_precision(symbol)
        except GatewayError as e:
            raise SizingError(f"instrument metadata unavailable for {symbol}: {e}") from e
        return precision, quantity_for_notional(self.cfg.notional_quote, decision.entry, precision)

    async def _leg_quantity(self, report: BracketReport, quantity: float, decimals: int) -> float:
        """Taille de la position réellement ouverte si l'exchange la donne, sinon la qty d'entrée."""
        try:
            position = await self.gateway.fetch_position(report.symbol)
        except GatewayError as e:
            logger.warning("[bracket] %s position lookup failed, legs sized on entry qty: %s", report.symbol, e)
            return quantity
        report.position = position
        if position is None or position.side != report.decision.side:
            return quantity
        amount = truncate(position.amount, decimals)
        return amount if amount > 0 else quantity

    async def _entry_filled_anyway(self, report: BracketReport, err: GatewayTransientError) -> bool:
        """
        Après une erreur transitoire sur l'entrée, la position fait foi : une position du côté
        de la décision = entrée exécutée, on enchaîne sur les jambes de protection.
        """
        symbol, side = report.symbol, report.decision.side
        report.entry_uncertain = True
        try:
            position = await self.gateway.fetch_position(symbol)
        except GatewayError as e:
            report.error = EntryPlacementError(f"{err}; position lookup failed: {e}")
            logger.error("[bracket] %s entry %s state unknown: %s", symbol, side, report.error)
            return False
        report.position = position
        if position is not None and position.side == side:
            logger.warning("[bracket] %s entry %s errored (%s) but the position is open, placing legs",
                           symbol, side, err)
            return True
        report.error = EntryPlacementError(f"{err}; no {side} position found")
        logger.error("[bracket] %s entry %s failed: %s", symbol, side, report.error)
        return False

    async def execute(self, symbol: str, decision: Decision, cleanup: CleanupReport) -> BracketReport:
        """
        Place le bracket pour une décision LONG/SHORT. `cleanup` est le rapport de nettoyage
        du même cycle : pas de bracket sans nettoyage préalable.
        Envoie exactement une notification, quel que soit le résultat.
        """
        if not decision.fired:
            raise ValueError("execute() needs a LONG/SHORT decision")
        if cleanup.symbol != symbol:
            raise ValueError(f"cleanup report is for {cleanup.symbol}, not {symbol}")

        report = BracketReport(symbol=symbol, decision=decision)
        report.advance(BracketState.STALE_ORDERS_CANCELLED)
        try:
            await self._run(report)
        finally:
            report.advance(BracketState.DONE)
        await self.notifier.send(report.summary())
        return report

    async def _run(self, report: BracketReport) -> None:
        symbol, decision = report.symbol, report.decision

        try:
            precision, qty = await self._size(symbol, decision)
        except SizingError as e:
            logger.error("[bracket] %s sizing failed: %s", symbol, e)
            report.error = e
            report.advance(BracketState.SIZING_FAILED)
            return

        report.plan = self.build_plan(symbol, decision, qty)
        try:
            report.entry = await self.gateway.submit_market_order(symbol, report.plan.entry.side, qty)
        except GatewayTransientError as e:
            # timeout / réseau : l'ordre a pu passer quand même
            if not await self._entry_filled_anyway(report, e):
                report.advance(BracketState.ENTRY_FAILED)
                return
        except GatewayError as e:
            report.error = EntryPlacementError(str(e))
            logger.error("[bracket] %s entry %s failed, bracket aborted: %s", symbol, decision.side, e)
            report.advance(BracketState.ENTRY_FAILED)
            return
        report.advance(BracketState.ENTRY_SUBMITTED)

        leg_qty = await self._leg_quantity(report, qty, precision.quantity_decimals)
        if leg_qty != qty:
            report.plan = self.build_plan(symbol, decision, qty, leg_qty)

        for leg in (report.plan.stop, report.plan.take_profit):
            try:
                placed = await self.gateway.submit_conditional_order(
                    symbol, leg.kind, leg.side, leg.quantity, leg.trigger_price, reduce_only=True)
            except Exception as e:
                # l'entrée est vivante : on tente toujours la jambe sœur, pas de rollback, pas de retry
                err = ProtectiveLegError(leg.kind, symbol, str(e))
                report.leg_errors.append(err)
                logger.error("[bracket] %s", err, extra={"symbol": symbol, "leg": leg.kind})
                continue
            if leg.kind == "STOP":
                report.stop = placed
            else:
                report.take_profit = placed

        if report.leg_errors:
            report.advance(BracketState.BRACKET_PARTIAL)
        else:
            report.advance(BracketState.BRACKET_COMPLETE)
            logger.info("[bracket] %s %s complete qty=%s stop=%s tp=%s", symbol, decision.side,
                        qty, decision.stop_loss, decision.take_profit)

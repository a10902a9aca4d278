from typing import Dict, Any, Optional, List
from decimal import Decimal, ROUND_DOWN, InvalidOperation, localcontext

from libs.common.errors import SizingError
from libs.common.models import InstrumentPrecision

# précision locale suffisante pour éviter les artefacts binaires (contexte appelant intact)
DECIMAL_PREC = 40


def _flt(filters: List[Dict[str, Any]], ftype: str) -> Optional[Dict[str, Any]]:
    for f in filters or []:
        if f.get("filterType") == ftype:
            return f
    return None


def truncate(x: float, decimals: int) -> float:
    """Tronque vers zéro à `decimals` décimales (jamais d'arrondi) : -1.23456 -> -1.23."""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PREC
        q = Decimal(str(x)).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)
    return float(q)


def filter_minimums(filters: List[Dict[str, Any]]) -> Dict[str, Optional[float]]:
    """minQty (LOT_SIZE / MARKET_LOT_SIZE) et notional minimum (MIN_NOTIONAL / NOTIONAL)."""
    lot = _flt(filters, "MARKET_LOT_SIZE") or _flt(filters, "LOT_SIZE")
    min_qty = None
    if lot:
        try:
            min_qty = float(lot.get("minQty", 0)) or None
        except (TypeError, ValueError):
            min_qty = None
    mn = _flt(filters, "MIN_NOTIONAL") or _flt(filters, "NOTIONAL")
    min_notional = None
    if mn:
        # futures: "notional" ; spot: "minNotional"
        raw = mn.get("notional", mn.get("minNotional", 0))
        try:
            min_notional = float(raw) or None
        except (TypeError, ValueError):
            min_notional = None
    return {"min_qty": min_qty, "min_notional": min_notional}


def quantity_for_notional(notional: float, price: float,
                          precision: Optional[InstrumentPrecision]) -> float:
    """
    Budget fixe (devise de cotation) -> quantité tronquée à la précision instrument.
    Lève SizingError si la quantité n'est pas exploitable.
    """
    if precision is None:
        raise SizingError("instrument precision unavailable")
    try:
        n = Decimal(str(notional))
        p = Decimal(str(price))
    except (InvalidOperation, ValueError) as e:
        raise SizingError(f"invalid sizing inputs notional={notional} price={price}") from e
    if n <= 0 or p <= 0:
        raise SizingError(f"invalid sizing inputs notional={notional} price={price}")

    with localcontext() as ctx:
        ctx.prec = DECIMAL_PREC
        ratio = n / p
    qty = truncate(float(ratio), precision.quantity_decimals)
    if qty <= 0:
        raise SizingError(
            f"quantity truncates to 0 (notional={notional}, price={price}, "
            f"decimals={precision.quantity_decimals})"
        )
    if precision.min_qty is not None and qty < precision.min_qty:
        raise SizingError(f"quantity {qty} below minQty {precision.min_qty}")
    if precision.min_notional is not None and qty * price + 1e-12 < precision.min_notional:
        raise SizingError(f"notional {qty * price:.4f} below minimum {precision.min_notional}")
    return qty

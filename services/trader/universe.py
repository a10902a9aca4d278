from __future__ import annotations
import logging
from typing import Tuple

from libs.common.models import Instrument
from services.trader.config import UniverseConfig
from services.trader.gateway import MarketGateway

logger = logging.getLogger(__name__)


def is_eligible(inst: Instrument, quote_asset: str) -> bool:
    return (inst.quote_asset.upper() == quote_asset
            and inst.active
            and inst.is_perpetual
            and inst.is_contract)


class SymbolUniverse:
    """Symboles tradables : perpétuels actifs cotés dans la devise voulue. Ordre trié = cycles reproductibles."""

    def __init__(self, gateway: MarketGateway, cfg: UniverseConfig):
        self.gateway = gateway
        self.cfg = cfg

    async def resolve(self) -> Tuple[str, ...]:
        instruments = await self.gateway.list_instruments()
        eligible = {i.symbol for i in instruments if is_eligible(i, self.cfg.quote_asset)}

        if self.cfg.allowlist:
            wanted = {s.upper() for s in self.cfg.allowlist}
            unknown = wanted - eligible
            if unknown:
                logger.warning("[universe] allowlisted symbols not eligible: %s", ", ".join(sorted(unknown)))
            eligible &= wanted
        eligible -= {s.upper() for s in self.cfg.exclude}

        symbols = tuple(sorted(eligible))
        if self.cfg.max_symbols is not None:
            symbols = symbols[: self.cfg.max_symbols]
        logger.debug("[universe] %d symbols (quote=%s)", len(symbols), self.cfg.quote_asset)
        return symbols

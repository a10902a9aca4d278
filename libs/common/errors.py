# libs/common/errors.py
from __future__ import annotations
from typing import Optional, Sequence


class TraderError(Exception):
    """Racine de toutes les erreurs métier du bot."""


# --- données / signaux ---

class InsufficientDataError(TraderError):
    """Moins de bougies clôturées que le lookback minimum (cas attendu, on saute le symbole)."""

    def __init__(self, symbol: str, have: int, need: int):
        super().__init__(f"{symbol}: {have} closed candles < min lookback {need}")
        self.symbol = symbol
        self.have = have
        self.need = need


class IndicatorUndefinedError(TraderError):
    """Indicateur requis absent alors que la série est assez longue (anomalie amont)."""

    def __init__(self, rule: str, missing: Sequence[str]):
        super().__init__(f"rule set {rule!r}: indicators undefined: {', '.join(missing)}")
        self.rule = rule
        self.missing = tuple(missing)


# --- ordres ---

class SizingError(TraderError):
    """Métadonnées instrument manquantes/invalides, ou quantité nulle après troncature."""


class EntryPlacementError(TraderError):
    """L'ordre d'entrée a échoué : le bracket est abandonné."""


class ProtectiveLegError(TraderError):
    """Échec d'une jambe STOP ou TAKE_PROFIT après une entrée réussie."""

    def __init__(self, kind: str, symbol: str, reason: str):
        super().__init__(f"{kind} leg failed for {symbol}: {reason}")
        self.kind = kind
        self.symbol = symbol
        self.reason = reason


class OrderCleanupError(TraderError):
    """Certains ordres périmés n'ont pas pu être annulés."""

    def __init__(self, symbol: str, failed: Sequence[str]):
        super().__init__(f"{symbol}: could not cancel stale orders {', '.join(failed)}")
        self.symbol = symbol
        self.failed = tuple(failed)


# --- passerelle exchange ---

class GatewayError(TraderError):
    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class GatewayTransientError(GatewayError):
    """Réseau, timeout, 5xx, rate limit : le prochain tick fait office de retry."""


class GatewayRejectedError(GatewayError):
    """Rejet métier de l'exchange (4xx)."""


class OrderNotFoundError(GatewayRejectedError):
    """Ordre inconnu (déjà exécuté ou annulé)."""


class NotificationError(TraderError):
    """Toujours avalée par le Notifier."""

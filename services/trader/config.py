from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from libs.common.models import timeframe_ms
from libs.common.rules import SignalEvaluator, build_rule_set
from libs.common.signals import SignalsConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/app.yaml"


def deep_merge(a, b):
    if not isinstance(a, dict): a = {}
    if not isinstance(b, dict): b = {}
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out


class ExchangeConfig(BaseModel):
    mode: Literal["mainnet", "testnet"] = "testnet"
    api_key: str = Field("", repr=False)
    api_secret: str = Field("", repr=False)
    http_timeout_s: float = Field(8.0, gt=0)     # timeout requests du connecteur
    call_timeout_s: float = Field(10.0, gt=0)    # borne dure côté asyncio
    min_call_interval_ms: int = Field(100, ge=0)
    exinfo_ttl_s: float = Field(3600.0, gt=0)


class UniverseConfig(BaseModel):
    quote_asset: str = "USDT"
    allowlist: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)
    max_symbols: Optional[int] = Field(None, ge=1)

    @field_validator("quote_asset")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()


class StrategyConfig(BaseModel):
    rule_set: str = "band_reversion"
    params: Dict[str, Any] = Field(default_factory=dict)
    indicators: Dict[str, Any] = Field(default_factory=dict)
    timeframe: str = "5m"
    candle_limit: int = Field(100, ge=2, le=1500)
    min_lookback: int = Field(40, ge=2)
    sl_atr_mult: float = Field(1.5, gt=0)
    tp_atr_mult: float = Field(3.0, gt=0)

    @field_validator("timeframe")
    @classmethod
    def _tf(cls, v: str) -> str:
        timeframe_ms(v)
        return v

    def signals_config(self) -> SignalsConfig:
        return SignalsConfig(**self.indicators)

    def build_evaluator(self) -> SignalEvaluator:
        return SignalEvaluator(build_rule_set(self.rule_set, self.params),
                               sl_atr_mult=self.sl_atr_mult, tp_atr_mult=self.tp_atr_mult)

    @model_validator(mode="after")
    def _lookback_fits(self) -> "StrategyConfig":
        unknown = set(self.indicators) - set(SignalsConfig.DEFAULTS)
        if unknown:
            raise ValueError(f"unknown indicator settings {sorted(unknown)}")
        ind = self.signals_config()
        if ind["ema_fast"] >= ind["ema_slow"]:
            raise ValueError("ema_fast must be < ema_slow")
        if ind["macd_fast"] >= ind["macd_slow"]:
            raise ValueError("macd_fast must be < macd_slow")
        need = self.build_evaluator().required_lookback(self.signals_config())
        if self.min_lookback < need:
            raise ValueError(f"min_lookback={self.min_lookback} < {need} required by rule set {self.rule_set!r}")
        # une bougie en formation est toujours retirée
        if self.candle_limit <= self.min_lookback:
            raise ValueError("candle_limit must be > min_lookback")
        return self


class ExecutionConfig(BaseModel):
    notional_quote: float = Field(100.0, gt=0)   # budget fixe par entrée, en devise de cotation
    preserve_live_protection: bool = False


class SchedulerConfig(BaseModel):
    enabled: bool = True
    interval_s: float = Field(60.0, gt=0)
    overlap_policy: Literal["skip", "serialize"] = "skip"
    max_concurrency: int = Field(1, ge=1, le=8)


class NotifyConfig(BaseModel):
    telegram_bot_token: str = Field("", repr=False)
    telegram_chat_id: str = ""
    discord_webhook_url: str = Field("", repr=False)
    discord_enable: bool = True
    discord_username: str = ""
    timeout_s: float = Field(10.0, gt=0)


class AppConfig(BaseModel):
    env: str = "dev"
    log_level: str = "INFO"
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    universe: UniverseConfig = Field(default_factory=UniverseConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)

    @field_validator("log_level")
    @classmethod
    def _level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return v


_ENV_MAP = {
    "BINANCE_API_KEY": ("exchange", "api_key"),
    "BINANCE_API_SECRET": ("exchange", "api_secret"),
    "BINANCE_MODE": ("exchange", "mode"),
    "TELEGRAM_BOT_TOKEN": ("notify", "telegram_bot_token"),
    "TELEGRAM_CHAT_ID": ("notify", "telegram_chat_id"),
    "DISCORD_WEBHOOK_URL": ("notify", "discord_webhook_url"),
    "DISCORD_ENABLE": ("notify", "discord_enable"),
    "DISCORD_USERNAME": ("notify", "discord_username"),
    "LOG_LEVEL": ("log_level",),
}


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name, path in _ENV_MAP.items():
        raw = env.get(name)
        if raw is None or raw.strip() == "":
            continue
        val: Any = raw.strip()
        if name == "BINANCE_MODE":
            val = val.lower()
        elif name == "DISCORD_ENABLE":
            val = val.lower() in ("1", "true", "yes", "on")
        node = out
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = val
    return out


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """app.yaml (CONFIG_PATH) <- overrides <- variables d'environnement (secrets, mode)."""
    env = os.environ if env is None else env
    path = path or env.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)
    base: Dict[str, Any] = {}
    p = Path(path)
    if p.exists():
        with p.open("r") as f:
            base = yaml.safe_load(f) or {}
    else:
        logger.warning("[config] %s not found, using defaults", path)
    merged = deep_merge(deep_merge(base, overrides or {}), _env_overrides(env))
    return AppConfig(**merged)

# services/trader/notify.py
from __future__ import annotations
import asyncio
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

import httpx

from libs.common.errors import NotificationError

logger = logging.getLogger(__name__)


def _color_from_text(t: str) -> int:
    t = (t or "").upper()
    # Couleurs Discord (RGB décimal)
    if "⚠" in t or "WARN" in t or "PARTIAL" in t:
        return 0xE67E22  # orange
    if "❌" in t or "ERROR" in t or "FAIL" in t:
        return 0xE74C3C  # rouge
    if "✅" in t or "SUCCESS" in t or "OK" in t:
        return 0x2ECC71  # vert
    return 0x3498DB  # bleu neutre


def _flatten(text: str, extra: Optional[Dict[str, Any]]) -> str:
    if not extra:
        return text
    kv = " | ".join(f"{k}={v}" for k, v in extra.items())
    return f"{text}\n{kv}"


class Notifier:
    """
    Envoie un message :
      - Discord (embed) si configuré et activé,
      - Telegram si configuré,
      - sinon fallback log.
    `send` ne lève jamais : un échec est loggé et n'atteint pas la logique de trading.
    """

    def __init__(self, telegram_bot_token: str = "", telegram_chat_id: str = "",
                 discord_webhook_url: str = "", discord_enable: bool = True,
                 discord_username: str = "", timeout_s: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.telegram_bot_token = (telegram_bot_token or "").strip()
        self.telegram_chat_id = (telegram_chat_id or "").strip()
        self.discord_webhook_url = (discord_webhook_url or "").strip()
        self.discord_enable = discord_enable
        self.discord_username = (discord_username or "").strip()
        self.timeout_s = timeout_s
        self._transport = transport

    @property
    def discord_enabled(self) -> bool:
        return bool(self.discord_enable and self.discord_webhook_url)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)

    async def _discord_post(self, payload: Dict[str, Any]) -> None:
        async with self._client() as cli:
            r = await cli.post(self.discord_webhook_url, json=payload)
            if r.status_code == 429:
                try:
                    retry = float(r.json().get("retry_after", 1.5))
                except ValueError:
                    retry = 1.5
                logger.warning("[discord] 429 rate limited, retry_after=%ss", retry)
                await asyncio.sleep(min(retry, self.timeout_s))
                r = await cli.post(self.discord_webhook_url, json=payload)
            if r.status_code >= 400:
                raise NotificationError(f"[discord] HTTP {r.status_code}: {r.text}")

    async def _telegram_post(self, text: str) -> None:
        url = f"https://api.telegram.org/bot{self.telegram_bot_token}/sendMessage"
        async with self._client() as cli:
            r = await cli.post(url, json={"chat_id": self.telegram_chat_id, "text": text,
                                          "disable_web_page_preview": True})
            if r.status_code >= 400:
                raise NotificationError(f"[tg] HTTP {r.status_code}: {r.text}")

    async def send(self, text: str, extra: Optional[Dict[str, Any]] = None) -> bool:
        """True si un canal distant a accepté le message (premier qui réussit)."""
        if self.discord_enabled:
            embed: Dict[str, Any] = {
                "description": text,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "color": _color_from_text(text),
            }
            if extra:
                embed["fields"] = [{"name": str(k), "value": str(v), "inline": True} for k, v in extra.items()]
            payload: Dict[str, Any] = {"embeds": [embed]}
            if self.discord_username:
                payload["username"] = self.discord_username
            try:
                await self._discord_post(payload)
                return True
            except Exception as e:
                logger.warning("[discord] send error: %r", e)

        if self.telegram_enabled:
            try:
                await self._telegram_post(_flatten(text, extra))
                return True
            except Exception as e:
                logger.warning("[tg] send error: %r", e)

        # Fallback log
        logger.info("[notify] %s", _flatten(text, extra))
        return False

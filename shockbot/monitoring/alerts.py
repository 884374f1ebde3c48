from __future__ import annotations

import logging
import time

import requests

from shockbot.config import AlertsConfig
from shockbot.storage.models import SafetyEventRecord

LOGGER = logging.getLogger(__name__)


class AlertDispatcher:
    """Pushes safety events to Discord and Telegram; delivery problems are only logged."""

    def __init__(self, config: AlertsConfig):
        self.config = config
        self._last_sent_ts: dict[str, float] = {}

    def notify_safety_event(self, event: SafetyEventRecord) -> bool:
        text = f"[{event.severity}] {event.event_type}: {event.description}"
        if event.action_taken:
            text += f" | action={event.action_taken}"
        return self.send(text, dedupe_key=event.event_type)

    def send(self, text: str, *, dedupe_key: str) -> bool:
        if not self.config.enabled:
            return False
        now = time.monotonic()
        prev = self._last_sent_ts.get(dedupe_key)
        if prev is not None and (now - prev) < self.config.cooldown_seconds:
            return False
        self._last_sent_ts[dedupe_key] = now
        sent_discord = self._send_discord(text)
        sent_telegram = self._send_telegram(text)
        return sent_discord or sent_telegram

    def _send_discord(self, text: str) -> bool:
        webhook = (self.config.discord_webhook or "").strip()
        if not webhook:
            return False
        try:
            response = requests.post(webhook, json={"content": text}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Discord alert failed: %s", exc)
            return False
        return True

    def _send_telegram(self, text: str) -> bool:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not bot_token or not chat_id:
            return False
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        try:
            response = requests.post(url, json={"chat_id": chat_id, "text": text}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Telegram alert failed: %s", exc)
            return False
        return True

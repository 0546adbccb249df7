from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger("taskwatch.telegram")

# Telegram API limit for a single message
_MAX_TEXT_LENGTH = 4096
_CHUNK_MARGIN = 200


def _split_text(text: str, max_len: int) -> list[str]:
    if len(text) <= max_len:
        return [text]
    return [text[start:start + max_len] for start in range(0, len(text), max_len)]


@dataclass
class TelegramAdapter:
    """Outbound-only Bot API client used for task notifications."""
    token: str
    timeout: float = 15.0
    api_base: str = "https://api.telegram.org"

    def _base_url(self) -> str:
        return f"{self.api_base}/bot{self.token}"

    def send_message(self, chat_id: int | str, text: str) -> bool:
        if not text:
            text = "(empty message)"
        url = f"{self._base_url()}/sendMessage"
        max_len = max(1, _MAX_TEXT_LENGTH - _CHUNK_MARGIN)
        with httpx.Client(timeout=self.timeout) as client:
            for chunk in _split_text(text, max_len):
                resp = client.post(url, json={"chat_id": chat_id, "text": chunk})
                if resp.status_code != 200:
                    logger.error(
                        "Telegram sendMessage failed: %s %s",
                        resp.status_code,
                        resp.text[:500],
                    )
                    return False
        return True

from __future__ import annotations

import logging
from typing import Optional

import requests

logger = logging.getLogger("reconciler.notify")


class Notifier:
    """Posts operator-facing messages to a Discord webhook, if configured."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def notify(self, msg: str) -> None:
        if not self.webhook_url:
            return
        try:
            requests.post(self.webhook_url, json={"content": msg}, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Discord notify failed: {e}")

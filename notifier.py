"""
notifier.py -- User-facing notifications for circle flows.

Every notification carries a key (one per flow instance, e.g. "join-3").
A new notification with the same key replaces the previous one, so a flow
shows a single line that moves from "Joining circle..." to the success or
error text.  Repeating the same notification is a no-op, and a flow instance
can raise at most one error notification.

Success and error notifications are optionally mirrored to Telegram:
  1. Message @BotFather on Telegram to create a bot -> get TELEGRAM_BOT_TOKEN
  2. Message @userinfobot to find your TELEGRAM_CHAT_ID
  3. Set both as environment variables

Uses urllib.request to POST to https://api.telegram.org/bot{token}/sendMessage
"""

import asyncio
import json
import logging
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass

import config

logger = logging.getLogger(__name__)

# Telegram Bot API base URL template
TELEGRAM_API = "https://api.telegram.org/bot{token}/{method}"

# Rolling notification history kept in memory
HISTORY_LIMIT = 500

_LOG_LEVELS = {
    "loading": logging.INFO,
    "success": logging.INFO,
    "error": logging.WARNING,
}


def _telegram_api(method: str, payload: dict) -> dict:
    """
    Call any Telegram Bot API method.

    Returns the parsed JSON response dict, or {} on failure.
    This function NEVER raises -- failures are logged and swallowed.
    """
    if not config.TELEGRAM_BOT_TOKEN:
        logger.debug("Telegram not configured, skipping %s", method)
        return {}

    url = TELEGRAM_API.format(token=config.TELEGRAM_BOT_TOKEN, method=method)
    data = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "RoscaCircleClient/1.0",
    }
    req = urllib.request.Request(url, data=data, headers=headers)

    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            result = json.loads(resp.read().decode("utf-8"))
            if result.get("ok"):
                return result
            logger.warning("Telegram %s returned ok=false: %s", method, result)
            return {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        logger.warning("Telegram %s HTTP %d: %s", method, e.code, body[:200])
        return {}
    except Exception as e:
        logger.warning("Telegram %s failed: %s", method, e)
        return {}


def _send_message(text: str, parse_mode: str = "HTML") -> bool:
    """
    Send a plain message via Telegram Bot API.

    Returns True if sent successfully, False otherwise.
    """
    if not config.TELEGRAM_CHAT_ID:
        logger.debug("Telegram chat ID not set, skipping notification")
        return False

    result = _telegram_api("sendMessage", {
        "chat_id": config.TELEGRAM_CHAT_ID,
        "text": text,
        "parse_mode": parse_mode,
        "disable_web_page_preview": True,
    })
    return bool(result)


@dataclass(frozen=True)
class Notification:
    key: str
    level: str
    message: str
    flow_id: int
    timestamp: float


class Notifier:
    def __init__(self, *, forward_to_telegram: bool | None = None, clock=time.time) -> None:
        if forward_to_telegram is None:
            forward_to_telegram = bool(config.TELEGRAM_BOT_TOKEN and config.TELEGRAM_CHAT_ID)
        self.forward_to_telegram = forward_to_telegram
        self._clock = clock
        self.active: dict[str, Notification] = {}
        self.history: deque[Notification] = deque(maxlen=HISTORY_LIMIT)
        self._sends: set[asyncio.Future] = set()

    def notify(self, key: str, level: str, message: str, *, flow_id: int = 0) -> bool:
        """Show *message* under *key*.  Returns False when deduplicated away."""
        prev = self.active.get(key)
        if prev is not None and prev.flow_id == flow_id:
            if prev.level == level and prev.message == message:
                return False
            if prev.level == "error":
                # The first error of a flow instance is the one shown.
                return False

        note = Notification(key, level, message, flow_id, self._clock())
        self.active[key] = note
        self.history.append(note)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", key, message)

        if self.forward_to_telegram and level != "loading":
            prefix = "[DRY RUN] " if config.DRY_RUN else ""
            icon = "✅" if level == "success" else "⚠️"
            self._forward(f"{icon} {prefix}<b>{key}</b>: {message}")
        return True

    def _forward(self, text: str) -> None:
        # urlopen blocks, so it never runs on a live event loop.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _send_message(text)
            return
        fut = loop.run_in_executor(None, _send_message, text)
        self._sends.add(fut)
        fut.add_done_callback(self._sends.discard)

    async def drain(self) -> None:
        """Wait for queued Telegram sends to finish."""
        while self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)

    def dismiss(self, key: str) -> None:
        self.active.pop(key, None)

    def for_key(self, key: str) -> list[Notification]:
        return [n for n in self.history if n.key == key]

    def errors(self, key: str | None = None) -> list[Notification]:
        return [n for n in self.history if n.level == "error" and (key is None or n.key == key)]

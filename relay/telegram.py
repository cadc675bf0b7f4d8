"""Telegram Bot API helpers — zero dependencies beyond stdlib."""

from __future__ import annotations

import json
import logging
from urllib.error import URLError
from urllib.request import Request, urlopen

log = logging.getLogger("relay")

MESSAGE_LIMIT = 4096


class TelegramClient:
    """Thin wrapper around Telegram Bot API using urllib (no deps).

    The relay serves many chats, so every call names its chat_id.
    """

    def __init__(self, bot_token: str):
        self.bot_token = bot_token
        self._api_base = f"https://api.telegram.org/bot{bot_token}"

    def request(self, method: str, payload: dict, timeout: int = 40) -> dict:
        body = json.dumps(payload).encode()
        req = Request(
            f"{self._api_base}/{method}",
            data=body,
            headers={"Content-Type": "application/json"},
        )
        try:
            resp = urlopen(req, timeout=timeout)
            return json.loads(resp.read())
        except (URLError, OSError, json.JSONDecodeError) as exc:
            log.error("tg_request %s failed: %s", method, exc)
            return {}

    def send(self, chat_id: int, text: str, reply_to: int | None = None) -> int | None:
        """Send a message. Returns the new message_id or None."""
        if len(text) > MESSAGE_LIMIT:
            log.warning(
                "message to chat %s is %d chars, over the %d limit; cutting %d",
                chat_id, len(text), MESSAGE_LIMIT, len(text) - MESSAGE_LIMIT,
            )
            text = text[:MESSAGE_LIMIT]
        data: dict = {"chat_id": chat_id, "text": text}
        if reply_to:
            data["reply_parameters"] = {
                "message_id": reply_to,
                "allow_sending_without_reply": True,
            }
        result = self.request("sendMessage", data)
        return result.get("result", {}).get("message_id")

    def typing(self, chat_id: int):
        """Send 'typing...' indicator — lasts ~5s on client side."""
        self.request(
            "sendChatAction",
            {"chat_id": chat_id, "action": "typing"},
            timeout=5,
        )

    def get_me(self) -> dict:
        return self.request("getMe", {}, timeout=10).get("result", {})

    def set_my_commands(self, commands: list[dict]) -> bool:
        """Register bot commands menu. Each dict: {"command": "...", "description": "..."}."""
        result = self.request("setMyCommands", {"commands": commands})
        return bool(result.get("ok"))

    def poll(self, offset: int, poll_timeout: int = 30) -> list[dict]:
        data: dict = {
            "timeout": poll_timeout,
            "allowed_updates": ["message"],
        }
        if offset:
            data["offset"] = offset
        result = self.request("getUpdates", data, timeout=poll_timeout + 10)
        return result.get("result", [])

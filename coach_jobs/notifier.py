"""Messaging notifier that delivers finished feedback over the Telegram Bot API."""

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from coach_jobs.config import CoachJobsConfig
from coach_jobs.errors import CollaboratorError, ConfigurationError, RemoteHttpError


class NotificationReceipt:
    """Delivery acknowledgement."""

    def __init__(self, message_ref: Optional[str] = None):
        self.message_ref = message_ref

    def __repr__(self) -> str:
        return f"NotificationReceipt(message_ref={self.message_ref!r})"


class TelegramNotifier:
    """Sends text messages with an optional web-app button."""

    def __init__(
        self,
        bot_token: str,
        api_base_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
    ):
        if not bot_token:
            raise ConfigurationError("Telegram bot token is not set")
        self.bot_token = bot_token
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_config(cls, config: CoachJobsConfig) -> "TelegramNotifier":
        return cls(bot_token=config.telegram_bot_token)

    async def send(
        self,
        destination: str,
        text: str,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> NotificationReceipt:
        """
        Send a message.

        Args:
            destination: Chat ID to deliver to
            text: Message text
            action_url: Optional web-app URL attached as an inline button
            action_label: Button caption

        Raises:
            RemoteHttpError: If the API rejects the message
            CollaboratorError: On network errors or timeouts
        """
        url = f"{self.api_base_url}/bot{self.bot_token}/sendMessage"
        body: Dict[str, Any] = {
            "chat_id": destination,
            "text": text,
            "disable_web_page_preview": True,
        }
        if action_url:
            body["reply_markup"] = {
                "inline_keyboard": [
                    [{"text": action_label or "Open", "web_app": {"url": action_url}}]
                ]
            }

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(url, json=body) as resp:
                    response_body = await resp.text()

                    if resp.status >= 400:
                        raise RemoteHttpError(
                            status_code=resp.status,
                            message=_describe_error(response_body),
                            response_body=response_body,
                        )

            except aiohttp.ClientError as e:
                raise CollaboratorError(f"Network error: {str(e)}") from e
            except asyncio.TimeoutError as e:
                raise CollaboratorError("Telegram request timed out") from e

        return NotificationReceipt(message_ref=_message_id(response_body))


def _describe_error(response_body: str) -> str:
    try:
        data = json.loads(response_body)
    except json.JSONDecodeError:
        return response_body[:500] or "sendMessage failed"
    if isinstance(data, dict) and data.get("description"):
        return str(data["description"])[:500]
    return "sendMessage failed"


def _message_id(response_body: str) -> Optional[str]:
    try:
        data = json.loads(response_body)
    except json.JSONDecodeError:
        return None
    result = data.get("result") if isinstance(data, dict) else None
    if isinstance(result, dict) and result.get("message_id") is not None:
        return str(result["message_id"])
    return None

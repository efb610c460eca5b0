import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

import requests

from tutor_bot.errors import DeliveryFailure
from tutor_bot.telegram_client import TelegramAPIError, TelegramClient

DEFAULT_FRAGMENT_DELAY_SECONDS = 1.0

logger = logging.getLogger(__name__)


class TelegramChannel:
    """Async outbound channel over the blocking TelegramClient."""

    def __init__(self, client: TelegramClient):
        self._client = client

    async def send(self, chat_id: int, text: str, parse_mode: str = "HTML") -> None:
        """Send with HTML formatting, falling back to plain text.

        Model output is not guaranteed to be valid Telegram HTML, so a rejected
        formatted send is retried once without parse_mode.
        """
        try:
            resp = await asyncio.to_thread(self._client.send_message, chat_id, text, parse_mode)
            if resp.status_code == 200:
                return
            logger.info("Formatted send to %s rejected (%d); retrying as plain text", chat_id, resp.status_code)
            resp_plain = await asyncio.to_thread(self._client.send_message, chat_id, text, None)
        except requests.exceptions.RequestException as e:
            raise DeliveryFailure(f"sendMessage to {chat_id} failed: {type(e).__name__}: {e}") from e
        if resp_plain.status_code != 200:
            raise DeliveryFailure(f"sendMessage to {chat_id} returned status {resp_plain.status_code}")

    async def send_typing(self, chat_id: int) -> None:
        """Best-effort typing indicator; failures are only logged."""
        try:
            await asyncio.to_thread(self._client.send_chat_action, chat_id, "typing")
        except requests.exceptions.RequestException:
            logger.debug("Failed to send typing indicator to %s", chat_id, exc_info=True)

    async def download_voice(self, file_id: str) -> bytes:
        """Fetch the raw bytes of a voice note.

        Raises TelegramAPIError or requests.exceptions.RequestException.
        """
        info = await asyncio.to_thread(self._client.get_file, file_id)
        file_path = str((info.get("result") or {}).get("file_path") or "")
        if not file_path:
            raise TelegramAPIError(status_code=200, endpoint="getFile", content=b"missing file_path", method="GET")
        return await asyncio.to_thread(self._client.download_file, file_path)


class DeliverySequencer:
    """Sends fragments in order with a fixed pause between consecutive sends.

    The outbound chat is rate limited per chat; bursts get dropped or
    rejected, hence the pacing. No pause follows the last fragment.
    """

    def __init__(
        self,
        channel: Any,
        delay_seconds: float = DEFAULT_FRAGMENT_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._channel = channel
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    async def deliver(self, chat_id: int, fragments: Sequence[str]) -> int:
        """Returns the number of fragments sent.

        Raises DeliveryFailure on the first failing fragment; later fragments
        are not attempted. `DeliveryFailure.delivered` counts what got through.
        """
        total = len(fragments)
        for i, fragment in enumerate(fragments):
            try:
                await self._channel.send(chat_id, fragment)
            except DeliveryFailure as e:
                logger.warning("Delivery to %s stopped at fragment %d/%d: %s", chat_id, i + 1, total, e)
                raise DeliveryFailure(str(e), delivered=i) from e
            if i < total - 1:
                await self._sleep(self.delay_seconds)
        return total

import logging
import os
import time
from typing import Any, Dict, Optional

import requests

API_URL = "https://api.telegram.org"


class TelegramAPIError(Exception):
    """Exception raised when Telegram API returns a non-200 status code."""

    def __init__(self, status_code: int, endpoint: str, content: bytes, method: str):
        self.status_code = status_code
        self.endpoint = endpoint
        self.content = content
        self.method = method
        message = f"{method} {endpoint} returned status {status_code}"
        super().__init__(message)


class TelegramClient:
    """Client for interacting with Telegram Bot API."""

    def __init__(self, bot_token: Optional[str] = None):
        self._telegram_bot_token = bot_token or os.environ.get("TELEGRAM_BOT_TOKEN")
        if self._telegram_bot_token is None:
            raise ValueError("TELEGRAM_BOT_TOKEN env var is required")

        self.logger = logging.getLogger(__name__)

    def _request(
        self,
        method: str,
        endpoint: str,
        timeout: int = 10,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        enable_debug_logs=True,
    ) -> requests.Response:
        """Make a request to Telegram Bot API with logging and error handling.

        Args:
            method: HTTP method ('GET' or 'POST')
            endpoint: API endpoint (e.g., 'sendMessage', 'getMe')
            timeout: Request timeout in seconds
            params: Query parameters for GET requests
            json_data: JSON payload for POST requests

        Returns:
            Response object from requests library. Non-200 responses are
            logged and returned; callers decide whether they are fatal.

        Raises:
            requests.exceptions.RequestException: On network errors or timeouts
            ValueError: On invalid HTTP method
        """
        url = f"{API_URL}/bot{self._telegram_bot_token}/{endpoint}"

        if enable_debug_logs:
            self.logger.debug("api request: %s %s", method, endpoint)

        start_time = time.perf_counter()
        try:
            if method.upper() == "GET":
                resp = requests.get(url, params=params, timeout=timeout)
            elif method.upper() == "POST":
                resp = requests.post(url, params=params, json=json_data, timeout=timeout)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")

            elapsed_time = time.perf_counter() - start_time

            if enable_debug_logs:
                self.logger.debug(
                    "api response: %s %s %d %.3fs",
                    method,
                    endpoint,
                    resp.status_code,
                    elapsed_time,
                )

            if resp.status_code != 200:
                self.logger.warning(
                    "%s %s returned status %d in %.3fs. resp.content: %s",
                    method,
                    endpoint,
                    resp.status_code,
                    elapsed_time,
                    resp.content[:500] if resp.content else "No content",
                )

            return resp

        except requests.exceptions.RequestException as e:
            # Timeouts included; the caller decides whether to retry.
            self.logger.error(
                "%s on %s %s after %.3fs: %s",
                type(e).__name__,
                method,
                endpoint,
                time.perf_counter() - start_time,
                e,
            )
            raise

    @staticmethod
    def _raise_for_status(resp: requests.Response, method: str, endpoint: str) -> None:
        if resp.status_code != 200:
            raise TelegramAPIError(
                status_code=resp.status_code,
                endpoint=endpoint,
                content=resp.content,
                method=method,
            )

    def send_message(
        self,
        chat_id: int,
        message: str,
        parse_mode: Optional[str] = "HTML",
        **kwargs,
    ) -> requests.Response:
        """Send a message to a Telegram chat."""
        extra_params = {**kwargs}
        if parse_mode is not None:
            extra_params["parse_mode"] = parse_mode

        return self._request(
            method="POST",
            endpoint="sendMessage",
            json_data={
                "text": message,
                "link_preview_options": {"is_disabled": True},
                "chat_id": chat_id,
                **extra_params,
            },
            timeout=10,
        )

    def send_chat_action(self, chat_id: int, action: str = "typing") -> requests.Response:
        """Show a chat action (e.g. the typing indicator) to the user."""
        return self._request(
            method="POST",
            endpoint="sendChatAction",
            json_data={"chat_id": chat_id, "action": action},
            timeout=10,
        )

    def get_me(self) -> Dict[str, Any]:
        """Get bot information from Telegram."""
        resp = self._request(method="GET", endpoint="getMe", timeout=10)
        self._raise_for_status(resp, "GET", "getMe")
        return resp.json()

    def get_updates(self, offset: int = 0, timeout: int = 60) -> Dict[str, Any]:
        """Long-poll Telegram for new updates."""
        resp = self._request(
            method="GET",
            endpoint="getUpdates",
            params={
                "offset": offset,
                "timeout": timeout,
                "allowed_updates": '["message"]',
            },
            timeout=timeout + 10,
            enable_debug_logs=False,
        )
        self._raise_for_status(resp, "GET", "getUpdates")
        return resp.json()

    def delete_webhook(self, drop_pending_updates: bool = False) -> Dict[str, Any]:
        """Remove a webhook so long polling can be used."""
        resp = self._request(
            method="POST",
            endpoint="deleteWebhook",
            json_data={"drop_pending_updates": drop_pending_updates},
            timeout=10,
        )
        self._raise_for_status(resp, "POST", "deleteWebhook")
        return resp.json()

    def get_file(self, file_id: str) -> Dict[str, Any]:
        """Resolve a file_id into file metadata, including its download path."""
        resp = self._request(
            method="GET",
            endpoint="getFile",
            params={"file_id": file_id},
            timeout=10,
        )
        self._raise_for_status(resp, "GET", "getFile")
        return resp.json()

    def download_file(self, file_path: str, timeout: int = 30) -> bytes:
        """Download raw file contents previously resolved with get_file."""
        url = f"{API_URL}/file/bot{self._telegram_bot_token}/{file_path}"
        start_time = time.perf_counter()
        resp = requests.get(url, timeout=timeout)
        self.logger.debug(
            "file download: %s %d bytes %.3fs",
            resp.status_code,
            len(resp.content or b""),
            time.perf_counter() - start_time,
        )
        self._raise_for_status(resp, "GET", "file")
        return resp.content

"""
WAHA (WhatsApp HTTP API) transport client.

Only the two calls the engine needs:
    send_text(session, chat_id, text)        POST /api/sendText
    set_presence(session, chat_id, presence) POST /api/{session}/presence

Both retry with exponential backoff on timeouts, connection errors, 429 and
5xx, then raise ProviderTransientError.
"""

import os
import time
from typing import Any, Dict, Optional

import requests

from campaign_engine.engine.errors import ProviderError, ProviderTransientError
from campaign_engine.engine.models import Presence
from campaign_engine.logger import logger
from campaign_engine.settings import settings

PROVIDER = "waha"


class WahaClient:
    """Thin WAHA HTTP client with bounded retry."""

    MAX_RETRIES: int = 3
    INITIAL_DELAY: float = 0.5
    MAX_DELAY: float = 5.0
    BACKOFF_MULTIPLIER: float = 2.0

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.transport.base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else os.environ.get(settings.transport.api_key_env, "")
        self.timeout = timeout or settings.transport.timeout
        self._http = session or requests.Session()

        self.MAX_RETRIES = settings.get_nested("retry.max_retries", self.MAX_RETRIES)
        self.INITIAL_DELAY = settings.get_nested("retry.initial_delay", self.INITIAL_DELAY)
        self.MAX_DELAY = settings.get_nested("retry.max_delay", self.MAX_DELAY)
        self.BACKOFF_MULTIPLIER = settings.get_nested("retry.backoff_multiplier", self.BACKOFF_MULTIPLIER)

    def send_text(self, session: str, chat_id: str, text: str) -> Dict[str, Any]:
        return self._post(
            "/api/sendText",
            {"session": session, "chatId": chat_id, "text": text},
        )

    def set_presence(self, session: str, chat_id: str, presence: str) -> Dict[str, Any]:
        if presence not in Presence.VALUES:
            raise ProviderError(PROVIDER, f"unsupported presence '{presence}'")
        return self._post(
            f"/api/{session}/presence",
            {"chatId": chat_id, "presence": presence},
        )

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"X-Api-Key": self.api_key} if self.api_key else {}

        last_error: Optional[Exception] = None
        delay = self.INITIAL_DELAY

        for attempt in range(self.MAX_RETRIES):
            try:
                response = self._http.post(url, json=body, headers=headers, timeout=self.timeout)
                response.raise_for_status()
                if not response.content:
                    return {}
                try:
                    return response.json()
                except ValueError:
                    return {}

            except requests.exceptions.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status not in self.RETRYABLE_STATUS:
                    logger.error("Transport request rejected", path=path, status_code=status)
                    raise ProviderError(PROVIDER, f"{path} rejected: {status}", status_code=status) from e
                last_error = e
                logger.warning(
                    f"Transport server error (attempt {attempt + 1}/{self.MAX_RETRIES})",
                    path=path,
                    status_code=status,
                )
            except requests.exceptions.RequestException as e:
                last_error = e
                logger.warning(
                    f"Transport request failed (attempt {attempt + 1}/{self.MAX_RETRIES})",
                    path=path,
                    error=type(e).__name__,
                )

            if attempt < self.MAX_RETRIES - 1:
                time.sleep(delay)
                delay = min(delay * self.BACKOFF_MULTIPLIER, self.MAX_DELAY)

        logger.error("Transport retries exhausted", path=path)
        raise ProviderTransientError(PROVIDER, f"{path}: {str(last_error)[:100]}")

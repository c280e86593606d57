"""
Gemini client for the campaign engine.

Wraps the Gemini REST `generateContent` endpoint:

    generate_content(model, system_prompt, history) -> LLMResponse(text, usage)

Features:
- Retry: exponential backoff on timeouts, connection errors, 429 and 5xx
- Circuit Breaker: open/closed/half-open
- LLMStats: success_rate, avg_response_time

Failures never produce text for the lead: once retries are exhausted the
client raises ProviderTransientError and the agentic node falls back to its
error branch.
"""

import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from campaign_engine.engine.errors import ProviderError, ProviderTransientError
from campaign_engine.logger import logger
from campaign_engine.settings import settings

PROVIDER = "gemini"

# Gemini rejects a request without contents
DEFAULT_USER_TURN = "Responda ao lead."


@dataclass
class CircuitBreakerState:
    """Circuit breaker state"""
    failures: int = 0
    last_failure_time: float = 0.0
    is_open: bool = False
    open_until: float = 0.0


@dataclass
class LLMStats:
    """LLM client statistics"""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_retries: int = 0
    circuit_breaker_trips: int = 0
    total_response_time_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        """Share of successful requests, %"""
        if self.total_requests == 0:
            return 100.0
        return (self.successful_requests / self.total_requests) * 100

    @property
    def average_response_time_ms(self) -> float:
        """Average response time"""
        if self.successful_requests == 0:
            return 0.0
        return self.total_response_time_ms / self.successful_requests


@dataclass
class LLMResponse:
    """Text plus token usage reported by the provider."""
    text: str
    usage: Dict[str, Any] = field(default_factory=dict)


class GeminiClient:
    """
    Gemini client with resilience.

    History items are {"role": "user"|"model", "text": ...}; the system
    prompt is sent as systemInstruction.
    """

    # Retry (overridable from settings.retry)
    MAX_RETRIES: int = 3
    INITIAL_DELAY: float = 0.5
    MAX_DELAY: float = 5.0
    BACKOFF_MULTIPLIER: float = 2.0

    # Circuit breaker
    CIRCUIT_BREAKER_THRESHOLD: int = 5
    CIRCUIT_BREAKER_TIMEOUT: int = 60

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        enable_circuit_breaker: bool = True,
        enable_retry: bool = True
    ):
        """
        Args:
            model: Default model (settings.llm.model if not given)
            base_url: Gemini API base URL
            api_key: API key (env var named by settings.llm.api_key_env if not given)
            timeout: Request timeout in seconds
            enable_circuit_breaker: Enable circuit breaker
            enable_retry: Enable retry with exponential backoff
        """
        self.model = model or settings.llm.model
        self.base_url = base_url or settings.llm.base_url
        self.api_key = api_key if api_key is not None else os.environ.get(settings.llm.api_key_env, "")
        self.timeout = timeout or settings.llm.timeout

        self.MAX_RETRIES = settings.get_nested("retry.max_retries", self.MAX_RETRIES)
        self.INITIAL_DELAY = settings.get_nested("retry.initial_delay", self.INITIAL_DELAY)
        self.MAX_DELAY = settings.get_nested("retry.max_delay", self.MAX_DELAY)
        self.BACKOFF_MULTIPLIER = settings.get_nested("retry.backoff_multiplier", self.BACKOFF_MULTIPLIER)

        self._enable_circuit_breaker = enable_circuit_breaker
        self._enable_retry = enable_retry

        self._circuit_breaker = CircuitBreakerState()
        self._stats = LLMStats()

    def reset_circuit_breaker(self) -> None:
        """Reset circuit breaker"""
        self._circuit_breaker = CircuitBreakerState()
        logger.info("Circuit breaker reset", provider=PROVIDER)

    @property
    def stats(self) -> LLMStats:
        """Request statistics"""
        return self._stats

    @property
    def is_circuit_open(self) -> bool:
        """Whether the circuit breaker is open"""
        return self._is_circuit_open()

    # =========================================================================
    # GENERATION
    # =========================================================================

    def generate_content(
        self,
        model: Optional[str],
        system_prompt: str,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> LLMResponse:
        """
        Generate a reply.

        Args:
            model: Model name (client default when None)
            system_prompt: System instruction
            history: Conversation turns, oldest first

        Returns:
            LLMResponse

        Raises:
            ProviderTransientError: retries exhausted or circuit open
            ProviderError: non-retryable rejection (4xx, malformed response)
        """
        self._stats.total_requests += 1
        start_time = time.time()
        model = model or self.model

        if self._enable_circuit_breaker and self._is_circuit_open():
            logger.warning("Circuit breaker open, skipping LLM call", model=model)
            self._stats.failed_requests += 1
            raise ProviderTransientError(PROVIDER, "circuit breaker open")

        payload = self._build_payload(system_prompt, history or [])

        last_error: Optional[Exception] = None
        delay = self.INITIAL_DELAY
        max_attempts = self.MAX_RETRIES if self._enable_retry else 1

        for attempt in range(max_attempts):
            try:
                response = self._call_llm(model, payload)

                elapsed_ms = (time.time() - start_time) * 1000
                self._stats.successful_requests += 1
                self._stats.total_response_time_ms += elapsed_ms
                self._reset_failures()

                logger.debug(
                    "LLM request successful",
                    model=model,
                    attempt=attempt + 1,
                    elapsed_ms=round(elapsed_ms, 1)
                )
                return response

            except requests.exceptions.Timeout as e:
                last_error = e
                logger.warning(f"LLM timeout (attempt {attempt + 1}/{max_attempts})", model=model)
            except requests.exceptions.ConnectionError as e:
                last_error = e
                logger.warning(f"LLM connection error (attempt {attempt + 1}/{max_attempts})", model=model)
            except requests.exceptions.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status not in self.RETRYABLE_STATUS:
                    self._stats.failed_requests += 1
                    logger.error("LLM request rejected", model=model, status_code=status)
                    raise ProviderError(PROVIDER, f"request rejected: {status}", status_code=status) from e
                last_error = e
                logger.warning(
                    f"LLM server error (attempt {attempt + 1}/{max_attempts})",
                    model=model,
                    status_code=status,
                )
            except requests.exceptions.RequestException as e:
                last_error = e
                logger.warning(f"LLM request failed (attempt {attempt + 1}/{max_attempts})", model=model)
            except ProviderError:
                self._stats.failed_requests += 1
                raise

            if attempt < max_attempts - 1:
                self._stats.total_retries += 1
                logger.debug(f"Retrying in {delay:.1f}s...")
                time.sleep(delay)
                delay = min(delay * self.BACKOFF_MULTIPLIER, self.MAX_DELAY)

        self._stats.failed_requests += 1
        if self._enable_circuit_breaker:
            self._record_failure()

        logger.error(
            "LLM all retries failed",
            model=model,
            error=str(last_error)[:100] if last_error else "unknown",
        )
        raise ProviderTransientError(PROVIDER, f"retries exhausted: {str(last_error)[:100]}")

    def _build_payload(self, system_prompt: str, history: List[Dict[str, str]]) -> Dict[str, Any]:
        contents = [
            {
                "role": "model" if turn.get("role") == "model" else "user",
                "parts": [{"text": turn.get("text", "")}],
            }
            for turn in history
            if turn.get("text")
        ]
        if not contents or contents[-1]["role"] != "user":
            contents.append({"role": "user", "parts": [{"text": DEFAULT_USER_TURN}]})

        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": settings.llm.temperature,
                "maxOutputTokens": settings.llm.max_output_tokens,
            },
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    def _call_llm(self, model: str, payload: Dict[str, Any]) -> LLMResponse:
        """
        Single Gemini call without retry/circuit breaker.

        Tests mock this method.
        """
        url = f"{self.base_url.rstrip('/')}/models/{model}:generateContent"
        if settings.get_nested("logging.log_llm_requests", False):
            logger.debug("LLM request", url=url, payload=payload)

        response = requests.post(
            url,
            json=payload,
            headers={"x-goog-api-key": self.api_key},
            timeout=self.timeout,
        )
        response.raise_for_status()

        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError(PROVIDER, "empty response (no candidates)")

        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts).strip()
        if not text:
            raise ProviderError(PROVIDER, "empty content in response")

        return LLMResponse(text=text, usage=data.get("usageMetadata") or {})

    # =========================================================================
    # CIRCUIT BREAKER
    # =========================================================================

    def _is_circuit_open(self) -> bool:
        """Whether the circuit breaker is open"""
        if not self._circuit_breaker.is_open:
            return False

        if time.time() >= self._circuit_breaker.open_until:
            logger.info("Circuit breaker attempting recovery (half-open state)")
            self._circuit_breaker.is_open = False
            return False

        return True

    def _record_failure(self) -> None:
        """Record a failure for the circuit breaker"""
        self._circuit_breaker.failures += 1
        self._circuit_breaker.last_failure_time = time.time()

        if self._circuit_breaker.failures >= self.CIRCUIT_BREAKER_THRESHOLD:
            self._circuit_breaker.is_open = True
            self._circuit_breaker.open_until = time.time() + self.CIRCUIT_BREAKER_TIMEOUT
            self._stats.circuit_breaker_trips += 1

            logger.error(
                "Circuit breaker opened",
                failures=self._circuit_breaker.failures,
                timeout=self.CIRCUIT_BREAKER_TIMEOUT
            )

    def _reset_failures(self) -> None:
        """Reset failure counter after a success"""
        self._circuit_breaker.failures = 0

    def get_stats_dict(self) -> Dict[str, Any]:
        """Statistics as a dict"""
        return {
            "total_requests": self._stats.total_requests,
            "successful_requests": self._stats.successful_requests,
            "failed_requests": self._stats.failed_requests,
            "total_retries": self._stats.total_retries,
            "circuit_breaker_trips": self._stats.circuit_breaker_trips,
            "success_rate": round(self._stats.success_rate, 2),
            "average_response_time_ms": round(self._stats.average_response_time_ms, 2),
            "circuit_breaker_open": self._circuit_breaker.is_open,
        }

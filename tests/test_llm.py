"""
Tests for the Gemini client.

Tests cover:
- Request payload (system instruction, history roles)
- Retry with exponential backoff
- Circuit breaker
- Error classification (transient vs rejected)
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from campaign_engine.engine.errors import ProviderError, ProviderTransientError
from campaign_engine.llm import CircuitBreakerState, DEFAULT_USER_TURN, GeminiClient, LLMResponse, LLMStats


def _http_error(status):
    response = MagicMock()
    response.status_code = status
    return requests.exceptions.HTTPError(response=response)


@pytest.fixture
def client():
    llm = GeminiClient(model="gemini-test", api_key="k")
    llm.INITIAL_DELAY = 0.0
    llm.MAX_DELAY = 0.0
    return llm


class TestLLMStats:
    """Tests for LLMStats dataclass"""

    def test_success_rate_no_requests(self):
        """Success rate is 100% with no requests"""
        assert LLMStats().success_rate == 100.0

    def test_success_rate_calculation(self):
        """Success rate calculated correctly"""
        assert LLMStats(total_requests=10, successful_requests=8).success_rate == 80.0

    def test_average_response_time(self):
        """Average response time over successful requests"""
        stats = LLMStats(successful_requests=5, total_response_time_ms=500.0)
        assert stats.average_response_time_ms == 100.0


class TestPayload:
    """Gemini request body"""

    def test_system_instruction_and_roles(self, client):
        """History roles map to user/model, the prompt to systemInstruction"""
        payload = client._build_payload("Seja breve.", [
            {"role": "user", "text": "oi"},
            {"role": "model", "text": "Olá!"},
            {"role": "user", "text": "quero saber de tecnologia"},
        ])
        assert payload["systemInstruction"] == {"parts": [{"text": "Seja breve."}]}
        assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]

    def test_trailing_model_turn_gets_user_turn(self, client):
        """Gemini needs the last turn to be the user's"""
        payload = client._build_payload("", [{"role": "model", "text": "Olá!"}])
        assert payload["contents"][-1] == {"role": "user", "parts": [{"text": DEFAULT_USER_TURN}]}
        assert "systemInstruction" not in payload

    def test_call_parses_candidates(self, client):
        """Text parts are joined, usage metadata kept"""
        response = MagicMock()
        response.json.return_value = {
            "candidates": [{"content": {"parts": [{"text": "Olá, "}, {"text": "tudo bem?"}]}}],
            "usageMetadata": {"totalTokenCount": 12},
        }
        with patch("campaign_engine.llm.requests.post", return_value=response) as post:
            result = client._call_llm("gemini-test", {"contents": []})
        assert result == LLMResponse(text="Olá, tudo bem?", usage={"totalTokenCount": 12})
        assert post.call_args[0][0].endswith("/models/gemini-test:generateContent")
        assert post.call_args[1]["headers"] == {"x-goog-api-key": "k"}

    def test_empty_candidates_rejected(self, client):
        """A response without candidates is a provider error"""
        response = MagicMock()
        response.json.return_value = {"candidates": []}
        with patch("campaign_engine.llm.requests.post", return_value=response):
            with pytest.raises(ProviderError):
                client._call_llm("gemini-test", {})


class TestRetry:
    """Retry with exponential backoff"""

    def test_success_first_try(self, client):
        """No retry when the first call succeeds"""
        with patch.object(client, "_call_llm", return_value=LLMResponse(text="ok")) as call:
            assert client.generate_content(None, "p", []).text == "ok"
        assert call.call_count == 1
        assert call.call_args[0][0] == "gemini-test"
        assert client.stats.successful_requests == 1

    def test_retry_then_success(self, client):
        """Timeouts are retried"""
        side_effect = [requests.exceptions.Timeout(), LLMResponse(text="ok")]
        with patch.object(client, "_call_llm", side_effect=side_effect) as call:
            assert client.generate_content("m", "p").text == "ok"
        assert call.call_count == 2
        assert client.stats.total_retries == 1

    def test_retryable_status_exhausts(self, client):
        """Persistent 503 ends in a transient error"""
        with patch.object(client, "_call_llm", side_effect=_http_error(503)) as call:
            with pytest.raises(ProviderTransientError):
                client.generate_content("m", "p")
        assert call.call_count == client.MAX_RETRIES

    def test_client_error_not_retried(self, client):
        """A 400 is raised immediately"""
        with patch.object(client, "_call_llm", side_effect=_http_error(400)) as call:
            with pytest.raises(ProviderError) as exc_info:
                client.generate_content("m", "p")
        assert call.call_count == 1
        assert exc_info.value.status_code == 400
        assert not isinstance(exc_info.value, ProviderTransientError)

    def test_retry_disabled(self):
        """enable_retry=False makes a single attempt"""
        llm = GeminiClient(api_key="k", enable_retry=False)
        with patch.object(llm, "_call_llm", side_effect=requests.exceptions.ConnectionError()) as call:
            with pytest.raises(ProviderTransientError):
                llm.generate_content("m", "p")
        assert call.call_count == 1


class TestCircuitBreaker:
    """Circuit breaker pattern"""

    def test_initial_state(self):
        """Initial state is closed"""
        state = CircuitBreakerState()
        assert state.failures == 0
        assert state.is_open is False

    def test_opens_after_threshold(self):
        """Consecutive exhausted calls open the circuit"""
        llm = GeminiClient(api_key="k", enable_retry=False)
        with patch.object(llm, "_call_llm", side_effect=requests.exceptions.Timeout()):
            for _ in range(llm.CIRCUIT_BREAKER_THRESHOLD):
                with pytest.raises(ProviderTransientError):
                    llm.generate_content("m", "p")
        assert llm.is_circuit_open
        assert llm.get_stats_dict()["circuit_breaker_trips"] == 1

    def test_open_circuit_skips_call(self):
        """An open circuit fails fast"""
        llm = GeminiClient(api_key="k")
        llm._circuit_breaker.is_open = True
        llm._circuit_breaker.open_until = float("inf")
        with patch.object(llm, "_call_llm") as call:
            with pytest.raises(ProviderTransientError):
                llm.generate_content("m", "p")
        call.assert_not_called()

    def test_half_open_after_timeout(self):
        """The circuit closes again after its timeout"""
        llm = GeminiClient(api_key="k")
        llm._circuit_breaker.is_open = True
        llm._circuit_breaker.open_until = 0.0
        with patch.object(llm, "_call_llm", return_value=LLMResponse(text="ok")):
            assert llm.generate_content("m", "p").text == "ok"

    def test_reset(self):
        """reset_circuit_breaker clears the state"""
        llm = GeminiClient(api_key="k")
        llm._circuit_breaker.failures = 4
        llm.reset_circuit_breaker()
        assert llm._circuit_breaker.failures == 0

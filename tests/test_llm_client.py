"""
Tests for the LLM client wrapper.

Uses mocked Anthropic API responses to test retry logic, cost calculation,
error handling, and session tracking without making real API calls.
Backoff sleeps are patched out so the retry tests run instantly.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from inboxsync.errors import ConnectivityError
from inboxsync.llm.client import LLMClient, LLMError, LLMResult
from inboxsync.logging.config import setup_logging

import anthropic


# --- Helpers to create mock responses ---

def make_mock_response(text="Hello", input_tokens=100, output_tokens=50):
    """Create a mock Anthropic API response."""
    response = MagicMock()
    response.content = [MagicMock(text=text)]
    response.usage = MagicMock(input_tokens=input_tokens, output_tokens=output_tokens)
    return response


def make_client_with_mock(**kwargs) -> tuple[LLMClient, MagicMock]:
    """Create an LLMClient with a mocked async Anthropic client inside."""
    with patch("inboxsync.llm.client.anthropic.AsyncAnthropic") as mock_cls:
        mock_anthropic = MagicMock()
        mock_anthropic.messages.create = AsyncMock()
        mock_cls.return_value = mock_anthropic
        client = LLMClient(
            api_key="test-key",
            model="claude-sonnet-4-20250514",
            **kwargs,
        )
        return client, mock_anthropic


def rate_limit_error():
    return anthropic.RateLimitError(
        message="rate limited",
        response=MagicMock(status_code=429, headers={}),
        body={"error": {"message": "rate limited", "type": "rate_limit_error"}},
    )


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


@pytest.fixture
def no_sleep():
    with patch("inboxsync.llm.client.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


# --- Tests ---

class TestSuccessfulCalls:
    @pytest.mark.asyncio
    async def test_basic_completion(self):
        """A successful call should return an LLMResult with correct fields."""
        client, mock = make_client_with_mock()
        mock.messages.create.return_value = make_mock_response(
            text="Interested",
            input_tokens=150,
            output_tokens=4,
        )

        result = await client.complete(
            system="You categorize emails.",
            user="Email to categorize: ...",
            max_tokens=50,
            purpose="classify",
        )

        assert isinstance(result, LLMResult)
        assert result.text == "Interested"
        assert result.input_tokens == 150
        assert result.output_tokens == 4
        assert result.total_tokens == 154
        assert result.latency_ms >= 0
        assert result.model == "claude-sonnet-4-20250514"

    @pytest.mark.asyncio
    async def test_temperature_passed_only_when_set(self):
        client, mock = make_client_with_mock()
        mock.messages.create.return_value = make_mock_response()

        await client.complete(system="s", user="u", temperature=0.1, purpose="test")
        assert mock.messages.create.call_args.kwargs["temperature"] == 0.1

        await client.complete(system="s", user="u", purpose="test")
        assert "temperature" not in mock.messages.create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_default_max_tokens(self):
        client, mock = make_client_with_mock(default_max_tokens=321)
        mock.messages.create.return_value = make_mock_response()

        await client.complete(system="s", user="u", purpose="test")

        assert mock.messages.create.call_args.kwargs["max_tokens"] == 321

    @pytest.mark.asyncio
    async def test_cost_calculation(self):
        """Cost should be calculated based on token counts and pricing."""
        client, mock = make_client_with_mock()
        # 1000 input tokens at $3/1M = $0.003
        # 500 output tokens at $15/1M = $0.0075
        mock.messages.create.return_value = make_mock_response(
            input_tokens=1000,
            output_tokens=500,
        )

        result = await client.complete(system="test", user="test", purpose="test")

        assert abs(result.input_cost - 0.003) < 0.0001
        assert abs(result.output_cost - 0.0075) < 0.0001
        assert abs(result.cost - 0.0105) < 0.0001

    @pytest.mark.asyncio
    async def test_text_is_stripped(self):
        """Response text should be stripped of whitespace."""
        client, mock = make_client_with_mock()
        mock.messages.create.return_value = make_mock_response(text="  Spam \n")

        result = await client.complete(system="test", user="test", purpose="test")

        assert result.text == "Spam"

    @pytest.mark.asyncio
    async def test_ping_uses_one_token(self):
        client, mock = make_client_with_mock()
        mock.messages.create.return_value = make_mock_response(text="OK")

        await client.ping()

        assert mock.messages.create.call_args.kwargs["max_tokens"] == 1


class TestSessionTracking:
    @pytest.mark.asyncio
    async def test_session_cost_accumulates(self):
        """Multiple calls should accumulate session totals."""
        client, mock = make_client_with_mock()
        mock.messages.create.return_value = make_mock_response(
            input_tokens=1000, output_tokens=500
        )

        await client.complete(system="test", user="test", purpose="test")
        await client.complete(system="test", user="test", purpose="test")

        stats = client.get_session_stats()
        assert stats["total_calls"] == 2
        assert stats["total_input_tokens"] == 2000
        assert stats["total_output_tokens"] == 1000
        assert stats["total_cost_usd"] > 0


class TestEmptyResponse:
    @pytest.mark.asyncio
    async def test_no_content_blocks_raises_llm_error(self):
        """A response with no content blocks is an LLMError, not an IndexError."""
        client, mock = make_client_with_mock()
        response = make_mock_response()
        response.content = []
        mock.messages.create.return_value = response

        with pytest.raises(LLMError, match="no text content"):
            await client.complete(system="test", user="test", purpose="test")

    @pytest.mark.asyncio
    async def test_text_blocks_are_joined(self):
        client, mock = make_client_with_mock()
        response = make_mock_response()
        response.content = [MagicMock(text="Meeting "), MagicMock(text="Booked ")]
        mock.messages.create.return_value = response

        result = await client.complete(system="test", user="test", purpose="test")

        assert result.text == "Meeting Booked"


class TestRetryLogic:
    @pytest.mark.asyncio
    async def test_retry_on_rate_limit(self, no_sleep):
        """Rate limit errors should be retried."""
        client, mock = make_client_with_mock(max_retries=3, timeout_seconds=5)

        # Fail twice with rate limit, succeed on third
        mock.messages.create.side_effect = [
            rate_limit_error(),
            rate_limit_error(),
            make_mock_response(text="success after retries"),
        ]

        result = await client.complete(system="test", user="test", purpose="test")
        assert result.text == "success after retries"
        assert mock.messages.create.call_count == 3
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_retry_on_server_error(self, no_sleep):
        """5xx server errors should be retried."""
        client, mock = make_client_with_mock(max_retries=2)

        mock.messages.create.side_effect = [
            anthropic.APIStatusError(
                message="server error",
                response=MagicMock(status_code=500, headers={}),
                body={"error": {"message": "server error", "type": "server_error"}},
            ),
            make_mock_response(text="recovered"),
        ]

        result = await client.complete(system="test", user="test", purpose="test")
        assert result.text == "recovered"

    @pytest.mark.asyncio
    async def test_retry_on_timeout(self, no_sleep):
        """Timeout errors should be retried without an extra sleep."""
        client, mock = make_client_with_mock(max_retries=2)

        mock.messages.create.side_effect = [
            anthropic.APITimeoutError(request=MagicMock()),
            make_mock_response(text="recovered after timeout"),
        ]

        result = await client.complete(system="test", user="test", purpose="test")
        assert result.text == "recovered after timeout"
        assert no_sleep.await_count == 0

    @pytest.mark.asyncio
    async def test_retry_on_connection_error(self, no_sleep):
        """Connection errors should be retried."""
        client, mock = make_client_with_mock(max_retries=2)

        mock.messages.create.side_effect = [
            anthropic.APIConnectionError(request=MagicMock(), message="connection failed"),
            make_mock_response(text="reconnected"),
        ]

        result = await client.complete(system="test", user="test", purpose="test")
        assert result.text == "reconnected"


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_all_retries_exhausted_raises_llm_error(self, no_sleep):
        """If all retries fail, should raise LLMError."""
        client, mock = make_client_with_mock(max_retries=2)

        mock.messages.create.side_effect = rate_limit_error()

        with pytest.raises(LLMError, match="failed after 2 attempts"):
            await client.complete(system="test", user="test", purpose="test")

        assert mock.messages.create.call_count == 2

    @pytest.mark.asyncio
    async def test_per_call_retry_override(self, no_sleep):
        """A call can ask for fewer attempts than the client default."""
        client, mock = make_client_with_mock(max_retries=3)
        mock.messages.create.side_effect = anthropic.APITimeoutError(request=MagicMock())

        with pytest.raises(LLMError, match="failed after 1 attempts"):
            await client.complete(system="test", user="test", purpose="test", max_retries=1)

        assert mock.messages.create.call_count == 1

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self):
        """4xx errors (except 429) should NOT be retried."""
        client, mock = make_client_with_mock(max_retries=3)

        mock.messages.create.side_effect = anthropic.APIStatusError(
            message="invalid api key",
            response=MagicMock(status_code=401, headers={}),
            body={"error": {"message": "invalid api key", "type": "authentication_error"}},
        )

        with pytest.raises(LLMError, match="HTTP 401"):
            await client.complete(system="test", user="test", purpose="test")

        assert mock.messages.create.call_count == 1

    @pytest.mark.asyncio
    async def test_llm_error_is_a_connectivity_error(self, no_sleep):
        """Callers that only care about reachability can catch ConnectivityError."""
        client, mock = make_client_with_mock(max_retries=1)
        mock.messages.create.side_effect = anthropic.APITimeoutError(request=MagicMock())

        with pytest.raises(ConnectivityError):
            await client.ping()

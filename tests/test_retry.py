"""
Tests for Retry Utilities
=========================
"""

import httpx
import pytest

from agentmafia.errors import ProviderError, ValidationError
from agentmafia.retry import backoff_delay, is_transient_error, with_retry


class TestIsTransient:
    """Tests for transient error classification."""

    def test_provider_status_codes(self):
        """Test retryable and non-retryable status codes."""
        assert is_transient_error(ProviderError("slow down", status_code=429))
        assert is_transient_error(ProviderError("oops", status_code=503))
        assert not is_transient_error(ProviderError("bad key", status_code=401))

    def test_transient_flag(self):
        """Test the explicit transient flag."""
        assert is_transient_error(ProviderError("dropped", transient=True))

    def test_httpx_errors(self):
        """Test httpx transport failures are transient."""
        request = httpx.Request("POST", "https://api.example.com")
        assert is_transient_error(httpx.ReadTimeout("read timed out", request=request))
        assert is_transient_error(httpx.ConnectError("refused", request=request))

    def test_message_patterns(self):
        """Test fallbacks on the error text."""
        assert is_transient_error(RuntimeError("socket hang up"))
        assert is_transient_error(RuntimeError("Service Unavailable"))
        assert not is_transient_error(ValueError("invalid JSON"))


class TestBackoff:
    """Tests for backoff_delay."""

    def test_exponential_and_capped(self):
        """Test the delay doubles and stops at the cap."""
        assert backoff_delay(1, 1.0, 15.0, jitter=False) == 1.0
        assert backoff_delay(3, 1.0, 15.0, jitter=False) == 4.0
        assert backoff_delay(10, 1.0, 15.0, jitter=False) == 15.0

    def test_jitter_bounds(self):
        """Test jitter stays within 25 percent."""
        for _ in range(20):
            assert 0.75 <= backoff_delay(1, 1.0, 15.0) <= 1.25


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_retries_transient(self):
        """Test a transient failure is retried until success."""
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ProviderError("overloaded", status_code=529, transient=True)
            return "ok"

        assert await with_retry(flaky, initial_delay=0.001) == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up(self):
        """Test the last error is raised after max_attempts."""
        attempts = []

        async def down():
            attempts.append(1)
            raise ProviderError("bad gateway", status_code=502)

        with pytest.raises(ProviderError):
            await with_retry(down, max_attempts=2, initial_delay=0.001)
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_permanent_not_retried(self):
        """Test a non-transient error is raised at once."""
        attempts = []

        async def broken():
            attempts.append(1)
            raise ValidationError("nope")

        with pytest.raises(ValidationError):
            await with_retry(broken, initial_delay=0.001)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_should_stop(self):
        """Test a stop request ends retrying."""
        attempts = []

        async def flaky():
            attempts.append(1)
            raise ProviderError("timeout", transient=True)

        with pytest.raises(ProviderError):
            await with_retry(flaky, initial_delay=0.001, should_stop=lambda: True)
        assert len(attempts) == 1

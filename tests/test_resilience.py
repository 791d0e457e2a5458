"""Tests for bounded read retries."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from lattice.errors import NetworkError, NetworkTimeoutError, UsageError
from lattice.resilience import NO_RETRY, RetriesExhaustedError, RetryPolicy


class TestRetryPolicy:
    """Tests for backoff calculation."""

    def test_exponential_backoff(self):
        """RetryPolicy MUST double the delay per attempt."""
        policy = RetryPolicy(base_delay=1.0, exponential_base=2.0, max_delay=60.0, jitter=0)

        assert policy.calculate_delay(1) == 1.0
        assert policy.calculate_delay(2) == 2.0
        assert policy.calculate_delay(3) == 4.0

    def test_delay_capped(self):
        """RetryPolicy MUST cap delay at max_delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0)

        assert policy.calculate_delay(10) == 5.0

    def test_jitter_within_bounds(self):
        """Jittered delays MUST stay within the jitter fraction."""
        policy = RetryPolicy(base_delay=1.0, jitter=0.1)

        assert all(0.9 <= policy.calculate_delay(1) <= 1.1 for _ in range(20))


class TestRetryPolicyExecution:
    """Tests for RetryPolicy.execute."""

    @pytest.mark.asyncio
    async def test_first_success_returned(self):
        """execute MUST return the first successful result."""
        func = AsyncMock(return_value="cells")

        assert await RetryPolicy().execute(func) == "cells"
        func.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_network_errors(self):
        """execute MUST retry NetworkError until success."""
        func = AsyncMock(side_effect=[NetworkError("reset"), NetworkError("reset"), "ok"])

        with patch("lattice.resilience.asyncio.sleep", new=AsyncMock()):
            result = await RetryPolicy(max_attempts=3).execute(func)

        assert result == "ok"
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        """execute MUST raise RetriesExhaustedError carrying the last error."""
        last = NetworkError("third")
        func = AsyncMock(side_effect=[NetworkError("first"), NetworkError("second"), last])

        with patch("lattice.resilience.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(RetriesExhaustedError) as exc_info:
                await RetryPolicy(max_attempts=3).execute(func)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_exception is last

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        """execute MUST NOT retry errors outside retry_on."""
        func = AsyncMock(side_effect=UsageError("bad"))

        with pytest.raises(UsageError):
            await RetryPolicy(max_attempts=3).execute(func)
        func.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_raise_last(self):
        """execute_or_raise_last MUST re-raise the underlying error."""
        func = AsyncMock(side_effect=NetworkError("down"))

        with pytest.raises(NetworkError, match="down"):
            await NO_RETRY.execute_or_raise_last(func)
        func.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeouts_not_retried(self):
        """execute MUST give up on a timeout after one attempt."""
        func = AsyncMock(side_effect=[NetworkTimeoutError("slow"), "ok"])

        with pytest.raises(NetworkTimeoutError):
            await RetryPolicy(max_attempts=3).execute(func)
        func.assert_awaited_once()

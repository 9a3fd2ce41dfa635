"""Tests for the timeout/retry wrapper around external calls."""

import asyncio

import pytest

from framechat.core.errors import OperationTimeoutError
from framechat.core.timeouts import call_with_timeout


class TestCallWithTimeout:
    def test_returns_result_of_fast_call(self):
        async def fast():
            return 42

        assert asyncio.run(call_with_timeout(fast, timeout=1.0)) == 42

    def test_retries_only_after_timeout(self):
        """The first attempt hangs, the retry succeeds."""
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                await asyncio.sleep(1)
            return "ok"

        result = asyncio.run(call_with_timeout(flaky, timeout=0.01, retries=1))

        assert result == "ok"
        assert len(attempts) == 2

    def test_gives_up_after_retries(self):
        attempts = []

        async def hangs():
            attempts.append(1)
            await asyncio.sleep(1)

        with pytest.raises(OperationTimeoutError, match="upload x timed out after 2 attempt"):
            asyncio.run(call_with_timeout(hangs, timeout=0.01, retries=1, description="upload x"))
        assert len(attempts) == 2

    def test_other_errors_are_not_retried(self):
        attempts = []

        async def fails():
            attempts.append(1)
            raise PermissionError("denied")

        with pytest.raises(PermissionError):
            asyncio.run(call_with_timeout(fails, timeout=1.0, retries=3))
        assert len(attempts) == 1

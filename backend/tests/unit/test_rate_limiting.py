"""
Tests for rate limiting functionality
Ensures the fixed window refuses the (N+1)th request and resets afterwards
"""

import time
from unittest.mock import patch

import pytest

from security.rate_limiting import RateLimiter


@pytest.mark.unit
class TestRateLimiting:
    """Test rate limiting implementation"""

    def test_basic_rate_limiting(self):
        """First N requests pass, the next one is refused"""
        limiter = RateLimiter(max_requests=5, window_seconds=60)

        for _ in range(5):
            allowed, retry_after = limiter.is_allowed("ci-bot")
            assert allowed is True
            assert retry_after == 0

        allowed, retry_after = limiter.is_allowed("ci-bot")
        assert allowed is False
        assert 1 <= retry_after <= 60

    def test_keys_are_independent(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        assert limiter.is_allowed("ci-bot")[0] is True
        assert limiter.is_allowed("reviewer")[0] is True
        assert limiter.is_allowed("ci-bot")[0] is False

    def test_rate_limit_reset(self):
        """Requests are allowed again once the window has elapsed"""
        start = 1_700_000_000.0
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        with patch('time.time', return_value=start):
            limiter.is_allowed("ci-bot")
            limiter.is_allowed("ci-bot")
            assert limiter.is_allowed("ci-bot")[0] is False

        with patch('time.time', return_value=start + 61):
            assert limiter.is_allowed("ci-bot")[0] is True

    def test_retry_after_counts_down(self):
        start = 1_700_000_000.0
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        with patch('time.time', return_value=start):
            limiter.is_allowed("ci-bot")

        with patch('time.time', return_value=start + 45.5):
            allowed, retry_after = limiter.is_allowed("ci-bot")

        assert allowed is False
        assert retry_after == 15

    def test_refused_requests_do_not_extend_window(self):
        start = 1_700_000_000.0
        limiter = RateLimiter(max_requests=1, window_seconds=10)

        with patch('time.time', return_value=start):
            limiter.is_allowed("ci-bot")
        with patch('time.time', return_value=start + 9):
            assert limiter.is_allowed("ci-bot")[0] is False
        with patch('time.time', return_value=start + 10):
            assert limiter.is_allowed("ci-bot")[0] is True

    def test_configure_applies_new_limit(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.is_allowed("ci-bot")

        limiter.configure(3, 60)

        assert limiter.is_allowed("ci-bot")[0] is True
        assert limiter.get_stats()["max_requests"] == 3

    def test_reset(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.is_allowed("ci-bot")
        limiter.is_allowed("reviewer")

        limiter.reset("ci-bot")
        assert limiter.is_allowed("ci-bot")[0] is True
        assert limiter.is_allowed("reviewer")[0] is False

        limiter.reset()
        assert limiter.get_stats()["active_clients"] == 0

    def test_expired_windows_are_cleaned_up(self):
        limiter = RateLimiter(max_requests=5, window_seconds=60)
        now = time.time()

        with patch('time.time', return_value=now):
            limiter.is_allowed("old-client")
        with patch('time.time', return_value=now + 400):
            limiter.is_allowed("new-client")

        assert "old-client" not in limiter.clients
        assert "new-client" in limiter.clients

"""
Tests for the rate-limited logging helper.
"""
from unittest.mock import MagicMock, patch

from wallet_broker._rate_limited_log import rate_limited_log, reset_rate_limits


class TestRateLimitedLog:
    """Tests for the rate-limited logging implementation."""

    def test_repeats_suppressed(self):
        mock_cache = {}
        mock_lock = MagicMock()
        mock_logger = MagicMock()

        with patch('wallet_broker._rate_limited_log._seen_cache', mock_cache), \
             patch('wallet_broker._rate_limited_log._seen_cache_lock', mock_lock):

            # First log should go through
            assert rate_limited_log("Denied", level="warning", logger_instance=mock_logger) is True
            mock_logger.warning.assert_called_once_with("Denied")
            mock_lock.__enter__.assert_called()
            assert "warning:Denied" in mock_cache

            mock_logger.reset_mock()

            # Second immediate log should be suppressed
            assert rate_limited_log("Denied", level="warning", logger_instance=mock_logger) is False
            mock_logger.warning.assert_not_called()

            # Different level should go through
            assert rate_limited_log("Denied", level="error", logger_instance=mock_logger) is True
            mock_logger.error.assert_called_once_with("Denied")

            # Different message should go through
            assert rate_limited_log("Other", level="warning", logger_instance=mock_logger) is True

    def test_unknown_level_falls_back_to_warning(self):
        mock_logger = MagicMock(spec=["warning"])
        with patch('wallet_broker._rate_limited_log._seen_cache', {}):
            rate_limited_log("Odd", level="verbose", logger_instance=mock_logger)
        mock_logger.warning.assert_called_once_with("Odd")

    def test_reset(self):
        mock_logger = MagicMock()
        rate_limited_log("Once", logger_instance=mock_logger)
        rate_limited_log("Once", logger_instance=mock_logger)
        assert mock_logger.warning.call_count == 1

        reset_rate_limits()
        rate_limited_log("Once", logger_instance=mock_logger)
        assert mock_logger.warning.call_count == 2

    def test_expiry(self):
        """Entries leave the TTL cache once the window passes."""
        from cachetools import TTLCache

        clock = [0.0]
        cache = TTLCache(maxsize=8, ttl=60, timer=lambda: clock[0])
        mock_logger = MagicMock()
        with patch('wallet_broker._rate_limited_log._seen_cache', cache):
            rate_limited_log("Tick", logger_instance=mock_logger)
            clock[0] = 30
            rate_limited_log("Tick", logger_instance=mock_logger)
            assert mock_logger.warning.call_count == 1

            clock[0] = 61
            rate_limited_log("Tick", logger_instance=mock_logger)
            assert mock_logger.warning.call_count == 2

"""
Unit tests for spfwatch/utils/rate_limit.py
"""

from __future__ import annotations

from unittest.mock import patch

from spfwatch.utils.rate_limit import clear_all_rate_limits, is_rate_limited


def setup_function():
    clear_all_rate_limits()


def test_first_request_is_allowed_and_second_blocked():
    assert is_rate_limited("alice", "example.com", 60) is False
    assert is_rate_limited("alice", "example.com", 60) is True


def test_keys_are_per_user_and_domain():
    assert is_rate_limited("alice", "example.com", 60) is False
    assert is_rate_limited("bob", "example.com", 60) is False
    assert is_rate_limited("alice", "other.example", 60) is False


def test_window_expiry_allows_again():
    with patch("spfwatch.utils.rate_limit.time.monotonic", side_effect=[100.0, 130.0, 161.0]):
        assert is_rate_limited("alice", "example.com", 60) is False
        assert is_rate_limited("alice", "example.com", 60) is True
        assert is_rate_limited("alice", "example.com", 60) is False

"""Tests for per-reconcile context."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from psa_operator.utils.context import (
    check_deadline,
    get_context_dict,
    get_correlation_id,
    reconcile_context,
    remaining_time,
    request_options,
)
from psa_operator.utils.errors import DeadlineExceededError


class TestReconcileContext:
    """Test cases for reconcile_context."""

    def test_generates_correlation_id(self):
        with reconcile_context() as corr_id:
            assert corr_id
            assert get_correlation_id() == corr_id
        assert get_correlation_id() is None

    def test_explicit_correlation_id(self):
        with reconcile_context("abc123"):
            assert get_context_dict({"name": "psa"}) == {"correlation_id": "abc123", "name": "psa"}

    def test_nested_restores_outer(self):
        with reconcile_context("outer"):
            with reconcile_context("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"

    def test_context_dict_without_id(self):
        assert get_context_dict() == {}


class TestDeadline:
    """Test cases for pass deadlines."""

    def test_unbounded(self):
        assert remaining_time() is None
        assert request_options() == {}
        check_deadline("anything")

    def test_bounded(self):
        with reconcile_context(timeout=60):
            left = remaining_time()
            assert 0 < left <= 60
            check_deadline("read ServiceAccount")
        assert remaining_time() is None

    @patch("psa_operator.utils.context.time.monotonic")
    def test_expired(self, mock_monotonic):
        mock_monotonic.return_value = 1000.0
        with reconcile_context(timeout=10):
            mock_monotonic.return_value = 1011.0
            with pytest.raises(DeadlineExceededError) as exc_info:
                check_deadline("mirror token")
        assert "mirror token" in str(exc_info.value)

    @patch("psa_operator.utils.context.time.monotonic")
    def test_request_timeout_floor(self, mock_monotonic):
        """Test that a nearly spent deadline still allows a one-second request."""
        mock_monotonic.return_value = 1000.0
        with reconcile_context(timeout=10):
            mock_monotonic.return_value = 1009.9
            assert request_options() == {"_request_timeout": 1.0}

"""Tests for API call throttling and retry helpers."""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
from kubernetes.client.exceptions import ApiException

from psa_operator.utils.context import reconcile_context
from psa_operator.utils.retry import call_k8s, is_conflict, is_rate_limited, retry_on_conflict


class TestIsRateLimited:
    """Test cases for rate limit detection."""

    def test_429(self):
        assert is_rate_limited(ApiException(status=429, reason="Too Many Requests")) is True

    def test_503_rate_limit_message(self):
        assert is_rate_limited(ApiException(status=503, reason="Rate limit exceeded")) is True

    def test_503_other(self):
        assert is_rate_limited(ApiException(status=503, reason="Service Unavailable")) is False

    def test_non_api_error(self):
        assert is_rate_limited(ValueError("rate limit")) is False


class TestCallK8s:
    """Test cases for call_k8s."""

    def test_passes_arguments(self):
        """Test that arguments reach the wrapped call."""
        func = Mock(return_value="ok")

        assert call_k8s(func, "a", name="b") == "ok"
        func.assert_called_once_with("a", name="b")

    @patch("psa_operator.utils.retry.time.sleep")
    def test_retries_rate_limit(self, mock_sleep):
        """Test that 429 responses are retried with exponential backoff."""
        func = Mock(side_effect=[ApiException(status=429), ApiException(status=429), "ok"])

        assert call_k8s(func) == "ok"
        assert func.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]

    @patch("psa_operator.utils.retry.time.sleep")
    def test_gives_up_after_retries(self, mock_sleep):
        """Test that a persistent 429 eventually propagates."""
        func = Mock(side_effect=ApiException(status=429))

        with pytest.raises(ApiException) as exc_info:
            call_k8s(func)

        assert exc_info.value.status == 429
        assert func.call_count == 4

    @patch("psa_operator.utils.retry.time.sleep")
    def test_other_errors_propagate(self, mock_sleep):
        """Test that non rate-limit errors are not retried."""
        func = Mock(side_effect=ApiException(status=403))

        with pytest.raises(ApiException):
            call_k8s(func)

        assert func.call_count == 1
        mock_sleep.assert_not_called()

    def test_no_timeout_outside_pass(self):
        """Test that no request timeout is added without a deadline."""
        func = Mock(return_value=None)

        call_k8s(func, name="ns")

        assert "_request_timeout" not in func.call_args.kwargs

    def test_deadline_bounds_request(self):
        """Test that a pass deadline becomes a request timeout."""
        func = Mock(return_value=None)

        with reconcile_context(timeout=30):
            call_k8s(func, name="ns")

        timeout = func.call_args.kwargs["_request_timeout"]
        assert 1.0 <= timeout <= 30

    def test_explicit_timeout_wins(self):
        """Test that a caller-supplied timeout is kept."""
        func = Mock(return_value=None)

        with reconcile_context(timeout=30):
            call_k8s(func, name="ns", _request_timeout=5)

        assert func.call_args.kwargs["_request_timeout"] == 5


class TestRetryOnConflict:
    """Test cases for optimistic concurrency retries."""

    def test_is_conflict(self):
        assert is_conflict(ApiException(status=409)) is True
        assert is_conflict(ApiException(status=404)) is False
        assert is_conflict(RuntimeError()) is False

    def test_retries_until_success(self):
        fn = Mock(side_effect=[ApiException(status=409), "updated"])

        assert retry_on_conflict(fn) == "updated"
        assert fn.call_count == 2

    def test_last_conflict_propagates(self):
        fn = Mock(side_effect=ApiException(status=409))

        with pytest.raises(ApiException) as exc_info:
            retry_on_conflict(fn, attempts=3)

        assert exc_info.value.status == 409
        assert fn.call_count == 3

    def test_other_errors_not_retried(self):
        fn = Mock(side_effect=ApiException(status=500))

        with pytest.raises(ApiException):
            retry_on_conflict(fn)

        assert fn.call_count == 1

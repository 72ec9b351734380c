"""Tests for base handler functionality."""

from __future__ import annotations

from unittest.mock import Mock, patch

import kopf
import pytest

from psa_operator.constants import FINALIZER
from psa_operator.handlers.base import BaseHandler


class TestBaseHandler:
    """Test cases for BaseHandler class."""

    def test_init(self):
        """Test handler initialization."""
        handler = BaseHandler(kind="ProviderServiceAccount")
        assert handler.kind == "ProviderServiceAccount"
        assert handler.logger is not None

    def test_ensure_finalizer_adds_when_missing(self):
        """Test that finalizer is added when not present."""
        handler = BaseHandler(kind="TestKind")
        meta = {"finalizers": []}
        patch = kopf.Patch()

        handler.ensure_finalizer(meta, patch)

        assert FINALIZER in patch.metadata["finalizers"]

    def test_ensure_finalizer_no_patch_when_present(self):
        """Test that an existing finalizer produces no metadata patch."""
        handler = BaseHandler(kind="TestKind")
        meta = {"finalizers": [FINALIZER, "other-finalizer"]}
        patch = kopf.Patch()

        handler.ensure_finalizer(meta, patch)

        assert "finalizers" not in patch.metadata

    def test_ensure_finalizer_creates_list_when_absent(self):
        """Test that finalizers list is created when absent."""
        handler = BaseHandler(kind="TestKind")
        patch = kopf.Patch()

        handler.ensure_finalizer({}, patch)

        assert patch.metadata["finalizers"] == [FINALIZER]

    def test_remove_finalizer(self):
        """Test that finalizer is removed."""
        handler = BaseHandler(kind="TestKind")
        meta = {"finalizers": [FINALIZER, "other-finalizer"]}
        patch = kopf.Patch()

        handler.remove_finalizer(meta, patch)

        assert patch.metadata["finalizers"] == ["other-finalizer"]

    def test_remove_finalizer_sets_none_when_empty(self):
        """Test that finalizers is set to None when last finalizer is removed."""
        handler = BaseHandler(kind="TestKind")
        meta = {"finalizers": [FINALIZER]}
        patch = kopf.Patch()

        handler.remove_finalizer(meta, patch)

        assert "finalizers" in patch.metadata
        assert patch.metadata["finalizers"] is None

    def test_remove_finalizer_no_patch_when_absent(self):
        """Test that removing an absent finalizer leaves metadata alone."""
        handler = BaseHandler(kind="TestKind")
        patch = kopf.Patch()

        handler.remove_finalizer({"finalizers": ["other-finalizer"]}, patch)

        assert "finalizers" not in patch.metadata


class TestReconcileWithMetrics:
    """Test cases for metric and event bookkeeping around a pass."""

    @patch("psa_operator.handlers.base.emit_reconcile_started")
    @patch("psa_operator.handlers.base.metrics")
    def test_success(self, mock_metrics, mock_emit_started):
        """Test successful reconciliation with metrics."""
        handler = BaseHandler(kind="TestKind")
        meta = {"name": "test-resource", "namespace": "default"}
        reconcile_fn = Mock()

        handler.reconcile_with_metrics(meta, reconcile_fn)

        reconcile_fn.assert_called_once()
        mock_emit_started.assert_called_once_with(meta)
        mock_metrics.reconcile_total.labels.assert_any_call(kind="TestKind", result="started")
        mock_metrics.reconcile_total.labels.assert_any_call(kind="TestKind", result="success")
        assert mock_metrics.reconcile_duration_seconds.labels.called

    @patch("psa_operator.handlers.base.emit_reconcile_failed")
    @patch("psa_operator.handlers.base.emit_reconcile_started")
    @patch("psa_operator.handlers.base.metrics")
    @patch("psa_operator.handlers.base.sanitize_exception")
    def test_failure(self, mock_sanitize, mock_metrics, mock_emit_started, mock_emit_failed):
        """Test failed reconciliation with metrics and error handling."""
        handler = BaseHandler(kind="TestKind")
        meta = {"name": "test-resource", "namespace": "default"}
        test_error = ValueError("Test error")
        mock_sanitize.return_value = "Sanitized error"

        def failing_fn():
            raise test_error

        with pytest.raises(ValueError):
            handler.reconcile_with_metrics(meta, failing_fn)

        # once for the log line, once for the event
        assert mock_sanitize.call_count == 2
        mock_sanitize.assert_any_call(test_error)
        mock_emit_started.assert_called_once_with(meta)
        mock_emit_failed.assert_called_once_with(meta, "Reconciliation failed: Sanitized error")
        mock_metrics.error_total.labels.assert_called_with(kind="TestKind", error_type="ValueError")
        mock_metrics.reconcile_total.labels.assert_any_call(kind="TestKind", result="error")

    @patch("psa_operator.handlers.base.emit_reconcile_failed")
    @patch("psa_operator.handlers.base.metrics")
    def test_requeue_is_not_a_failure(self, mock_metrics, mock_emit_failed):
        """Test that a scheduled requeue is counted but not reported as failed."""
        handler = BaseHandler(kind="TestKind")

        def requeue():
            raise kopf.TemporaryError("token pending", delay=5)

        with pytest.raises(kopf.TemporaryError):
            handler.reconcile_with_metrics({"name": "r"}, requeue)

        mock_metrics.reconcile_total.labels.assert_any_call(kind="TestKind", result="requeued")
        mock_metrics.error_total.labels.assert_not_called()
        mock_emit_failed.assert_not_called()
        assert mock_metrics.reconcile_duration_seconds.labels.called


class TestUpdateResourceStatus:
    """Test cases for status patching."""

    @patch("psa_operator.handlers.base.metrics")
    def test_ready(self, mock_metrics):
        """Test updating resource status to ready."""
        handler = BaseHandler(kind="TestKind")
        meta = {"name": "test-resource", "generation": 5}
        patch = kopf.Patch()
        conditions = [{"type": "ProviderServiceAccountsReady", "status": "True"}]

        handler.update_resource_status(patch, meta, {}, ready=True, status_data={"conditions": conditions})

        assert patch.status["observedGeneration"] == 5
        assert patch.status["conditions"] == conditions
        mock_metrics.resource_status_total.labels.assert_called_with(kind="TestKind", status="ready")

    @patch("psa_operator.handlers.base.metrics")
    def test_not_ready(self, mock_metrics):
        """Test updating resource status to not ready."""
        handler = BaseHandler(kind="TestKind")
        patch = kopf.Patch()

        handler.update_resource_status(patch, {"generation": 3}, {}, ready=False)

        assert patch.status["observedGeneration"] == 3
        mock_metrics.resource_status_total.labels.assert_called_with(kind="TestKind", status="not_ready")

    @patch("psa_operator.handlers.base.metrics")
    def test_unchanged_fields_not_written(self, mock_metrics):
        """Test that a converged status produces an empty patch."""
        handler = BaseHandler(kind="TestKind")
        conditions = [{"type": "ProviderServiceAccountsReady", "status": "True"}]
        status = {"observedGeneration": 2, "conditions": conditions}
        patch = kopf.Patch()

        handler.update_resource_status(
            patch, {"generation": 2}, status, ready=True, status_data={"conditions": list(conditions)}
        )

        assert not patch.status

    @patch("psa_operator.handlers.base.metrics")
    def test_only_changed_fields_written(self, mock_metrics):
        """Test that a generation bump alone patches observedGeneration."""
        handler = BaseHandler(kind="TestKind")
        conditions = [{"type": "ProviderServiceAccountsReady", "status": "True"}]
        patch = kopf.Patch()

        handler.update_resource_status(
            patch,
            {"generation": 3},
            {"observedGeneration": 2, "conditions": conditions},
            ready=True,
            status_data={"conditions": conditions},
        )

        assert dict(patch.status) == {"observedGeneration": 3}

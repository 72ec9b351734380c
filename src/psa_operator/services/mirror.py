"""Mirroring the ServiceAccount token into the target cluster."""

from __future__ import annotations

import logging
from typing import Any

import urllib3
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from .. import metrics
from ..constants import (
    FIELD_MANAGER,
    LABEL_MANAGED_BY,
    LABEL_OWNER_CLUSTER,
    REASON_TARGET_NAMESPACE_FAILED,
    REASON_TARGET_SECRET_FAILED,
    TOKEN_KEY,
)
from ..utils.errors import MirrorError, classify_api_exception, sanitize_exception
from ..utils.retry import call_k8s, is_conflict, retry_on_conflict

logger = logging.getLogger(__name__)


class TargetMirror:
    """Writes the namespace and token secret into one target cluster.

    The target secret is fully owned: its data is replaced, never merged. The
    namespace may be shared with other principals.
    """

    def __init__(self, core_api: Any, cluster_name: str):
        self.core_api = core_api
        self.cluster_name = cluster_name

    def _labels(self) -> dict[str, str]:
        return {LABEL_MANAGED_BY: FIELD_MANAGER, LABEL_OWNER_CLUSTER: self.cluster_name}

    def ensure_target_namespace(self, name: str) -> bool:
        """Create the namespace if absent.

        Returns:
            True if the namespace was created by this call

        Raises:
            MirrorError: The namespace is terminating or the cluster failed
            AuthorizationError: The operator may not manage namespaces there
        """
        try:
            namespace = call_k8s(self.core_api.read_namespace, name=name)
            phase = getattr(namespace.status, "phase", None) if namespace.status else None
            if phase == "Terminating":
                raise MirrorError(
                    f"target namespace {name} is terminating",
                    reason=REASON_TARGET_NAMESPACE_FAILED,
                )
            return False
        except ApiException as e:
            if e.status != 404:
                raise classify_api_exception(e, REASON_TARGET_NAMESPACE_FAILED, MirrorError) from e
        except urllib3.exceptions.HTTPError as e:
            raise MirrorError(
                f"target cluster {self.cluster_name} unreachable: {sanitize_exception(e)}",
                reason=REASON_TARGET_NAMESPACE_FAILED,
            ) from e

        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=self._labels()))
        try:
            call_k8s(self.core_api.create_namespace, body=body, field_manager=FIELD_MANAGER)
        except ApiException as e:
            if is_conflict(e):
                return False
            raise classify_api_exception(e, REASON_TARGET_NAMESPACE_FAILED, MirrorError) from e
        except urllib3.exceptions.HTTPError as e:
            raise MirrorError(
                f"target cluster {self.cluster_name} unreachable: {sanitize_exception(e)}",
                reason=REASON_TARGET_NAMESPACE_FAILED,
            ) from e

        logger.info(f"Created namespace {name} in cluster {self.cluster_name}")
        return True

    def ensure_target_secret(self, namespace: str, name: str, token: str) -> str:
        """Create or update the target secret so its token equals ``token``.

        Returns:
            "created", "updated" or "unchanged"
        """

        def apply() -> str:
            try:
                secret = call_k8s(self.core_api.read_namespaced_secret, name=name, namespace=namespace)
            except ApiException as e:
                if e.status != 404:
                    raise
                body = client.V1Secret(
                    metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=self._labels()),
                    type="Opaque",
                    data={TOKEN_KEY: token},
                )
                call_k8s(
                    self.core_api.create_namespaced_secret,
                    namespace=namespace,
                    body=body,
                    field_manager=FIELD_MANAGER,
                )
                return "created"

            if (secret.data or {}).get(TOKEN_KEY) == token:
                return "unchanged"

            secret.data = {TOKEN_KEY: token}
            secret.string_data = None
            call_k8s(
                self.core_api.replace_namespaced_secret,
                name=name,
                namespace=namespace,
                body=secret,
                field_manager=FIELD_MANAGER,
            )
            return "updated"

        try:
            result = retry_on_conflict(apply)
        except ApiException as e:
            metrics.target_secret_sync_total.labels(operation="sync", result="error").inc()
            raise classify_api_exception(e, REASON_TARGET_SECRET_FAILED, MirrorError) from e
        except urllib3.exceptions.HTTPError as e:
            metrics.target_secret_sync_total.labels(operation="sync", result="error").inc()
            raise MirrorError(
                f"target cluster {self.cluster_name} unreachable: {sanitize_exception(e)}",
                reason=REASON_TARGET_SECRET_FAILED,
            ) from e

        if result != "unchanged":
            logger.info(f"Target secret {namespace}/{name} {result} in cluster {self.cluster_name}")
            metrics.target_secret_sync_total.labels(operation=result, result="success").inc()
        return result

    def cleanup(self, namespace: str, name: str, delete_namespace: bool) -> list[str]:
        """Best-effort removal of the mirrored secret and, optionally, its namespace.

        The namespace is only deleted when it carries this operator's labels for
        this cluster. Nothing is raised.

        Returns:
            Sanitized descriptions of the steps that failed
        """
        failures = []

        try:
            call_k8s(self.core_api.delete_namespaced_secret, name=name, namespace=namespace)
            logger.info(f"Deleted target secret {namespace}/{name} in cluster {self.cluster_name}")
        except ApiException as e:
            if e.status != 404:
                failures.append(f"delete secret {namespace}/{name}: {sanitize_exception(e)}")
        except urllib3.exceptions.HTTPError as e:
            failures.append(f"delete secret {namespace}/{name}: {sanitize_exception(e)}")
            # Unreachable cluster; the namespace call would fail the same way
            return failures

        if not delete_namespace:
            return failures

        try:
            ns = call_k8s(self.core_api.read_namespace, name=namespace)
            labels = ns.metadata.labels or {}
            if labels != {**labels, **self._labels()}:
                logger.info(f"Namespace {namespace} not created by this operator, keeping it")
                return failures
            call_k8s(self.core_api.delete_namespace, name=namespace)
            logger.info(f"Deleted namespace {namespace} in cluster {self.cluster_name}")
        except ApiException as e:
            if e.status != 404:
                failures.append(f"delete namespace {namespace}: {sanitize_exception(e)}")
        except urllib3.exceptions.HTTPError as e:
            failures.append(f"delete namespace {namespace}: {sanitize_exception(e)}")

        return failures

"""Shared utilities for handlers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from ..constants import (
    ANNOTATION_RESYNC_REQUESTED_AT,
    API_GROUP,
    API_VERSION,
    KIND_PROVIDER_SERVICE_ACCOUNT,
    LABEL_PROVIDER_SERVICE_ACCOUNT,
    PLURAL_PROVIDER_SERVICE_ACCOUNT,
)
from ..utils.errors import sanitize_exception
from ..utils.retry import call_k8s

logger = logging.getLogger(__name__)


@dataclass
class ManagementClients:
    """API clients bound to the management cluster."""

    core: Any
    rbac: Any
    custom: Any


_clients: ManagementClients | None = None
_clients_lock = threading.Lock()


def get_management_clients() -> ManagementClients:
    """Get the process-wide management cluster clients.

    Configuration is loaded once, in-cluster first with a kubeconfig fallback.

    Returns:
        ManagementClients instance
    """
    global _clients
    with _clients_lock:
        if _clients is None:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()
            _clients = ManagementClients(
                core=client.CoreV1Api(),
                rbac=client.RbacAuthorizationV1Api(),
                custom=client.CustomObjectsApi(),
            )
        return _clients


def list_provider_service_accounts(custom_api: Any, namespace: str) -> list[dict[str, Any]]:
    """List the ProviderServiceAccounts of one namespace."""
    result = call_k8s(
        custom_api.list_namespaced_custom_object,
        group=API_GROUP,
        version=API_VERSION,
        namespace=namespace,
        plural=PLURAL_PROVIDER_SERVICE_ACCOUNT,
    )
    return result.get("items", [])


def owning_provider_service_account(meta: dict[str, Any]) -> str | None:
    """Name of the ProviderServiceAccount a managed object belongs to.

    The controller owner reference wins over the label.
    """
    for ref in meta.get("ownerReferences") or []:
        if ref.get("kind") == KIND_PROVIDER_SERVICE_ACCOUNT and ref.get("apiVersion", "").startswith(API_GROUP):
            return ref.get("name")
    return (meta.get("labels") or {}).get(LABEL_PROVIDER_SERVICE_ACCOUNT)


def request_resync(custom_api: Any, namespace: str, name: str) -> bool:
    """Ask for a prompt reconcile of a ProviderServiceAccount.

    Bumps a timestamp annotation, which kopf sees as an update. A PSA that is
    already gone is ignored.

    Returns:
        True if the annotation was written
    """
    body = {
        "metadata": {
            "annotations": {
                ANNOTATION_RESYNC_REQUESTED_AT: datetime.now(timezone.utc).isoformat(),
            },
        },
    }
    try:
        call_k8s(
            custom_api.patch_namespaced_custom_object,
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=PLURAL_PROVIDER_SERVICE_ACCOUNT,
            name=name,
            body=body,
        )
    except ApiException as e:
        if e.status == 404:
            return False
        logger.warning(f"Failed to request resync of {namespace}/{name}: {sanitize_exception(e)}")
        return False
    return True

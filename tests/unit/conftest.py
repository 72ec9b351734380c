"""Shared fixtures. Every fixture builds fresh fakes, so no state leaks between tests."""

from __future__ import annotations

import base64
from typing import Any
from unittest.mock import patch

import pytest
from kubernetes import client

from fakes import (
    CLUSTER_NAME,
    KUBECONFIG_YAML,
    MGMT_NAMESPACE,
    PSA,
    FakeCoreV1Api,
    FakeCustomObjectsApi,
    FakeRbacAuthorizationV1Api,
)
from psa_operator.constants import (
    API_GROUP_VERSION,
    DEFAULT_CLUSTER_KIND,
    PLURAL_PROVIDER_SERVICE_ACCOUNT,
)
from psa_operator.handlers.provider_service_account import ProviderServiceAccountHandler
from psa_operator.handlers.shared import ManagementClients
from psa_operator.utils.cache import invalidate_cache


@pytest.fixture(autouse=True)
def isolated_runtime():
    """Silence kopf events, skip client throttling and start from an empty cache."""
    invalidate_cache()
    with patch("psa_operator.utils.events.kopf.event") as mock_event, patch(
        "psa_operator.utils.retry._throttle"
    ):
        yield mock_event
    invalidate_cache()


@pytest.fixture
def management() -> ManagementClients:
    return ManagementClients(
        core=FakeCoreV1Api(),
        rbac=FakeRbacAuthorizationV1Api(),
        custom=FakeCustomObjectsApi(),
    )


@pytest.fixture
def target_core() -> FakeCoreV1Api:
    return FakeCoreV1Api()


@pytest.fixture
def cluster(management: ManagementClients) -> dict[str, Any]:
    """An owning VSphereCluster with a kubeconfig secret."""
    owner = {
        "apiVersion": API_GROUP_VERSION,
        "kind": DEFAULT_CLUSTER_KIND,
        "metadata": {"name": CLUSTER_NAME, "namespace": MGMT_NAMESPACE, "uid": "uid-cluster-a"},
        "status": {"controlPlaneReady": True},
    }
    management.custom.add("vsphereclusters", owner)
    management.core.store.put(
        "Secret",
        MGMT_NAMESPACE,
        client.V1Secret(
            metadata=client.V1ObjectMeta(name=f"{CLUSTER_NAME}-kubeconfig"),
            data={"value": base64.b64encode(KUBECONFIG_YAML).decode()},
        ),
    )
    return owner


@pytest.fixture
def handler(management: ManagementClients, target_core: FakeCoreV1Api) -> ProviderServiceAccountHandler:
    return ProviderServiceAccountHandler(clients=management, target_client_factory=lambda kubeconfig: target_core)


@pytest.fixture
def psa(management: ManagementClients) -> PSA:
    resource = PSA()
    management.custom.add(PLURAL_PROVIDER_SERVICE_ACCOUNT, resource.as_object())
    return resource

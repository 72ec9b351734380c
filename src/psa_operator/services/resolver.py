"""Resolution of a ProviderServiceAccount's owning cluster and target client."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Callable

import urllib3
import yaml
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from ..constants import (
    CLUSTER_PLURALS,
    DEFAULT_CLUSTER_API_VERSION,
    DEFAULT_CLUSTER_KIND,
    KUBECONFIG_SECRET_KEY,
    KUBECONFIG_SECRET_SUFFIX,
    REASON_TARGET_CLUSTER_UNAVAILABLE,
)
from ..utils.cache import get_cached_object, make_cache_key, set_cached_object
from ..utils.errors import (
    InvalidReferenceError,
    TargetClusterUnavailableError,
    classify_api_exception,
    sanitize_exception,
)
from ..utils.retry import call_k8s

logger = logging.getLogger(__name__)

# Label CAPI puts on infrastructure clusters pointing at the Cluster that owns the kubeconfig
CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"


@dataclass
class ClusterRef:
    """Fully defaulted reference to the owning cluster resource."""

    name: str
    namespace: str
    kind: str
    api_version: str

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]

    @property
    def plural(self) -> str:
        return cluster_plural(self.kind)


@dataclass
class ResolvedTarget:
    """The owning cluster and a client bound to the target cluster."""

    owner: dict[str, Any]
    ref: ClusterRef
    core_api: Any

    @property
    def cluster_name(self) -> str:
        return self.owner.get("metadata", {}).get("name", self.ref.name)


def cluster_plural(kind: str) -> str:
    """Plural resource name for a cluster kind."""
    return CLUSTER_PLURALS.get(kind, f"{kind.lower()}s")


def parse_ref(spec: dict[str, Any], meta: dict[str, Any]) -> ClusterRef:
    """Build a ClusterRef from spec.ref, defaulting from the controller owner.

    Raises:
        InvalidReferenceError: If spec.ref or its name is empty
    """
    ref = spec.get("ref") or {}
    name = ref.get("name")
    if not name:
        raise InvalidReferenceError()

    controller_owner = next(
        (o for o in meta.get("ownerReferences") or [] if o.get("controller")),
        {},
    )
    kind = ref.get("kind") or controller_owner.get("kind") or DEFAULT_CLUSTER_KIND
    api_version = ref.get("apiVersion") or controller_owner.get("apiVersion") or DEFAULT_CLUSTER_API_VERSION
    if "/" not in api_version:
        raise InvalidReferenceError(f"spec.ref.apiVersion {api_version!r} must be group/version")

    return ClusterRef(
        name=name,
        namespace=ref.get("namespace") or meta.get("namespace", "default"),
        kind=kind,
        api_version=api_version,
    )


def owner_reference(owner: dict[str, Any]) -> dict[str, Any]:
    """Controller owner reference pointing at ``owner``."""
    owner_meta = owner.get("metadata", {})
    return {
        "apiVersion": owner.get("apiVersion"),
        "kind": owner.get("kind"),
        "name": owner_meta.get("name"),
        "uid": owner_meta.get("uid"),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def build_target_client(kubeconfig: dict[str, Any]) -> client.CoreV1Api:
    """Create a CoreV1Api bound to the cluster described by ``kubeconfig``."""
    api_client = config.new_client_from_config_dict(kubeconfig)
    return client.CoreV1Api(api_client=api_client)


class TargetResolver:
    """Resolves spec.ref to the owning cluster and a target-cluster client.

    Read-only: nothing is written to either cluster.
    """

    def __init__(
        self,
        core_api: Any,
        custom_api: Any,
        client_factory: Callable[[dict[str, Any]], Any] = build_target_client,
    ):
        self.core_api = core_api
        self.custom_api = custom_api
        self.client_factory = client_factory

    def resolve(self, spec: dict[str, Any], meta: dict[str, Any]) -> ResolvedTarget:
        """Resolve the owning cluster and a client for its API.

        Raises:
            InvalidReferenceError: Empty or dangling reference
            AuthorizationError: Missing permission to read the cluster
            TargetClusterUnavailableError: Cluster exists but is not reachable yet
        """
        ref = parse_ref(spec, meta)
        return self.connect(self.get_owner(ref), ref)

    def connect(self, owner: dict[str, Any], ref: ClusterRef) -> ResolvedTarget:
        """Bind a target-cluster client for an already-read owner.

        Raises:
            TargetClusterUnavailableError: Control plane not ready or kubeconfig unusable
        """
        control_plane_ready = owner.get("status", {}).get("controlPlaneReady")
        if control_plane_ready is False:
            raise TargetClusterUnavailableError(
                f"{ref.kind} {ref.namespace}/{ref.name} control plane is not ready"
            )

        return ResolvedTarget(owner=owner, ref=ref, core_api=self.target_client(owner, ref))

    def get_owner(self, ref: ClusterRef) -> dict[str, Any]:
        """Read the owning cluster object."""
        try:
            return call_k8s(
                self.custom_api.get_namespaced_custom_object,
                group=ref.group,
                version=ref.version,
                namespace=ref.namespace,
                plural=ref.plural,
                name=ref.name,
            )
        except ApiException as e:
            if e.status == 404:
                raise InvalidReferenceError(
                    f"{ref.kind} {ref.namespace}/{ref.name} not found"
                ) from e
            raise classify_api_exception(
                e, REASON_TARGET_CLUSTER_UNAVAILABLE, TargetClusterUnavailableError
            ) from e

    def target_client(self, owner: dict[str, Any], ref: ClusterRef) -> Any:
        """Return a cached client for the target cluster, building it if needed."""
        owner_meta = owner.get("metadata", {})
        cluster_name = (owner_meta.get("labels") or {}).get(CLUSTER_NAME_LABEL) or ref.name
        secret_name = f"{cluster_name}{KUBECONFIG_SECRET_SUFFIX}"

        try:
            secret = call_k8s(
                self.core_api.read_namespaced_secret,
                name=secret_name,
                namespace=ref.namespace,
            )
        except ApiException as e:
            if e.status == 404:
                raise TargetClusterUnavailableError(
                    f"kubeconfig secret {ref.namespace}/{secret_name} not found"
                ) from e
            raise classify_api_exception(
                e, REASON_TARGET_CLUSTER_UNAVAILABLE, TargetClusterUnavailableError
            ) from e

        encoded = (secret.data or {}).get(KUBECONFIG_SECRET_KEY)
        if not encoded:
            raise TargetClusterUnavailableError(
                f"kubeconfig secret {ref.namespace}/{secret_name} has no {KUBECONFIG_SECRET_KEY!r} key"
            )

        # One client per cluster; a rotated kubeconfig (new resourceVersion) replaces it
        cache_key = make_cache_key(ref.kind, ref.namespace, ref.name, owner_meta.get("uid", ""))
        resource_version = secret.metadata.resource_version or ""
        cached = get_cached_object(cache_key)
        if cached is not None:
            cached_version, cached_client = cached
            if cached_version == resource_version:
                return cached_client

        try:
            kubeconfig = yaml.safe_load(base64.b64decode(encoded))
            if not isinstance(kubeconfig, dict):
                raise ValueError("kubeconfig is not a mapping")
            target_client = self.client_factory(kubeconfig)
        except (ValueError, yaml.YAMLError, config.ConfigException, urllib3.exceptions.HTTPError) as e:
            logger.warning(f"Unusable kubeconfig for cluster {ref.namespace}/{ref.name}: {sanitize_exception(e)}")
            raise TargetClusterUnavailableError(
                f"kubeconfig secret {ref.namespace}/{secret_name} is not usable: {sanitize_exception(e)}"
            ) from e

        set_cached_object(cache_key, (resource_version, target_client))
        if cached is not None:
            logger.info(f"Kubeconfig of cluster {ref.namespace}/{ref.name} rotated, replaced its client")
            close_target_client(cached[1])
        return target_client


def close_target_client(target_client: Any) -> None:
    """Release the connection pool of a client that is no longer cached."""
    api_client = getattr(target_client, "api_client", None)
    if api_client is not None:
        api_client.close()

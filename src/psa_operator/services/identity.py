"""Management-cluster identity: ServiceAccount, Role and RoleBinding."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from .. import metrics
from ..constants import (
    API_GROUP_VERSION,
    FIELD_MANAGER,
    KIND_PROVIDER_SERVICE_ACCOUNT,
    LABEL_MANAGED_BY,
    LABEL_PROVIDER_SERVICE_ACCOUNT,
    RBAC_API_GROUP,
    REASON_ROLE_BINDING_FAILED,
    REASON_ROLE_FAILED,
    REASON_SERVICE_ACCOUNT_FAILED,
    SERVICE_ACCOUNT_NAME_ANNOTATION,
    SERVICE_ACCOUNT_TOKEN_TYPE,
    SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAME,
    SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAMESPACE,
    TOKEN_SECRET_SUFFIX,
)
from ..utils.errors import InvalidRulesError, ProvisioningError, classify_api_exception
from ..utils.events import (
    emit_role_binding_created,
    emit_role_binding_updated,
    emit_role_created,
    emit_role_updated,
    emit_service_account_created,
)
from ..utils.retry import call_k8s, is_conflict, retry_on_conflict

logger = logging.getLogger(__name__)

# PolicyRule fields a Role may carry, in API (camelCase) spelling
RULE_FIELDS = ("apiGroups", "resources", "resourceNames", "verbs")

_serializer = client.ApiClient()


def validate_rules(rules: Any) -> list[dict[str, list[str]]]:
    """Validate spec.rules and return them in canonical form.

    Raises:
        InvalidRulesError: If the list is empty or a rule lacks verbs or resources
    """
    if not rules:
        raise InvalidRulesError("spec.rules must contain at least one rule")

    canonical = []
    for idx, rule in enumerate(rules):
        if not isinstance(rule, Mapping):
            raise InvalidRulesError(f"spec.rules[{idx}] must be an object")
        rule = dict(rule)
        if rule.get("nonResourceURLs"):
            raise InvalidRulesError(f"spec.rules[{idx}]: nonResourceURLs are not allowed in a Role")
        if not rule.get("verbs"):
            raise InvalidRulesError(f"spec.rules[{idx}]: verbs must not be empty")
        if not rule.get("resources"):
            raise InvalidRulesError(f"spec.rules[{idx}]: resources must not be empty")
        canonical.append(_canonical_rule(rule))
    return canonical


def normalize_rules(rules: Any) -> list[dict[str, list[str]]]:
    """Canonical form of observed Role rules (model objects or dicts)."""
    return [_canonical_rule(rule) for rule in _serializer.sanitize_for_serialization(rules or [])]


def _canonical_rule(rule: dict[str, Any]) -> dict[str, list[str]]:
    return {field: list(rule[field]) for field in RULE_FIELDS if rule.get(field)}


def _policy_rule(rule: dict[str, list[str]]) -> client.V1PolicyRule:
    return client.V1PolicyRule(
        api_groups=rule.get("apiGroups"),
        resources=rule.get("resources"),
        resource_names=rule.get("resourceNames"),
        verbs=rule.get("verbs"),
    )


def psa_owner_reference(meta: dict[str, Any]) -> client.V1OwnerReference:
    """Owner reference making a ProviderServiceAccount the controller of an object."""
    return client.V1OwnerReference(
        api_version=API_GROUP_VERSION,
        kind=KIND_PROVIDER_SERVICE_ACCOUNT,
        name=meta["name"],
        uid=meta["uid"],
        controller=True,
        block_owner_deletion=True,
    )


def system_service_account_key(namespace: str, name: str) -> str:
    """Key of a service account in the system service-accounts ConfigMap."""
    return f"{namespace}.{name}"


class IdentityProvisioner:
    """Creates and converges the RBAC triple for one ProviderServiceAccount.

    Every object is named after the PSA, lives in the PSA namespace and is owned
    by the PSA, so deletion is left to the garbage collector.
    """

    def __init__(self, core_api: Any, rbac_api: Any, meta: dict[str, Any]):
        self.core_api = core_api
        self.rbac_api = rbac_api
        self.meta = meta
        self.name = meta["name"]
        self.namespace = meta["namespace"]

    def _metadata(self, name: str | None = None, annotations: dict[str, str] | None = None) -> client.V1ObjectMeta:
        return client.V1ObjectMeta(
            name=name or self.name,
            namespace=self.namespace,
            labels={
                LABEL_MANAGED_BY: FIELD_MANAGER,
                LABEL_PROVIDER_SERVICE_ACCOUNT: self.name,
            },
            annotations=annotations,
            owner_references=[psa_owner_reference(self.meta)],
        )

    def _desired_role_ref(self) -> dict[str, str]:
        return {"apiGroup": RBAC_API_GROUP, "kind": "Role", "name": self.name}

    def _desired_subjects(self) -> list[dict[str, str]]:
        return [{"kind": "ServiceAccount", "name": self.name, "namespace": self.namespace}]

    def ensure_service_account(self) -> Any:
        """Return the PSA's ServiceAccount, creating it if absent."""
        try:
            return call_k8s(
                self.core_api.read_namespaced_service_account,
                name=self.name,
                namespace=self.namespace,
            )
        except ApiException as e:
            if e.status != 404:
                raise classify_api_exception(e, REASON_SERVICE_ACCOUNT_FAILED) from e

        body = client.V1ServiceAccount(metadata=self._metadata())
        try:
            created = call_k8s(
                self.core_api.create_namespaced_service_account,
                namespace=self.namespace,
                body=body,
                field_manager=FIELD_MANAGER,
            )
        except ApiException as e:
            if is_conflict(e):
                # Created concurrently; the next pass reads it
                raise ProvisioningError(
                    f"ServiceAccount {self.namespace}/{self.name} was created concurrently",
                    reason=REASON_SERVICE_ACCOUNT_FAILED,
                ) from e
            raise classify_api_exception(e, REASON_SERVICE_ACCOUNT_FAILED) from e

        logger.info(f"Created ServiceAccount {self.namespace}/{self.name}")
        emit_service_account_created(self.meta, self.name)
        return created

    def ensure_role(self, rules: list[dict[str, list[str]]]) -> str:
        """Converge the Role's rules to ``rules``.

        Returns:
            "created", "updated" or "unchanged"
        """

        def apply() -> str:
            try:
                role = call_k8s(self.rbac_api.read_namespaced_role, name=self.name, namespace=self.namespace)
            except ApiException as e:
                if e.status != 404:
                    raise
                body = client.V1Role(metadata=self._metadata(), rules=[_policy_rule(r) for r in rules])
                call_k8s(
                    self.rbac_api.create_namespaced_role,
                    namespace=self.namespace,
                    body=body,
                    field_manager=FIELD_MANAGER,
                )
                return "created"

            if normalize_rules(role.rules) == rules:
                return "unchanged"

            role.rules = [_policy_rule(r) for r in rules]
            call_k8s(
                self.rbac_api.replace_namespaced_role,
                name=self.name,
                namespace=self.namespace,
                body=role,
                field_manager=FIELD_MANAGER,
            )
            return "updated"

        try:
            result = retry_on_conflict(apply)
        except ApiException as e:
            raise classify_api_exception(e, REASON_ROLE_FAILED) from e

        if result == "created":
            logger.info(f"Created Role {self.namespace}/{self.name}")
            emit_role_created(self.meta, self.name)
        elif result == "updated":
            logger.info(f"Updated rules of Role {self.namespace}/{self.name}")
            metrics.drift_detected_total.labels(kind=KIND_PROVIDER_SERVICE_ACCOUNT, resource_type="Role").inc()
            emit_role_updated(self.meta, self.name)
        return result

    def ensure_role_binding(self) -> str:
        """Bind the PSA's Role to the PSA's ServiceAccount.

        roleRef is immutable, so a binding pointing elsewhere is deleted and
        recreated; subject drift is corrected in place.

        Returns:
            "created", "recreated", "updated" or "unchanged"
        """
        role_ref = self._desired_role_ref()
        subjects = self._desired_subjects()

        def create() -> None:
            body = client.V1RoleBinding(
                metadata=self._metadata(),
                role_ref=client.V1RoleRef(
                    api_group=role_ref["apiGroup"], kind=role_ref["kind"], name=role_ref["name"]
                ),
                subjects=[
                    client.RbacV1Subject(kind=s["kind"], name=s["name"], namespace=s["namespace"])
                    for s in subjects
                ],
            )
            call_k8s(
                self.rbac_api.create_namespaced_role_binding,
                namespace=self.namespace,
                body=body,
                field_manager=FIELD_MANAGER,
            )

        def apply() -> str:
            try:
                binding = call_k8s(
                    self.rbac_api.read_namespaced_role_binding, name=self.name, namespace=self.namespace
                )
            except ApiException as e:
                if e.status != 404:
                    raise
                create()
                return "created"

            observed_ref = _serializer.sanitize_for_serialization(binding.role_ref) or {}
            if {k: observed_ref.get(k) for k in role_ref} != role_ref:
                call_k8s(
                    self.rbac_api.delete_namespaced_role_binding,
                    name=self.name,
                    namespace=self.namespace,
                )
                create()
                return "recreated"

            observed_subjects = [
                {k: s.get(k) for k in ("kind", "name", "namespace")}
                for s in _serializer.sanitize_for_serialization(binding.subjects or [])
            ]
            if observed_subjects == subjects:
                return "unchanged"

            binding.subjects = [
                client.RbacV1Subject(kind=s["kind"], name=s["name"], namespace=s["namespace"])
                for s in subjects
            ]
            call_k8s(
                self.rbac_api.replace_namespaced_role_binding,
                name=self.name,
                namespace=self.namespace,
                body=binding,
                field_manager=FIELD_MANAGER,
            )
            return "updated"

        try:
            result = retry_on_conflict(apply)
        except ApiException as e:
            raise classify_api_exception(e, REASON_ROLE_BINDING_FAILED) from e

        if result == "created":
            logger.info(f"Created RoleBinding {self.namespace}/{self.name}")
            emit_role_binding_created(self.meta, self.name)
        elif result != "unchanged":
            logger.info(f"RoleBinding {self.namespace}/{self.name} {result}")
            metrics.drift_detected_total.labels(
                kind=KIND_PROVIDER_SERVICE_ACCOUNT, resource_type="RoleBinding"
            ).inc()
            emit_role_binding_updated(self.meta, self.name)
        return result

    def ensure_token_request_secret(self) -> bool:
        """Ask the token controller for a long-lived token for the ServiceAccount.

        Clusters no longer issue ServiceAccount secrets automatically, so an empty
        ``kubernetes.io/service-account-token`` secret is created; the cluster fills
        in ``data.token``. The operator never writes the token itself.

        Returns:
            True if the secret was created by this call
        """
        secret_name = f"{self.name}{TOKEN_SECRET_SUFFIX}"
        try:
            call_k8s(self.core_api.read_namespaced_secret, name=secret_name, namespace=self.namespace)
            return False
        except ApiException as e:
            if e.status != 404:
                raise classify_api_exception(e, REASON_SERVICE_ACCOUNT_FAILED) from e

        body = client.V1Secret(
            metadata=self._metadata(
                name=secret_name,
                annotations={SERVICE_ACCOUNT_NAME_ANNOTATION: self.name},
            ),
            type=SERVICE_ACCOUNT_TOKEN_TYPE,
        )
        try:
            call_k8s(
                self.core_api.create_namespaced_secret,
                namespace=self.namespace,
                body=body,
                field_manager=FIELD_MANAGER,
            )
        except ApiException as e:
            if is_conflict(e):
                return False
            raise classify_api_exception(e, REASON_SERVICE_ACCOUNT_FAILED) from e

        logger.info(f"Requested token secret {self.namespace}/{secret_name}")
        return True

    def register_system_service_account(self) -> bool:
        """List the ServiceAccount in the system service-accounts ConfigMap.

        No-op unless the ConfigMap location is configured.

        Returns:
            True if the ConfigMap was written
        """
        cm_namespace = SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAMESPACE
        cm_name = SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAME
        if not cm_namespace or not cm_name:
            return False

        key = system_service_account_key(self.namespace, self.name)
        try:
            config_map = call_k8s(self.core_api.read_namespaced_config_map, name=cm_name, namespace=cm_namespace)
        except ApiException as e:
            if e.status != 404:
                raise classify_api_exception(e, REASON_SERVICE_ACCOUNT_FAILED) from e
            body = client.V1ConfigMap(
                metadata=client.V1ObjectMeta(
                    name=cm_name,
                    namespace=cm_namespace,
                    labels={LABEL_MANAGED_BY: FIELD_MANAGER},
                ),
                data={key: "true"},
            )
            try:
                call_k8s(
                    self.core_api.create_namespaced_config_map,
                    namespace=cm_namespace,
                    body=body,
                    field_manager=FIELD_MANAGER,
                )
                return True
            except ApiException as create_error:
                if not is_conflict(create_error):
                    raise classify_api_exception(create_error, REASON_SERVICE_ACCOUNT_FAILED) from create_error
                config_map = None

        if config_map is not None and (config_map.data or {}).get(key) == "true":
            return False

        try:
            call_k8s(
                self.core_api.patch_namespaced_config_map,
                name=cm_name,
                namespace=cm_namespace,
                body={"data": {key: "true"}},
                field_manager=FIELD_MANAGER,
            )
        except ApiException as e:
            raise classify_api_exception(e, REASON_SERVICE_ACCOUNT_FAILED) from e
        return True


def unregister_system_service_account(core_api: Any, namespace: str, name: str) -> bool:
    """Remove a ServiceAccount from the system service-accounts ConfigMap.

    Returns:
        True if an entry was removed
    """
    cm_namespace = SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAMESPACE
    cm_name = SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAME
    if not cm_namespace or not cm_name:
        return False

    key = system_service_account_key(namespace, name)
    try:
        config_map = call_k8s(core_api.read_namespaced_config_map, name=cm_name, namespace=cm_namespace)
    except ApiException as e:
        if e.status == 404:
            return False
        raise
    if key not in (config_map.data or {}):
        return False

    # A null value removes the key under both merge-patch flavours
    call_k8s(
        core_api.patch_namespaced_config_map,
        name=cm_name,
        namespace=cm_namespace,
        body={"data": {key: None}},
    )
    return True

"""Handler for ProviderServiceAccount CRD."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

import kopf
import urllib3
from kubernetes.client.exceptions import ApiException

from .. import metrics
from ..constants import (
    API_GROUP_VERSION,
    COND_PROVIDER_SERVICE_ACCOUNTS_READY,
    DRIFT_CHECK_INTERVAL_SECONDS,
    FIELD_MANAGER,
    KIND_PROVIDER_SERVICE_ACCOUNT,
    LABEL_MANAGED_BY,
    RBAC_API_GROUP,
    RECONCILE_TIMEOUT_SECONDS,
    REASON_SERVICE_ACCOUNT_FAILED,
    REASON_TARGET_CLUSTER_UNAVAILABLE,
    REASON_TARGET_SECRET_FAILED,
    REASON_TOKEN_READ_FAILED,
    RETRY_REQUEUE_SECONDS,
    SERVICE_ACCOUNT_TOKEN_TYPE,
    TERMINAL_REQUEUE_SECONDS,
    TOKEN_KEY,
    TOKEN_PENDING_REQUEUE_SECONDS,
)
from ..services import (
    CredentialReader,
    IdentityProvisioner,
    TargetMirror,
    TargetResolver,
    build_target_client,
    owner_reference,
    unregister_system_service_account,
    validate_rules,
)
from ..services.resolver import ClusterRef, parse_ref
from ..tracing import add_span_attribute, trace_span
from ..utils.conditions import (
    ReconcileOutcome,
    aggregate_conditions,
    get_condition,
    project_condition_to_owner,
    set_provider_service_accounts_ready_condition,
)
from ..utils.context import check_deadline, reconcile_context
from ..utils.errors import (
    InvalidReferenceError,
    InvalidTargetError,
    ProvisioningError,
    ReconcileError,
    TokenPendingError,
    sanitize_exception,
)
from ..utils.events import (
    emit_provisioned,
    emit_target_cleanup_failed,
    emit_target_secret_created,
    emit_target_secret_updated,
    emit_token_pending,
)
from .base import BaseHandler
from .shared import (
    ManagementClients,
    get_management_clients,
    list_provider_service_accounts,
    owning_provider_service_account,
    request_resync,
)

# Managed object kinds whose deletion triggers a resync of the owning PSA
RESYNC_ON_DELETE_KINDS = {"ServiceAccount", "Role", "RoleBinding", "Secret"}


@dataclass
class PipelineResult:
    """Outcome of one pass plus what was learned about the owning cluster."""

    outcome: ReconcileOutcome = field(default_factory=ReconcileOutcome)
    owner: dict[str, Any] | None = None
    ref: ClusterRef | None = None


def target_location(spec: dict[str, Any]) -> tuple[str, str]:
    """Return (targetNamespace, targetSecretName).

    Raises:
        InvalidTargetError: If either is missing
    """
    target_namespace = spec.get("targetNamespace")
    target_secret_name = spec.get("targetSecretName")
    if not target_namespace or not target_secret_name:
        raise InvalidTargetError("spec.targetNamespace and spec.targetSecretName are required")
    return target_namespace, target_secret_name


class ProviderServiceAccountHandler(BaseHandler):
    """Handler for ProviderServiceAccount resources."""

    def __init__(
        self,
        clients: ManagementClients | None = None,
        target_client_factory: Callable[[dict[str, Any]], Any] = build_target_client,
    ):
        """Initialize ProviderServiceAccount handler.

        Args:
            clients: Management cluster clients (loaded from config on first use when omitted)
            target_client_factory: Builds a CoreV1Api from a target kubeconfig
        """
        super().__init__(KIND_PROVIDER_SERVICE_ACCOUNT)
        self._clients = clients
        self.target_client_factory = target_client_factory

    @property
    def clients(self) -> ManagementClients:
        if self._clients is None:
            self._clients = get_management_clients()
        return self._clients

    def resolver(self) -> TargetResolver:
        return TargetResolver(self.clients.core, self.clients.custom, self.target_client_factory)

    def ensure_owner_reference(self, meta: dict[str, Any], patch: kopf.Patch, owner: dict[str, Any]) -> None:
        """Make the owning cluster the controller of the PSA when nothing else is."""
        desired = owner_reference(owner)
        refs = list(meta.get("ownerReferences") or [])
        if any(ref.get("uid") == desired["uid"] for ref in refs):
            return
        if any(ref.get("controller") for ref in refs):
            self.log_warning(
                meta,
                f"Not adopting: already controlled by another owner than {desired['kind']} {desired['name']}",
                reason="OwnerConflict",
            )
            return
        patch.metadata["ownerReferences"] = refs + [desired]

    def run_pipeline(self, spec: dict[str, Any], meta: dict[str, Any], patch: kopf.Patch) -> PipelineResult:
        """Resolve, provision, read the token and mirror it.

        Stops at the first failing step; the error is recorded on the outcome
        instead of being raised.
        """
        result = PipelineResult()
        outcome = result.outcome
        step_reason = REASON_TARGET_CLUSTER_UNAVAILABLE
        core = self.clients.core

        try:
            check_deadline("resolving the owning cluster")
            with trace_span("resolve_target", kind=self.kind):
                resolver = self.resolver()
                result.ref = parse_ref(spec, meta)
                result.owner = resolver.get_owner(result.ref)
                self.ensure_owner_reference(meta, patch, result.owner)
                target = resolver.connect(result.owner, result.ref)
                add_span_attribute("cluster.name", target.cluster_name)
            outcome.resolved = True

            rules = validate_rules(spec.get("rules"))
            target_namespace, target_secret_name = target_location(spec)

            step_reason = REASON_SERVICE_ACCOUNT_FAILED
            check_deadline("provisioning RBAC")
            with trace_span("provision_identity", kind=self.kind):
                identity = IdentityProvisioner(core, self.clients.rbac, meta)
                service_account = identity.ensure_service_account()
                identity.ensure_role(rules)
                identity.ensure_role_binding()
                identity.register_system_service_account()
            outcome.rbac_ready = True

            step_reason = REASON_TOKEN_READ_FAILED
            check_deadline("reading the token")
            with trace_span("read_token", kind=self.kind):
                reader = CredentialReader(core)
                try:
                    token = reader.read_token(service_account)
                except TokenPendingError:
                    if reader.find_token_secret(service_account) is None:
                        identity.ensure_token_request_secret()
                    raise
            outcome.token_ready = True

            step_reason = REASON_TARGET_SECRET_FAILED
            check_deadline("mirroring the token")
            with trace_span("mirror_token", kind=self.kind):
                mirror = TargetMirror(target.core_api, target.cluster_name)
                mirror.ensure_target_namespace(target_namespace)
                sync = mirror.ensure_target_secret(target_namespace, target_secret_name, token)
            location = f"{target.cluster_name}:{target_namespace}/{target_secret_name}"
            if sync == "created":
                emit_target_secret_created(meta, location)
            elif sync == "updated":
                metrics.drift_detected_total.labels(kind=self.kind, resource_type="TargetSecret").inc()
                emit_target_secret_updated(meta, location)
            outcome.mirrored = True
        except ReconcileError as e:
            outcome.error = e
        except urllib3.exceptions.HTTPError as e:
            # Timeouts and connection failures against the management cluster
            outcome.error = ProvisioningError(sanitize_exception(e), reason=step_reason)

        return result

    def report(
        self,
        meta: dict[str, Any],
        status: dict[str, Any],
        patch: kopf.Patch,
        spec: dict[str, Any],
        result: PipelineResult,
        retry: int = 0,
    ) -> dict[str, Any]:
        """Write the readiness condition and project it onto the owning cluster.

        Returns:
            The condition as written
        """
        outcome = result.outcome
        conditions = list(status.get("conditions") or [])
        previous = get_condition(conditions, COND_PROVIDER_SERVICE_ACCOUNTS_READY)
        updated = set_provider_service_accounts_ready_condition(
            conditions,
            outcome,
            retry=retry,
            observed_generation=meta.get("generation"),
        )
        self.update_resource_status(patch, meta, status, outcome.ready, {"conditions": updated})

        condition = get_condition(updated, COND_PROVIDER_SERVICE_ACCOUNTS_READY)
        if outcome.ready and (previous is None or previous.get("status") != "True"):
            emit_provisioned(meta, f"{spec.get('targetNamespace')}/{spec.get('targetSecretName')}")
            self.log_info(meta, "ProviderServiceAccount provisioned", reason="Provisioned")

        if result.owner is not None and result.ref is not None:
            self.refresh_owner_condition(meta, result.owner, result.ref, condition)
        return condition

    def sibling_conditions(self, meta: dict[str, Any], ref: ClusterRef) -> dict[str, dict[str, Any]]:
        """Readiness conditions of the other live PSAs referencing the same cluster.

        PSAs that have not reported a condition yet are left out.

        Raises:
            ApiException: If the PSAs cannot be listed
        """
        conditions = {}
        for other in list_provider_service_accounts(self.clients.custom, meta.get("namespace", "default")):
            other_meta = other.get("metadata", {})
            if other_meta.get("uid") == meta.get("uid") or other_meta.get("deletionTimestamp"):
                continue
            try:
                other_ref = parse_ref(other.get("spec", {}), other_meta)
            except InvalidReferenceError:
                continue
            if (other_ref.namespace, other_ref.name, other_ref.kind) != (ref.namespace, ref.name, ref.kind):
                continue
            other_condition = get_condition(
                (other.get("status") or {}).get("conditions"), COND_PROVIDER_SERVICE_ACCOUNTS_READY
            )
            if other_condition is not None:
                conditions[other_meta.get("name", "")] = other_condition
        return conditions

    def refresh_owner_condition(
        self,
        meta: dict[str, Any],
        owner: dict[str, Any],
        ref: ClusterRef,
        condition: dict[str, Any] | None = None,
    ) -> bool:
        """Project the worst-of condition of all PSAs of the owning cluster onto it.

        ``condition`` is this PSA's fresh condition; None leaves this PSA out,
        as on deletion. Nothing is written when the PSAs cannot be listed.

        Returns:
            True if the owner carries the aggregated condition
        """
        try:
            conditions = self.sibling_conditions(meta, ref)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            self.log_warning(
                meta,
                f"Cannot list ProviderServiceAccounts, not updating {ref.kind} {ref.name}: {sanitize_exception(e)}",
                reason="OwnerConditionSkipped",
            )
            return False
        if condition is not None:
            conditions[meta.get("name", "")] = condition

        aggregated = aggregate_conditions(conditions)
        if aggregated is None:
            return False
        return project_condition_to_owner(self.clients.custom, owner, ref.plural, aggregated)

    def requeue(self, meta: dict[str, Any], outcome: ReconcileOutcome, retry: int = 0) -> None:
        """Schedule the next pass for a failed outcome.

        Raises:
            kopf.TemporaryError: Whenever the outcome carries an error
        """
        error = outcome.error
        if error is None:
            return

        message = error.message or error.reason
        if isinstance(error, TokenPendingError):
            delay = TOKEN_PENDING_REQUEUE_SECONDS
            metrics.token_pending_total.labels(namespace=meta.get("namespace", "default")).inc()
            if retry == 0:
                emit_token_pending(meta, message)
            self.log_info(meta, message, event="requeue", reason=error.reason, retry=retry)
        else:
            delay = RETRY_REQUEUE_SECONDS if error.retryable else TERMINAL_REQUEUE_SECONDS
            metrics.error_total.labels(kind=self.kind, error_type=type(error).__name__).inc()
            self.log_warning(
                meta,
                sanitize_exception(error),
                event="requeue",
                reason=error.reason,
                retryable=error.retryable,
                delay=delay,
            )

        raise kopf.TemporaryError(message, delay=delay)

    def reconcile(
        self,
        spec: dict[str, Any],
        meta: dict[str, Any],
        status: dict[str, Any],
        patch: kopf.Patch,
        retry: int = 0,
    ) -> None:
        """Reconcile ProviderServiceAccount resource."""
        with trace_span(
            "reconcile_provider_service_account",
            kind=self.kind,
            attributes={"psa.name": meta.get("name", ""), "psa.namespace": meta.get("namespace", "")},
        ):
            result = self.run_pipeline(spec, meta, patch)
            self.report(meta, status, patch, spec, result, retry=retry)
            self.requeue(meta, result.outcome, retry=retry)

    def namespace_retained(self, meta: dict[str, Any], ref: ClusterRef, target_namespace: str) -> bool:
        """Whether another live PSA for the same cluster still targets the namespace.

        Listing failures keep the namespace.
        """
        try:
            others = list_provider_service_accounts(self.clients.custom, meta.get("namespace", "default"))
        except ApiException as e:
            self.log_warning(
                meta,
                f"Cannot list ProviderServiceAccounts, keeping namespace {target_namespace}: {sanitize_exception(e)}",
                reason="CleanupSkipped",
            )
            return True

        for other in others:
            other_meta = other.get("metadata", {})
            other_spec = other.get("spec", {})
            if other_meta.get("uid") == meta.get("uid") or other_meta.get("deletionTimestamp"):
                continue
            if other_spec.get("targetNamespace") != target_namespace:
                continue
            try:
                other_ref = parse_ref(other_spec, other_meta)
            except InvalidReferenceError:
                continue
            if (other_ref.namespace, other_ref.name, other_ref.kind) == (ref.namespace, ref.name, ref.kind):
                return True
        return False

    def delete(self, spec: dict[str, Any], meta: dict[str, Any], patch: kopf.Patch) -> None:
        """Handle ProviderServiceAccount resource deletion.

        Target cleanup is best-effort and never blocks deletion. Management-side
        objects are owned by the PSA and left to the garbage collector.
        """
        name = meta.get("name", "unknown")
        namespace = meta.get("namespace", "default")
        self.log_info(meta, f"ProviderServiceAccount {name} is being deleted", event="deletion", reason="Deletion")

        try:
            target_namespace, target_secret_name = target_location(spec)
            target = self.resolver().resolve(spec, meta)
            retained = self.namespace_retained(meta, target.ref, target_namespace)
            failures = TargetMirror(target.core_api, target.cluster_name).cleanup(
                target_namespace, target_secret_name, delete_namespace=not retained
            )
            if failures:
                message = "; ".join(failures)
                self.log_warning(meta, f"Target cleanup incomplete: {message}", reason="CleanupFailed")
                emit_target_cleanup_failed(meta, message)
            self.refresh_owner_condition(meta, target.owner, target.ref)
        except ReconcileError as e:
            message = e.message or e.reason
            self.log_warning(meta, f"Skipping target cleanup: {message}", reason=e.reason)
            emit_target_cleanup_failed(meta, f"Skipping target cleanup: {message}")
        except Exception as e:
            # Don't fail deletion if cleanup fails
            self.log_error(meta, "Target cleanup failed", error=e, reason="CleanupFailed")
            emit_target_cleanup_failed(meta, f"Target cleanup failed: {sanitize_exception(e)}")

        try:
            unregister_system_service_account(self.clients.core, namespace, name)
        except Exception as e:
            self.log_error(meta, "Failed to unregister system service account", error=e, reason="CleanupFailed")
        finally:
            self.remove_finalizer(meta, patch)

    def on_managed_object_event(self, event_type: str | None, body: dict[str, Any]) -> bool:
        """Resync the owning PSA when one of its managed objects changes underneath it.

        Returns:
            True if a resync was requested
        """
        kind = body.get("kind")
        if event_type == "DELETED":
            if kind not in RESYNC_ON_DELETE_KINDS:
                return False
        elif event_type == "MODIFIED":
            # A token-request secret that just received its token
            if kind != "Secret" or body.get("type") != SERVICE_ACCOUNT_TOKEN_TYPE:
                return False
            if not (body.get("data") or {}).get(TOKEN_KEY):
                return False
        else:
            return False

        obj_meta = body.get("metadata", {})
        owner = owning_provider_service_account(obj_meta)
        if not owner:
            return False

        self.logger.info(
            f"{kind} {obj_meta.get('namespace')}/{obj_meta.get('name')} {event_type.lower()}, "
            f"requesting resync of {KIND_PROVIDER_SERVICE_ACCOUNT} {owner}"
        )
        return request_resync(self.clients.custom, obj_meta.get("namespace", "default"), owner)


# Global handler instance
_handler = ProviderServiceAccountHandler()

_MANAGED = {LABEL_MANAGED_BY: FIELD_MANAGER}


@kopf.on.create(API_GROUP_VERSION, KIND_PROVIDER_SERVICE_ACCOUNT)
@kopf.on.update(API_GROUP_VERSION, KIND_PROVIDER_SERVICE_ACCOUNT)
@kopf.on.resume(API_GROUP_VERSION, KIND_PROVIDER_SERVICE_ACCOUNT)
@kopf.timer(
    API_GROUP_VERSION,
    KIND_PROVIDER_SERVICE_ACCOUNT,
    interval=DRIFT_CHECK_INTERVAL_SECONDS,
    idle=DRIFT_CHECK_INTERVAL_SECONDS,
)
def handle_provider_service_account(
    spec: dict[str, Any],
    meta: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    retry: int = 0,
    **kwargs: Any,
) -> None:
    """Handle ProviderServiceAccount resource reconciliation."""
    with reconcile_context(timeout=RECONCILE_TIMEOUT_SECONDS):
        _handler.ensure_finalizer(meta, patch)
        _handler.reconcile_with_metrics(
            meta, lambda: _handler.reconcile(spec, meta, status, patch, retry=retry)
        )


@kopf.on.delete(API_GROUP_VERSION, KIND_PROVIDER_SERVICE_ACCOUNT)
def handle_provider_service_account_delete(
    spec: dict[str, Any],
    meta: dict[str, Any],
    patch: kopf.Patch,
    **kwargs: Any,
) -> None:
    """Handle ProviderServiceAccount resource deletion."""
    with reconcile_context(timeout=RECONCILE_TIMEOUT_SECONDS):
        _handler.delete(spec, meta, patch)


@kopf.on.event("v1", "serviceaccounts", labels=_MANAGED)
@kopf.on.event("v1", "secrets", labels=_MANAGED)
@kopf.on.event(f"{RBAC_API_GROUP}/v1", "roles", labels=_MANAGED)
@kopf.on.event(f"{RBAC_API_GROUP}/v1", "rolebindings", labels=_MANAGED)
def handle_managed_object_event(
    event: dict[str, Any],
    body: dict[str, Any],
    **kwargs: Any,
) -> None:
    """Resync the owning ProviderServiceAccount when a managed object drifts."""
    _handler.on_managed_object_event(event.get("type"), dict(body))

"""Constants for the ProviderServiceAccount Operator."""

import os

# API Group
API_GROUP = "vmware.infrastructure.cluster.x-k8s.io"
API_VERSION = "v1beta1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

# Resource Kinds
KIND_PROVIDER_SERVICE_ACCOUNT = "ProviderServiceAccount"
PLURAL_PROVIDER_SERVICE_ACCOUNT = "providerserviceaccounts"

# Owning cluster defaults (used when spec.ref and ownerReferences omit them)
DEFAULT_CLUSTER_KIND = "VSphereCluster"
DEFAULT_CLUSTER_API_VERSION = API_GROUP_VERSION
CLUSTER_PLURALS = {
    "VSphereCluster": "vsphereclusters",
    "Cluster": "clusters",
    "TanzuKubernetesCluster": "tanzukubernetesclusters",
}

# Target cluster access
KUBECONFIG_SECRET_SUFFIX = "-kubeconfig"
KUBECONFIG_SECRET_KEY = "value"

# Secrets
TOKEN_KEY = "token"
SERVICE_ACCOUNT_TOKEN_TYPE = "kubernetes.io/service-account-token"
SERVICE_ACCOUNT_NAME_ANNOTATION = "kubernetes.io/service-account.name"
TOKEN_SECRET_SUFFIX = "-token"

# RBAC
RBAC_API_GROUP = "rbac.authorization.k8s.io"

# Labels
LABEL_MANAGED_BY = f"{API_GROUP}/managed-by"
LABEL_PROVIDER_SERVICE_ACCOUNT = f"{API_GROUP}/provider-serviceaccount"
LABEL_OWNER_CLUSTER = f"{API_GROUP}/owner-cluster"

# Annotations
ANNOTATION_RESYNC_REQUESTED_AT = f"{API_GROUP}/resync-requested-at"

# Finalizers
FINALIZER = f"{API_GROUP}/provider-serviceaccount"

# Field Manager
FIELD_MANAGER = "provider-serviceaccount-operator"

# Condition Types
COND_PROVIDER_SERVICE_ACCOUNTS_READY = "ProviderServiceAccountsReady"

# Condition Severities
SEVERITY_ERROR = "Error"
SEVERITY_WARNING = "Warning"
SEVERITY_INFO = "Info"

# Condition Reasons
REASON_PROVISIONED = "Provisioned"
REASON_INVALID_REFERENCE = "InvalidReference"
REASON_TOKEN_PENDING = "TokenPending"
REASON_TARGET_CLUSTER_UNAVAILABLE = "TargetClusterUnavailable"
REASON_INVALID_RULES = "InvalidRules"
REASON_UNAUTHORIZED = "Unauthorized"
REASON_SERVICE_ACCOUNT_FAILED = "ServiceAccountProvisioningFailed"
REASON_ROLE_FAILED = "RoleProvisioningFailed"
REASON_ROLE_BINDING_FAILED = "RoleBindingProvisioningFailed"
REASON_TOKEN_READ_FAILED = "TokenReadFailed"
REASON_TARGET_NAMESPACE_FAILED = "TargetNamespaceProvisioningFailed"
REASON_TARGET_SECRET_FAILED = "TargetSecretProvisioningFailed"
REASON_DEADLINE_EXCEEDED = "ReconcileDeadlineExceeded"
REASON_INVALID_TARGET = "InvalidTarget"

# Event Reasons
EVENT_REASON_RECONCILE_STARTED = "ReconcileStarted"
EVENT_REASON_RECONCILE_FAILED = "ReconcileFailed"
EVENT_REASON_SERVICE_ACCOUNT_CREATED = "ServiceAccountCreated"
EVENT_REASON_ROLE_CREATED = "RoleCreated"
EVENT_REASON_ROLE_UPDATED = "RoleUpdated"
EVENT_REASON_ROLE_BINDING_CREATED = "RoleBindingCreated"
EVENT_REASON_ROLE_BINDING_UPDATED = "RoleBindingUpdated"
EVENT_REASON_TOKEN_PENDING = "TokenPending"
EVENT_REASON_TARGET_SECRET_CREATED = "TargetSecretCreated"
EVENT_REASON_TARGET_SECRET_UPDATED = "TargetSecretUpdated"
EVENT_REASON_TARGET_CLEANUP_FAILED = "TargetCleanupFailed"
EVENT_REASON_PROVISIONED = "Provisioned"

# Tunables
METRICS_PORT = int(os.getenv("METRICS_PORT", "8080"))
DRIFT_CHECK_INTERVAL_SECONDS = float(os.getenv("DRIFT_CHECK_INTERVAL_SECONDS", "300"))
TOKEN_PENDING_REQUEUE_SECONDS = float(os.getenv("TOKEN_PENDING_REQUEUE_SECONDS", "5"))
TOKEN_PENDING_WARNING_AFTER = int(os.getenv("TOKEN_PENDING_WARNING_AFTER", "12"))
RETRY_REQUEUE_SECONDS = float(os.getenv("RETRY_REQUEUE_SECONDS", "15"))
TERMINAL_REQUEUE_SECONDS = float(os.getenv("TERMINAL_REQUEUE_SECONDS", "300"))
RECONCILE_TIMEOUT_SECONDS = float(os.getenv("RECONCILE_TIMEOUT_SECONDS", "60"))
CONFLICT_RETRIES = int(os.getenv("CONFLICT_RETRIES", "5"))
SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAMESPACE = os.getenv("SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAMESPACE", "")
SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAME = os.getenv("SYSTEM_SERVICE_ACCOUNTS_CONFIGMAP_NAME", "")

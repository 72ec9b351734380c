"""Reconcile pipeline steps for ProviderServiceAccount resources."""

from .credentials import CredentialReader
from .identity import IdentityProvisioner, unregister_system_service_account, validate_rules
from .mirror import TargetMirror
from .resolver import ResolvedTarget, TargetResolver, build_target_client, owner_reference

__all__ = [
    "CredentialReader",
    "IdentityProvisioner",
    "ResolvedTarget",
    "TargetMirror",
    "TargetResolver",
    "build_target_client",
    "owner_reference",
    "unregister_system_service_account",
    "validate_rules",
]

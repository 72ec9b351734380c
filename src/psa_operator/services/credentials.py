"""Reading the ServiceAccount bearer token from the management cluster."""

from __future__ import annotations

import logging
from typing import Any

from kubernetes.client.exceptions import ApiException

from ..constants import (
    REASON_TOKEN_READ_FAILED,
    SERVICE_ACCOUNT_NAME_ANNOTATION,
    SERVICE_ACCOUNT_TOKEN_TYPE,
    TOKEN_KEY,
    TOKEN_SECRET_SUFFIX,
)
from ..utils.errors import TokenPendingError, TokenReadError, classify_api_exception
from ..utils.retry import call_k8s

logger = logging.getLogger(__name__)


def _holds_token_for(secret: Any, service_account_name: str) -> bool:
    """Whether a secret listed on the ServiceAccount carries its token."""
    annotations = secret.metadata.annotations or {}
    is_token_secret = (
        secret.type == SERVICE_ACCOUNT_TOKEN_TYPE
        or annotations.get(SERVICE_ACCOUNT_NAME_ANNOTATION) == service_account_name
    )
    return is_token_secret and bool((secret.data or {}).get(TOKEN_KEY))


class CredentialReader:
    """Locates a ServiceAccount's token secret and extracts the token.

    The token secret is filled in asynchronously by the cluster, so a missing
    secret or an empty token is reported as TokenPendingError, never as a
    terminal failure. The source secret is never modified.
    """

    def __init__(self, core_api: Any):
        self.core_api = core_api

    def read_token(self, service_account: Any) -> str:
        """Return the token of ``service_account`` exactly as stored.

        The value is the ``data.token`` field as served by the API (base64 text),
        so it can be mirrored byte-for-byte without decoding.

        Raises:
            TokenPendingError: No token secret yet, or its token is empty
            TokenReadError: The secret could not be read
            AuthorizationError: The operator may not read secrets
        """
        namespace = service_account.metadata.namespace
        name = service_account.metadata.name

        secret = self.find_token_secret(service_account)
        if secret is None:
            raise TokenPendingError(f"waiting for a token secret for ServiceAccount {namespace}/{name}")

        token = (secret.data or {}).get(TOKEN_KEY)
        if not token:
            raise TokenPendingError(
                f"token secret {namespace}/{secret.metadata.name} has no {TOKEN_KEY} yet"
            )
        return token

    def find_token_secret(self, service_account: Any) -> Any | None:
        """Find the secret holding the ServiceAccount's token.

        Secrets referenced from ``ServiceAccount.secrets`` win when they hold a
        token; others listed there (such as image pull secrets) are skipped.
        Otherwise the token-typed secrets annotated for this ServiceAccount are
        searched, preferring the one named ``<sa>-token``.
        """
        namespace = service_account.metadata.namespace
        name = service_account.metadata.name

        for ref in service_account.secrets or []:
            secret = self._read_secret(namespace, ref.name)
            if secret is not None and _holds_token_for(secret, name):
                return secret

        try:
            secrets = call_k8s(
                self.core_api.list_namespaced_secret,
                namespace=namespace,
                field_selector=f"type={SERVICE_ACCOUNT_TOKEN_TYPE}",
            )
        except ApiException as e:
            raise classify_api_exception(e, REASON_TOKEN_READ_FAILED, TokenReadError) from e

        candidates = [
            secret for secret in secrets.items
            if (secret.metadata.annotations or {}).get(SERVICE_ACCOUNT_NAME_ANNOTATION) == name
        ]
        if not candidates:
            return None

        preferred = f"{name}{TOKEN_SECRET_SUFFIX}"
        candidates.sort(key=lambda s: (s.metadata.name != preferred, s.metadata.name))
        return candidates[0]

    def _read_secret(self, namespace: str, name: str) -> Any | None:
        try:
            return call_k8s(self.core_api.read_namespaced_secret, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"ServiceAccount secret {namespace}/{name} not found yet")
                return None
            raise classify_api_exception(e, REASON_TOKEN_READ_FAILED, TokenReadError) from e

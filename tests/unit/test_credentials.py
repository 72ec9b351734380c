"""Tests for reading the ServiceAccount token."""

from __future__ import annotations

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from fakes import MGMT_NAMESPACE
from psa_operator.constants import SERVICE_ACCOUNT_TOKEN_TYPE
from psa_operator.services.credentials import CredentialReader
from psa_operator.utils.errors import AuthorizationError, TokenPendingError, TokenReadError


def service_account(secret_names=()) -> client.V1ServiceAccount:
    return client.V1ServiceAccount(
        metadata=client.V1ObjectMeta(name="psa-a", namespace=MGMT_NAMESPACE),
        secrets=[client.V1ObjectReference(name=n) for n in secret_names] or None,
    )


def token_secret(core, name, token=None, sa_name="psa-a", type_=SERVICE_ACCOUNT_TOKEN_TYPE):
    core.store.put(
        "Secret",
        MGMT_NAMESPACE,
        client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                annotations={"kubernetes.io/service-account.name": sa_name},
            ),
            type=type_,
            data={"token": token} if token else None,
        ),
    )


class TestCredentialReader:
    """Test cases for CredentialReader."""

    def test_no_secret_is_pending(self, management):
        with pytest.raises(TokenPendingError) as exc_info:
            CredentialReader(management.core).read_token(service_account())
        assert "waiting" in exc_info.value.message

    def test_empty_token_is_pending(self, management):
        token_secret(management.core, "psa-a-token")

        with pytest.raises(TokenPendingError) as exc_info:
            CredentialReader(management.core).read_token(service_account())
        assert "psa-a-token" in exc_info.value.message

    def test_token_returned_verbatim(self, management):
        token_secret(management.core, "psa-a-token", token="ZXlKaGJHY2lPaUpTVXpJMU5pSjk=")

        token = CredentialReader(management.core).read_token(service_account())

        assert token == "ZXlKaGJHY2lPaUpTVXpJMU5pSjk="

    def test_referenced_secret_wins(self, management):
        token_secret(management.core, "psa-a-token", token="bGFiZWxsZWQ=")
        token_secret(management.core, "legacy-secret", token="cmVmZXJlbmNlZA==")

        token = CredentialReader(management.core).read_token(service_account(["legacy-secret"]))

        assert token == "cmVmZXJlbmNlZA=="

    def test_missing_reference_falls_back(self, management):
        token_secret(management.core, "psa-a-token", token="ZmFsbGJhY2s=")

        token = CredentialReader(management.core).read_token(service_account(["gone"]))

        assert token == "ZmFsbGJhY2s="

    def test_prefers_named_token_secret(self, management):
        token_secret(management.core, "psa-a-abcde", token="YXV0bw==")
        token_secret(management.core, "psa-a-token", token="cHJlZmVycmVk")

        token = CredentialReader(management.core).read_token(service_account())

        assert token == "cHJlZmVycmVk"

    def test_ignores_other_service_accounts(self, management):
        token_secret(management.core, "other-token", token="b3RoZXI=", sa_name="other")
        token_secret(management.core, "psa-a-opaque", token="b3BhcXVl", type_="Opaque")

        with pytest.raises(TokenPendingError):
            CredentialReader(management.core).read_token(service_account())

    def test_listed_pull_secret_skipped(self, management):
        management.core.store.put(
            "Secret",
            MGMT_NAMESPACE,
            client.V1Secret(
                metadata=client.V1ObjectMeta(name="psa-a-dockercfg-x"),
                type="kubernetes.io/dockercfg",
                data={".dockercfg": "e30="},
            ),
        )
        token_secret(management.core, "psa-a-token", token="VA==")
        reader = CredentialReader(management.core)

        token = reader.read_token(service_account(["psa-a-dockercfg-x"]))

        assert token == "VA=="

    def test_listed_secret_without_token_falls_back(self, management):
        token_secret(management.core, "legacy-secret")
        token_secret(management.core, "psa-a-token", token="ZmlsbGVk")

        token = CredentialReader(management.core).read_token(service_account(["legacy-secret"]))

        assert token == "ZmlsbGVk"

    def test_only_pull_secret_listed_finds_nothing(self, management):
        token_secret(management.core, "psa-a-dockercfg-x", token="e30=", type_="kubernetes.io/dockercfg", sa_name="")

        assert CredentialReader(management.core).find_token_secret(service_account(["psa-a-dockercfg-x"])) is None

    def test_list_failure(self, management):
        management.core.store.failures[("list", "Secret")] = ApiException(status=500, reason="Internal")

        with pytest.raises(TokenReadError) as exc_info:
            CredentialReader(management.core).read_token(service_account())
        assert exc_info.value.reason == "TokenReadFailed"

    def test_read_forbidden(self, management):
        management.core.store.failures[("read", "Secret")] = ApiException(status=403, reason="Forbidden")

        with pytest.raises(AuthorizationError):
            CredentialReader(management.core).read_token(service_account(["legacy-secret"]))

    def test_source_secret_untouched(self, management):
        token_secret(management.core, "psa-a-token", token="dG9rZW4=")

        CredentialReader(management.core).read_token(service_account())

        assert management.core.writes == []

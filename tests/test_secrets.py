from __future__ import annotations

import sys
import types
from typing import Any, cast

import pytest

from stackweave.domain.errors import SecretStoreError
from stackweave.governance import secrets
from stackweave.governance.secrets import (
    AwsSecretsManagerStore,
    AzureKeyVaultProvider,
    AzureKeyVaultStore,
    ChainedSecretsProvider,
    EnvSecretsProvider,
    InMemorySecretStore,
    SecretsProviderError,
    SecretStore,
    build_provider_from_environment,
    build_secret_store,
)


class DummyProvider:
    def __init__(self, values: dict[str, str | None]) -> None:
        self.values = values
        self.calls: list[str] = []

    def get(self, name: str) -> str | None:  # pragma: no cover - exercised via tests
        self.calls.append(name)
        return self.values.get(name)


def _install_azure_stubs(
    monkeypatch: pytest.MonkeyPatch,
    secret_client_cls: type,
    credential_cls: type,
) -> None:
    identity_module = cast(Any, types.ModuleType("azure.identity"))
    identity_module.DefaultAzureCredential = credential_cls

    secrets_module = cast(Any, types.ModuleType("azure.keyvault.secrets"))
    secrets_module.SecretClient = secret_client_cls

    keyvault_module = cast(Any, types.ModuleType("azure.keyvault"))
    keyvault_module.secrets = secrets_module

    azure_module = cast(Any, types.ModuleType("azure"))
    azure_module.identity = identity_module
    azure_module.keyvault = keyvault_module

    monkeypatch.setitem(sys.modules, "azure", azure_module)
    monkeypatch.setitem(sys.modules, "azure.identity", identity_module)
    monkeypatch.setitem(sys.modules, "azure.keyvault", keyvault_module)
    monkeypatch.setitem(sys.modules, "azure.keyvault.secrets", secrets_module)


def test_chained_provider_prefers_first_non_empty_value() -> None:
    primary = DummyProvider({"SECRET": None})
    fallback = DummyProvider({"SECRET": "secondary"})
    provider = ChainedSecretsProvider((primary, fallback))

    assert provider.get("SECRET") == "secondary"
    assert primary.calls == ["SECRET"]
    assert fallback.calls == ["SECRET"]


def test_env_secrets_provider_defaults_to_os_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SAMPLE_SECRET", "value")
    provider = EnvSecretsProvider()
    assert provider.get("SAMPLE_SECRET") == "value"


def test_azure_key_vault_provider_handles_missing_secret(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    class StubClient:
        def __init__(self, *, vault_url: str, credential: object) -> None:
            self.vault_url = vault_url

        def get_secret(self, name: str) -> None:
            error = Exception("missing")
            setattr(error, "status_code", 404)
            raise error

    class StubCredential:
        pass

    _install_azure_stubs(monkeypatch, StubClient, StubCredential)

    provider = AzureKeyVaultProvider(vault_url="https://vault.example")
    assert provider.get("TOKEN") is None


def test_build_provider_from_environment_defaults_to_env() -> None:
    provider = build_provider_from_environment({"SAMPLE": "value"})
    assert isinstance(provider, EnvSecretsProvider)
    assert provider.get("SAMPLE") == "value"


def test_build_provider_from_environment_includes_aws(monkeypatch: pytest.MonkeyPatch) -> None:
    class StubProvider:
        def __init__(self, **kwargs: object) -> None:
            self.kwargs = kwargs

        def get(self, name: str) -> str | None:
            return {"SECRET": "aws"}.get(name)

    monkeypatch.setattr(secrets, "AwsSecretsManagerProvider", StubProvider)

    provider = build_provider_from_environment(
        {
            "STACKWEAVE_CONFIG_BACKEND": "aws",
            "AWS_REGION": "eu-west-1",
            "SECRET": "env",
            "ONLY_ENV": "fallback",
        }
    )

    assert provider.get("SECRET") == "aws"
    assert provider.get("ONLY_ENV") == "fallback"


def test_build_provider_from_environment_handles_azure_errors(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def raising_provider(**_: object) -> None:
        raise SecretsProviderError("boom")

    monkeypatch.setattr(secrets, "AzureKeyVaultProvider", raising_provider)

    provider = build_provider_from_environment(
        {
            "STACKWEAVE_CONFIG_BACKEND": "azure",
            "STACKWEAVE_AZURE_VAULT_URL": "https://vault.example",
            "SECRET": "env",
        }
    )
    assert isinstance(provider, EnvSecretsProvider)
    assert provider.get("SECRET") == "env"


def test_in_memory_store_versions_each_write() -> None:
    store = InMemorySecretStore()

    first = store.put("prod/db/password", "one")
    second = store.put("prod/db/password", "two")

    assert first == ("memory://prod/db/password#v1", "v1")
    assert second == ("memory://prod/db/password#v2", "v2")
    assert store.reveal(first[0]) == "one"
    assert store.exists(second[0])
    assert not store.exists("memory://prod/db/password#v3")
    assert not store.exists("memory://prod/db/password")
    with pytest.raises(SecretStoreError):
        store.reveal("memory://prod/cache/auth_token#v1")


def test_aws_store_creates_missing_secret() -> None:
    class MissingSecret(Exception):
        response = {"Error": {"Code": "ResourceNotFoundException"}}

    class StubClient:
        def __init__(self) -> None:
            self.created: list[tuple[str, str]] = []

        def put_secret_value(self, SecretId: str, SecretString: str) -> dict[str, str]:
            raise MissingSecret(SecretId)

        def create_secret(self, Name: str, SecretString: str) -> dict[str, str]:
            self.created.append((Name, SecretString))
            return {"ARN": f"arn:aws:secretsmanager:eu-west-1:1:secret:{Name}", "VersionId": "abc"}

    client = StubClient()
    store = AwsSecretsManagerStore(secret_prefix="stackweave/", client=client)

    locator, version = store.put("prod/db/password", "s3cret")

    assert client.created == [("stackweave/prod/db/password", "s3cret")]
    assert locator.endswith("secret:stackweave/prod/db/password")
    assert version == "abc"
    assert "s3cret" not in locator


def test_aws_store_wraps_other_errors() -> None:
    class Throttled(Exception):
        response = {"Error": {"Code": "ThrottlingException"}}

    class StubClient:
        def put_secret_value(self, SecretId: str, SecretString: str) -> dict[str, str]:
            raise Throttled(SecretId)

    store = AwsSecretsManagerStore(client=StubClient())

    with pytest.raises(SecretStoreError):
        store.put("prod/db/password", "value")


def test_azure_store_normalises_secret_names() -> None:
    class StubSecret:
        def __init__(self, name: str) -> None:
            self.id = f"https://vault.example/secrets/{name}/1234"
            self.properties = types.SimpleNamespace(version="1234")

    class StubClient:
        def __init__(self) -> None:
            self.names: list[str] = []

        def set_secret(self, name: str, value: str) -> StubSecret:
            self.names.append(name)
            return StubSecret(name)

        def get_secret(self, name: str) -> StubSecret:
            return StubSecret(name)

    client = StubClient()
    store = AzureKeyVaultStore(secret_prefix="team", client=client)

    locator, version = store.put("prod/db/auth_token", "value")

    assert client.names == ["team-prod-db-auth-token"]
    assert version == "1234"
    assert store.exists(locator)


def test_build_secret_store_selects_backend() -> None:
    store = build_secret_store(" Memory ")

    assert isinstance(store, InMemorySecretStore)
    assert isinstance(store, SecretStore)
    with pytest.raises(SecretStoreError, match="Unknown secret store backend"):
        build_secret_store("vault")

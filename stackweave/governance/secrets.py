"""Secrets providers for configuration and secret stores for generated material.

Providers are read-only lookups used while building settings. Stores accept
values produced by the secret material generator and hand back a locator;
the value itself never travels further than the store.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence, runtime_checkable

from stackweave.domain.errors import SecretStoreError


class SecretsProviderError(RuntimeError):
    """Raised when a provider cannot service a secret request."""


@runtime_checkable
class SecretsProvider(Protocol):
    """Protocol for retrieving named secrets or configuration values."""

    def get(self, name: str) -> str | None:
        """Return the secret identified by *name*, or ``None`` when missing."""


@dataclass
class EnvSecretsProvider:
    """Provider that reads values directly from an environment mapping."""

    environ: dict[str, str]

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        if environ is None:
            environ = dict(os.environ)
        self.environ = environ

    def get(self, name: str) -> str | None:
        return self.environ.get(name)


@dataclass
class ChainedSecretsProvider:
    """Provider that queries a sequence of providers until one returns a value."""

    providers: Sequence[SecretsProvider]

    def get(self, name: str) -> str | None:
        for provider in self.providers:
            value = provider.get(name)
            if value is not None:
                return value
        return None


class AwsSecretsManagerProvider:
    """Secrets provider backed by AWS Secrets Manager."""

    def __init__(
        self,
        *,
        secret_prefix: str | None = None,
        region_name: str | None = None,
        session: Any | None = None,
    ) -> None:
        try:  # pragma: no cover - optional dependency
            import boto3  # type: ignore[import-not-found]
            from botocore.exceptions import ClientError  # type: ignore[import-not-found]
        except ImportError as exc:  # pragma: no cover - import-time guard
            raise SecretsProviderError(
                "boto3 is required for AwsSecretsManagerProvider"
            ) from exc

        client_factory: Any = session or boto3
        self._client = client_factory.client("secretsmanager", region_name=region_name)
        self._client_error: Any = ClientError
        self._prefix = secret_prefix.rstrip("/") + "/" if secret_prefix else ""

    def get(self, name: str) -> str | None:
        secret_id = f"{self._prefix}{name}"
        try:
            response = self._client.get_secret_value(SecretId=secret_id)
        except self._client_error as exc:  # pragma: no cover - network path
            error_code = getattr(exc, "response", {}).get("Error", {}).get("Code")
            if error_code in {
                "ResourceNotFoundException",
                "DecryptionFailureException",
            }:
                return None
            raise SecretsProviderError(
                f"Unable to fetch secret '{secret_id}' from AWS Secrets Manager"
            ) from exc
        return response.get("SecretString")


class AzureKeyVaultProvider:
    """Secrets provider backed by Azure Key Vault."""

    def __init__(
        self,
        *,
        vault_url: str,
        credential: Any | None = None,
        secret_prefix: str | None = None,
    ) -> None:
        try:  # pragma: no cover - optional dependency
            from azure.identity import DefaultAzureCredential  # type: ignore[import-not-found]
            from azure.keyvault.secrets import SecretClient  # type: ignore[import-not-found]
        except ImportError as exc:  # pragma: no cover - import-time guard
            raise SecretsProviderError(
                "azure-identity and azure-keyvault-secrets are required for AzureKeyVaultProvider"
            ) from exc

        if credential is None:
            credential = DefaultAzureCredential()
        self._client = SecretClient(vault_url=vault_url, credential=credential)
        self._prefix = secret_prefix.rstrip("-") + "-" if secret_prefix else ""

    def get(self, name: str) -> str | None:
        secret_name = f"{self._prefix}{name}".replace("_", "-")
        try:
            secret = self._client.get_secret(secret_name)
        except Exception as exc:  # pragma: no cover - SDK specific exceptions
            if getattr(exc, "status_code", None) == 404:
                return None
            raise SecretsProviderError(
                f"Unable to fetch secret '{secret_name}' from Azure Key Vault"
            ) from exc
        value = getattr(secret, "value", None)
        return value if value else None


@runtime_checkable
class SecretStore(Protocol):
    """Write-side counterpart of :class:`SecretsProvider`."""

    def put(self, name: str, value: str) -> tuple[str, str]:
        """Store *value* under *name* and return ``(locator, version)``."""

    def exists(self, locator: str) -> bool:
        """Return whether *locator* still points at stored material."""


@dataclass
class InMemorySecretStore:
    """Process-local store used for dry runs and tests."""

    _values: dict[str, list[str]] = field(default_factory=dict, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def put(self, name: str, value: str) -> tuple[str, str]:
        with self._lock:
            versions = self._values.setdefault(name, [])
            versions.append(value)
            version = f"v{len(versions)}"
        return f"memory://{name}#{version}", version

    def exists(self, locator: str) -> bool:
        name, version = _split_memory_locator(locator)
        with self._lock:
            versions = self._values.get(name, [])
            return version is not None and 0 < version <= len(versions)

    def reveal(self, locator: str) -> str:
        """Return stored material; only meant for tests and local inspection."""

        name, version = _split_memory_locator(locator)
        with self._lock:
            versions = self._values.get(name, [])
            if version is None or not 0 < version <= len(versions):
                raise SecretStoreError(f"No secret stored at '{locator}'")
            return versions[version - 1]


def _split_memory_locator(locator: str) -> tuple[str, int | None]:
    body = locator.removeprefix("memory://")
    name, _, version = body.partition("#")
    if not version.startswith("v") or not version[1:].isdigit():
        return name, None
    return name, int(version[1:])


class AwsSecretsManagerStore:
    """Secret store backed by AWS Secrets Manager."""

    def __init__(
        self,
        *,
        secret_prefix: str | None = None,
        region_name: str | None = None,
        session: Any | None = None,
        client: Any | None = None,
    ) -> None:
        if client is None:
            try:  # pragma: no cover - optional dependency
                import boto3  # type: ignore[import-not-found]
            except ImportError as exc:  # pragma: no cover - import-time guard
                raise SecretStoreError(
                    "boto3 is required for AwsSecretsManagerStore"
                ) from exc
            client_factory: Any = session or boto3
            client = client_factory.client("secretsmanager", region_name=region_name)
        self._client = client
        self._prefix = secret_prefix.rstrip("/") + "/" if secret_prefix else ""

    def put(self, name: str, value: str) -> tuple[str, str]:
        secret_id = f"{self._prefix}{name}"
        try:
            response = self._client.put_secret_value(SecretId=secret_id, SecretString=value)
        except Exception as exc:  # pragma: no cover - SDK specific exceptions
            error_code = getattr(exc, "response", {}).get("Error", {}).get("Code")
            if error_code != "ResourceNotFoundException":
                raise SecretStoreError(
                    f"Unable to store secret '{secret_id}' in AWS Secrets Manager"
                ) from exc
            response = self._client.create_secret(Name=secret_id, SecretString=value)
        return response["ARN"], response.get("VersionId", "")

    def exists(self, locator: str) -> bool:
        try:
            self._client.describe_secret(SecretId=locator)
        except Exception:  # pragma: no cover - SDK specific exceptions
            return False
        return True


class AzureKeyVaultStore:
    """Secret store backed by Azure Key Vault."""

    def __init__(
        self,
        *,
        vault_url: str | None = None,
        credential: Any | None = None,
        secret_prefix: str | None = None,
        client: Any | None = None,
    ) -> None:
        if client is None:
            try:  # pragma: no cover - optional dependency
                from azure.identity import DefaultAzureCredential  # type: ignore[import-not-found]
                from azure.keyvault.secrets import SecretClient  # type: ignore[import-not-found]
            except ImportError as exc:  # pragma: no cover - import-time guard
                raise SecretStoreError(
                    "azure-identity and azure-keyvault-secrets are required for AzureKeyVaultStore"
                ) from exc
            if not vault_url:
                raise SecretStoreError("AzureKeyVaultStore requires a vault URL")
            if credential is None:
                credential = DefaultAzureCredential()
            client = SecretClient(vault_url=vault_url, credential=credential)
        self._client = client
        # Key Vault names allow alphanumerics and dashes only.
        self._prefix = secret_prefix.strip("-/") + "-" if secret_prefix else ""

    def put(self, name: str, value: str) -> tuple[str, str]:
        secret_name = f"{self._prefix}{name}".replace("/", "-").replace("_", "-")
        try:
            secret = self._client.set_secret(secret_name, value)
        except Exception as exc:  # pragma: no cover - SDK specific exceptions
            raise SecretStoreError(
                f"Unable to store secret '{secret_name}' in Azure Key Vault"
            ) from exc
        properties = getattr(secret, "properties", None)
        version = getattr(properties, "version", None) or ""
        return str(getattr(secret, "id", secret_name)), version

    def exists(self, locator: str) -> bool:
        name = locator.rstrip("/").split("/secrets/")[-1].split("/")[0]
        try:
            self._client.get_secret(name)
        except Exception:  # pragma: no cover - SDK specific exceptions
            return False
        return True


def build_provider_from_environment(
    environ: dict[str, str] | None = None,
) -> SecretsProvider:
    """Create a provider chain from environment hints."""

    env_provider = EnvSecretsProvider(environ)
    backend = (env_provider.get("STACKWEAVE_CONFIG_BACKEND") or "env").strip().lower()

    providers: list[SecretsProvider] = []

    if backend == "aws":
        region = env_provider.get("AWS_REGION") or env_provider.get(
            "AWS_DEFAULT_REGION"
        )
        prefix = env_provider.get("STACKWEAVE_AWS_CONFIG_PREFIX")
        try:
            providers.append(
                AwsSecretsManagerProvider(secret_prefix=prefix, region_name=region)
            )
        except SecretsProviderError:
            # Without boto3 installed settings come from the environment only.
            providers.clear()
    elif backend == "azure":
        vault_url = env_provider.get("STACKWEAVE_AZURE_VAULT_URL")
        if vault_url:
            prefix = env_provider.get("STACKWEAVE_AZURE_CONFIG_PREFIX")
            try:
                providers.append(
                    AzureKeyVaultProvider(vault_url=vault_url, secret_prefix=prefix)
                )
            except SecretsProviderError:
                providers.clear()

    providers.append(env_provider)

    if len(providers) == 1:
        return providers[0]
    return ChainedSecretsProvider(tuple(providers))


def build_secret_store(
    backend: str,
    *,
    prefix: str | None = None,
    region: str | None = None,
    vault_url: str | None = None,
) -> SecretStore:
    """Instantiate the secret store named by *backend*."""

    normalised = backend.strip().lower()
    if normalised == "memory":
        return InMemorySecretStore()
    if normalised == "aws":
        return AwsSecretsManagerStore(secret_prefix=prefix, region_name=region)
    if normalised == "azure":
        return AzureKeyVaultStore(vault_url=vault_url, secret_prefix=prefix)
    raise SecretStoreError(f"Unknown secret store backend '{backend}'")


__all__ = [
    "AwsSecretsManagerProvider",
    "AwsSecretsManagerStore",
    "AzureKeyVaultProvider",
    "AzureKeyVaultStore",
    "ChainedSecretsProvider",
    "EnvSecretsProvider",
    "InMemorySecretStore",
    "SecretStore",
    "SecretsProvider",
    "SecretsProviderError",
    "build_provider_from_environment",
    "build_secret_store",
]

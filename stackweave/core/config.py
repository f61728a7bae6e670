"""Central configuration and secrets-backed settings for the resolution engine."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from stackweave.governance.secrets import (
    SecretsProvider,
    build_provider_from_environment,
)

try:  # pragma: no cover - optional dependency
    from dotenv import load_dotenv
except ImportError:  # pragma: no cover - handled gracefully at runtime
    load_dotenv = None  # type: ignore


PACKAGE_ROOT = Path(__file__).resolve().parent.parent
PROJECT_ROOT = PACKAGE_ROOT.parent

if load_dotenv is not None:  # pragma: no branch - small guard
    env_path = PROJECT_ROOT / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()


# Base paths ----------------------------------------------------------------
DEFAULT_CATALOG_PATH = PACKAGE_ROOT / "catalogs" / "default.yaml"

CONFLICT_POLICIES = ("auto-disable", "error-on-conflict")
SECRET_BACKENDS = ("memory", "aws", "azure")


@dataclass(frozen=True)
class EngineSettings:
    catalog_path: Path = DEFAULT_CATALOG_PATH
    conflict_policy: str = "auto-disable"
    ledger_path: Path | None = None
    log_level: str = "WARNING"


@dataclass(frozen=True)
class SecretStoreSettings:
    backend: str = "memory"
    prefix: str | None = None
    region: str | None = None
    vault_url: str | None = None


def _get_value(name: str, default: str | None, provider: SecretsProvider) -> str | None:
    value = provider.get(name)
    return value if value is not None else default


def _env_choice(
    name: str, default: str, choices: tuple[str, ...], provider: SecretsProvider
) -> str:
    value = (_get_value(name, None, provider) or "").strip().lower()
    return value if value in choices else default


def _env_path(name: str, provider: SecretsProvider) -> Path | None:
    value = _get_value(name, None, provider)
    if not value:
        return None
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = Path.cwd() / candidate
    return candidate


SECRETS_PROVIDER: SecretsProvider
ENGINE: EngineSettings
SECRET_STORE: SecretStoreSettings


def _build_engine_settings(provider: SecretsProvider) -> EngineSettings:
    return EngineSettings(
        catalog_path=_env_path("STACKWEAVE_CATALOG_PATH", provider) or DEFAULT_CATALOG_PATH,
        conflict_policy=_env_choice(
            "STACKWEAVE_CONFLICT_POLICY", "auto-disable", CONFLICT_POLICIES, provider
        ),
        ledger_path=_env_path("STACKWEAVE_LEDGER_PATH", provider),
        log_level=(_get_value("STACKWEAVE_LOG_LEVEL", "WARNING", provider) or "WARNING").upper(),
    )


def _build_secret_store_settings(provider: SecretsProvider) -> SecretStoreSettings:
    return SecretStoreSettings(
        backend=_env_choice("STACKWEAVE_SECRET_BACKEND", "memory", SECRET_BACKENDS, provider),
        prefix=_get_value("STACKWEAVE_SECRET_PREFIX", None, provider),
        region=_get_value("AWS_REGION", None, provider)
        or _get_value("AWS_DEFAULT_REGION", None, provider),
        vault_url=_get_value("STACKWEAVE_AZURE_VAULT_URL", None, provider),
    )


def configure(provider: SecretsProvider | None = None) -> None:
    """Initialise configuration from the supplied secrets provider."""

    global SECRETS_PROVIDER
    global ENGINE
    global SECRET_STORE

    SECRETS_PROVIDER = provider or build_provider_from_environment()
    ENGINE = _build_engine_settings(SECRETS_PROVIDER)
    SECRET_STORE = _build_secret_store_settings(SECRETS_PROVIDER)


configure()


__all__ = [
    "CONFLICT_POLICIES",
    "DEFAULT_CATALOG_PATH",
    "ENGINE",
    "EngineSettings",
    "PACKAGE_ROOT",
    "PROJECT_ROOT",
    "SECRETS_PROVIDER",
    "SECRET_BACKENDS",
    "SECRET_STORE",
    "SecretStoreSettings",
    "configure",
]

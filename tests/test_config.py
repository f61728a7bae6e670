from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from stackweave.core import config


@dataclass
class DummyProvider:
    values: dict[str, str | None]

    def get(self, name: str) -> str | None:  # pragma: no cover - simple helper
        return self.values.get(name)


def test_configure_uses_defaults_without_overrides() -> None:
    config.configure(DummyProvider({}))
    try:
        assert config.ENGINE.catalog_path == config.DEFAULT_CATALOG_PATH
        assert config.ENGINE.conflict_policy == "auto-disable"
        assert config.ENGINE.ledger_path is None
        assert config.ENGINE.log_level == "WARNING"
        assert config.SECRET_STORE.backend == "memory"
        assert config.SECRET_STORE.region is None
    finally:
        config.configure()


def test_configure_uses_supplied_provider(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    provider = DummyProvider(
        {
            "STACKWEAVE_CATALOG_PATH": "catalogs/custom.yaml",
            "STACKWEAVE_CONFLICT_POLICY": "Error-On-Conflict",
            "STACKWEAVE_LEDGER_PATH": str(tmp_path / "handles.json"),
            "STACKWEAVE_LOG_LEVEL": "info",
            "STACKWEAVE_SECRET_BACKEND": "aws",
            "STACKWEAVE_SECRET_PREFIX": "stackweave/",
            "AWS_DEFAULT_REGION": "eu-central-1",
        }
    )

    config.configure(provider)
    try:
        assert config.SECRETS_PROVIDER is provider
        assert config.ENGINE.catalog_path == tmp_path / "catalogs" / "custom.yaml"
        assert config.ENGINE.conflict_policy == "error-on-conflict"
        assert config.ENGINE.ledger_path == tmp_path / "handles.json"
        assert config.ENGINE.log_level == "INFO"
        assert config.SECRET_STORE.backend == "aws"
        assert config.SECRET_STORE.prefix == "stackweave/"
        assert config.SECRET_STORE.region == "eu-central-1"
    finally:
        config.configure()


def test_unknown_choices_fall_back_to_defaults() -> None:
    config.configure(
        DummyProvider(
            {
                "STACKWEAVE_CONFLICT_POLICY": "ignore",
                "STACKWEAVE_SECRET_BACKEND": "vault",
            }
        )
    )
    try:
        assert config.ENGINE.conflict_policy == "auto-disable"
        assert config.SECRET_STORE.backend == "memory"
    finally:
        config.configure()

from __future__ import annotations

from typing import cast

import pytest
from hypothesis import given
from hypothesis import strategies as st
from structlog.typing import FilteringBoundLogger

from stackweave.application.secret_material import (
    CHARACTER_SETS,
    SecretHandoff,
    SecretMaterialGenerator,
    generate_value,
)
from stackweave.domain.errors import SecretStoreError
from stackweave.domain.models import SecretSpec
from stackweave.governance.secrets import InMemorySecretStore


class _RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, object]]] = []

    def info(self, event: str, **payload: object) -> None:
        self.events.append(("info", event, payload))

    def debug(self, event: str, **payload: object) -> None:
        self.events.append(("debug", event, payload))

    def warning(self, event: str, **payload: object) -> None:
        self.events.append(("warning", event, payload))


@given(
    length=st.integers(min_value=4, max_value=64),
    classes=st.lists(
        st.sampled_from(sorted(CHARACTER_SETS)), min_size=1, max_size=4, unique=True
    ),
)
def test_generated_value_covers_every_requested_class(length: int, classes: list[str]) -> None:
    value = generate_value(SecretSpec(length=length, character_classes=tuple(classes)))

    assert len(value) == length
    for name in classes:
        assert any(character in CHARACTER_SETS[name] for character in value)
    alphabet = "".join(CHARACTER_SETS[name] for name in classes)
    assert set(value) <= set(alphabet)


@pytest.mark.parametrize(
    "spec",
    [
        SecretSpec(length=16, character_classes=()),
        SecretSpec(length=16, character_classes=("emoji",)),
        SecretSpec(length=2, character_classes=("lower", "upper", "digits")),
    ],
)
def test_invalid_secret_specs_are_rejected(spec: SecretSpec) -> None:
    with pytest.raises(SecretStoreError):
        generate_value(spec)


def test_generator_writes_value_to_store_and_returns_locator() -> None:
    store = InMemorySecretStore()
    generator = SecretMaterialGenerator(store, namespace="prod")

    handle = generator.generate(SecretSpec(length=24), "db", "password")

    assert handle.locator == "memory://prod/db/password#v1"
    assert handle.version == "v1"
    assert SecretMaterialGenerator.publish(handle) == handle.locator
    assert len(store.reveal(handle.locator)) == 24
    assert store.exists(handle.locator)


def test_handoff_reuses_recorded_handle() -> None:
    store = InMemorySecretStore()
    logger = _RecordingLogger()
    handoff = SecretHandoff(
        SecretMaterialGenerator(store),
        logger=cast(FilteringBoundLogger, logger),
    )
    specs = {"password": SecretSpec(length=20)}

    first = handoff.ensure("db", specs, namespace="prod")
    second = handoff.ensure("db", specs, namespace="prod")

    assert first == second == {"password": "memory://prod/db/password#v1"}
    assert not store.exists("memory://prod/db/password#v2")
    assert [(level, event) for level, event, _ in logger.events] == [
        ("info", "secret_handoff.generated"),
        ("debug", "secret_handoff.reused"),
    ]


def test_rotation_writes_a_new_version() -> None:
    store = InMemorySecretStore()
    logger = _RecordingLogger()
    handoff = SecretHandoff(
        SecretMaterialGenerator(store),
        logger=cast(FilteringBoundLogger, logger),
    )
    specs = {"password": SecretSpec(length=20)}

    original = handoff.ensure("db", specs)["password"]
    rotated = handoff.ensure("db", specs, rotate=True)["password"]

    assert original == "memory://db/password#v1"
    assert rotated == "memory://db/password#v2"
    assert store.exists(original)
    assert handoff.ledger.get("db")["password"].locator == rotated
    assert logger.events[-1][1] == "secret_handoff.rotated"


def test_handle_missing_from_store_is_regenerated() -> None:
    logger = _RecordingLogger()
    ledger_store = InMemorySecretStore()
    first = SecretHandoff(SecretMaterialGenerator(ledger_store))
    first.ensure("db", {"password": SecretSpec(length=20)}, namespace="prod")
    fresh_store = InMemorySecretStore()
    handoff = SecretHandoff(
        SecretMaterialGenerator(fresh_store),
        ledger=first.ledger,
        logger=cast(FilteringBoundLogger, logger),
    )

    locators = handoff.ensure("db", {"password": SecretSpec(length=20)}, namespace="prod")

    assert locators == {"password": "memory://prod/db/password#v1"}
    assert fresh_store.exists(locators["password"])
    assert [(level, event) for level, event, _ in logger.events] == [
        ("warning", "secret_handoff.missing_from_store"),
        ("info", "secret_handoff.regenerated"),
    ]


def test_published_locator_never_contains_the_value() -> None:
    store = InMemorySecretStore()
    handoff = SecretHandoff(SecretMaterialGenerator(store))

    locator = handoff.ensure("cache", {"auth_token": SecretSpec(length=48)})["auth_token"]

    assert store.reveal(locator) not in locator

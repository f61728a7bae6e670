"""Secret material generation and the write-once hand-off to a secret store."""

from __future__ import annotations

import secrets
import string
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from structlog.typing import FilteringBoundLogger

from stackweave.domain.errors import SecretStoreError
from stackweave.domain.models import SecretSpec
from stackweave.governance.secrets import SecretStore
from stackweave.infrastructure.state import HandleLedger, InMemoryHandleLedger, SecretHandle

CHARACTER_SETS: Mapping[str, str] = {
    "lower": string.ascii_lowercase,
    "upper": string.ascii_uppercase,
    "digits": string.digits,
    "symbols": "!#%+-.:=@^_~",
}

_RANDOM = secrets.SystemRandom()


def generate_value(spec: SecretSpec) -> str:
    """Return a random string holding at least one character of every class."""

    if not spec.character_classes:
        raise SecretStoreError("A secret needs at least one character class")
    unknown = [name for name in spec.character_classes if name not in CHARACTER_SETS]
    if unknown:
        raise SecretStoreError(f"Unknown character classes: {', '.join(unknown)}")
    if spec.length < len(spec.character_classes):
        raise SecretStoreError(
            f"Secret length {spec.length} cannot cover "
            f"{len(spec.character_classes)} character classes"
        )
    alphabet = "".join(CHARACTER_SETS[name] for name in spec.character_classes)
    characters = [secrets.choice(CHARACTER_SETS[name]) for name in spec.character_classes]
    characters.extend(
        secrets.choice(alphabet) for _ in range(spec.length - len(characters))
    )
    _RANDOM.shuffle(characters)
    return "".join(characters)


class SecretMaterialGenerator:
    """Generate secret values and write each one to the store exactly once."""

    def __init__(self, store: SecretStore, *, namespace: str = "") -> None:
        self.store = store
        self.namespace = namespace.strip("/")

    def generate(
        self,
        spec: SecretSpec,
        instance_key: str,
        name: str,
        *,
        namespace: str | None = None,
    ) -> SecretHandle:
        value = generate_value(spec)
        scope = self.namespace if namespace is None else namespace.strip("/")
        store_name = "/".join(part for part in (scope, instance_key, name) if part)
        locator, version = self.store.put(store_name, value)
        return SecretHandle(
            instance_key=instance_key,
            name=name,
            locator=locator,
            version=version,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    @staticmethod
    def publish(handle: SecretHandle) -> str:
        """Return the value an instance may publish for ``handle``."""

        return handle.locator


@dataclass(slots=True)
class SecretHandoff:
    """Idempotent bridge between instances and the secret generator.

    A secret whose handle is already in the ledger is reused unless rotation
    is requested for the owning instance. A recorded handle whose locator the
    store no longer holds is replaced with freshly generated material.
    """

    generator: SecretMaterialGenerator
    ledger: HandleLedger = field(default_factory=InMemoryHandleLedger)
    logger: FilteringBoundLogger = field(
        default_factory=lambda: structlog.get_logger(__name__)
    )

    def ensure(
        self,
        instance_key: str,
        specs: Mapping[str, SecretSpec],
        *,
        rotate: bool = False,
        namespace: str | None = None,
    ) -> dict[str, str]:
        """Return ``{secret name: locator}`` for every secret of the instance."""

        known = self.ledger.get(instance_key)
        locators: dict[str, str] = {}
        for name, spec in specs.items():
            handle = known.get(name)
            if handle is not None and not rotate:
                if self.generator.store.exists(handle.locator):
                    self.logger.debug(
                        "secret_handoff.reused",
                        instance=instance_key,
                        secret=name,
                        version=handle.version,
                    )
                    locators[name] = self.generator.publish(handle)
                    continue
                self.logger.warning(
                    "secret_handoff.missing_from_store",
                    instance=instance_key,
                    secret=name,
                    locator=handle.locator,
                )
                event = "secret_handoff.regenerated"
            elif rotate and name in known:
                event = "secret_handoff.rotated"
            else:
                event = "secret_handoff.generated"
            handle = self.generator.generate(spec, instance_key, name, namespace=namespace)
            self.ledger.record(handle)
            self.logger.info(
                event,
                instance=instance_key,
                secret=name,
                locator=handle.locator,
                version=handle.version,
            )
            locators[name] = self.generator.publish(handle)
        return locators


__all__ = [
    "CHARACTER_SETS",
    "SecretHandoff",
    "SecretMaterialGenerator",
    "generate_value",
]

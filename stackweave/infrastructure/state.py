"""Handle ledger: remembers which secret handles were already published."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from threading import RLock
from typing import Protocol

from stackweave.domain.errors import SecretStoreError


@dataclass(frozen=True)
class SecretHandle:
    """Opaque reference to stored secret material.

    Only ``locator`` is ever published; the value stays in the store.
    """

    instance_key: str
    name: str
    locator: str
    version: str
    created_at: str


class HandleLedger(Protocol):
    def get(self, instance_key: str) -> dict[str, SecretHandle]:  # pragma: no cover - interface
        """Return the handles recorded for ``instance_key`` keyed by secret name."""

    def record(self, handle: SecretHandle) -> None:  # pragma: no cover - interface
        """Remember ``handle``, replacing an earlier handle of the same secret."""


class InMemoryHandleLedger:
    """Thread-safe ledger that lives as long as the process."""

    def __init__(self) -> None:
        self._handles: dict[str, dict[str, SecretHandle]] = {}
        self._lock = RLock()

    def get(self, instance_key: str) -> dict[str, SecretHandle]:
        with self._lock:
            return dict(self._handles.get(instance_key, {}))

    def record(self, handle: SecretHandle) -> None:
        with self._lock:
            self._handles.setdefault(handle.instance_key, {})[handle.name] = handle

    def snapshot(self) -> dict[str, dict[str, SecretHandle]]:
        with self._lock:
            return {key: dict(handles) for key, handles in self._handles.items()}


class JsonHandleLedger(InMemoryHandleLedger):
    """Ledger persisted to a JSON file so handles survive across runs.

    Every ``record`` rewrites the file through a temporary sibling and
    ``os.replace``.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        if path.exists():
            self._load()

    def _load(self) -> None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SecretStoreError(f"Unable to read handle ledger {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise SecretStoreError(f"Handle ledger {self.path} must hold a JSON object")
        for instance_key, handles in payload.items():
            for name, entry in dict(handles).items():
                self._handles.setdefault(instance_key, {})[name] = SecretHandle(
                    instance_key=instance_key,
                    name=name,
                    locator=entry["locator"],
                    version=entry.get("version", ""),
                    created_at=entry.get("created_at", ""),
                )

    def record(self, handle: SecretHandle) -> None:
        with self._lock:
            super().record(handle)
            self._flush()

    def _flush(self) -> None:
        payload = {
            instance_key: {
                name: {
                    key: value
                    for key, value in asdict(handle).items()
                    if key not in {"instance_key", "name"}
                }
                for name, handle in sorted(handles.items())
            }
            for instance_key, handles in sorted(self._handles.items())
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_suffix(self.path.suffix + ".tmp")
        staging.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(staging, self.path)


__all__ = [
    "HandleLedger",
    "InMemoryHandleLedger",
    "JsonHandleLedger",
    "SecretHandle",
]

"""The ``Value | Absent`` sum type used for every cross-instance attribute.

``ABSENT`` means "the owning instance is disabled". Consumers never build a
partial value out of it: :func:`derive` short-circuits to ``ABSENT`` as soon
as one input is absent, and containers holding an absent element collapse to
``ABSENT`` as a whole.

:class:`Deferred` is the other non-literal value: the producing instance is
enabled but the attribute is only known once the provisioner has
materialised it.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import wraps
from typing import Any, Final, TypeVar, Union

T = TypeVar("T")


class AbsentType:
    """Singleton marker for attributes owned by a disabled instance."""

    _instance: AbsentType | None = None

    def __new__(cls) -> AbsentType:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "Absent"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> tuple[type[AbsentType], tuple[()]]:
        return (AbsentType, ())


ABSENT: Final = AbsentType()

Value = Union[Any, AbsentType]


@dataclass(frozen=True)
class Deferred:
    """Attribute of an enabled instance that is only known after materialisation."""

    instance_key: str
    attribute: str

    @property
    def token(self) -> str:
        return "${" + f"{self.instance_key}.{self.attribute}" + "}"

    def __str__(self) -> str:
        return self.token


def is_absent(value: object) -> bool:
    return value is ABSENT


def derive(func: Callable[..., T], *args: Any, **kwargs: Any) -> T | AbsentType:
    """Call ``func`` unless one of its inputs is ``ABSENT``."""

    if any(is_absent(arg) for arg in args):
        return ABSENT
    if any(is_absent(value) for value in kwargs.values()):
        return ABSENT
    return func(*args, **kwargs)


def lift(func: Callable[..., T]) -> Callable[..., T | AbsentType]:
    """Decorate ``func`` so that absent inputs propagate instead of failing."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T | AbsentType:
        return derive(func, *args, **kwargs)

    return wrapper


def coalesce(value: Value, default: T) -> Any:
    """Return ``default`` in place of ``ABSENT``; other values pass through."""

    return default if is_absent(value) else value


def collapse(value: Any) -> Value:
    """Return ``ABSENT`` when ``value`` contains an absent element anywhere."""

    if is_absent(value):
        return ABSENT
    if isinstance(value, Mapping):
        items = {key: collapse(item) for key, item in value.items()}
        if any(is_absent(item) for item in items.values()):
            return ABSENT
        return items
    if isinstance(value, (list, tuple)):
        collapsed = [collapse(item) for item in value]
        if any(is_absent(item) for item in collapsed):
            return ABSENT
        return type(value)(collapsed)
    return value


def to_serialisable(value: Any) -> Any:
    """Convert a resolved value into JSON-friendly data.

    ``ABSENT`` becomes an explicit ``None`` and deferred attributes become
    their ``${instance.attribute}`` token.
    """

    if is_absent(value):
        return None
    if isinstance(value, Deferred):
        return value.token
    if isinstance(value, Mapping):
        return {str(key): to_serialisable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_serialisable(item) for item in value]
    return value


__all__ = [
    "ABSENT",
    "AbsentType",
    "Deferred",
    "Value",
    "coalesce",
    "collapse",
    "derive",
    "is_absent",
    "lift",
    "to_serialisable",
]

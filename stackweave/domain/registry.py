"""Component template registry."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path

from .errors import DuplicateTemplateError, UnknownTemplateError
from .models import ComponentTemplate


class TemplateRegistry:
    """Static lookup table of component templates keyed by template id."""

    def __init__(self, templates: Iterable[ComponentTemplate] = ()) -> None:
        self._templates: dict[str, ComponentTemplate] = {}
        for template in templates:
            self.register(template)

    @classmethod
    def from_catalog(cls, path: Path) -> TemplateRegistry:
        """Build a registry from a YAML catalog file."""

        from stackweave.core.catalog import load_catalog

        return cls(load_catalog(path))

    def register(self, template: ComponentTemplate) -> None:
        if template.id in self._templates:
            raise DuplicateTemplateError(template.id)
        self._templates[template.id] = template

    def lookup(self, template_id: str) -> ComponentTemplate:
        try:
            return self._templates[template_id]
        except KeyError as exc:
            raise UnknownTemplateError(template_id) from exc

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def __iter__(self) -> Iterator[ComponentTemplate]:
        return iter(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(self._templates)


__all__ = ["TemplateRegistry"]

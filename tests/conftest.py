from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import pytest

from stackweave.core import config
from stackweave.core.deployment import parse_deployment
from stackweave.domain.models import Deployment
from stackweave.domain.registry import TemplateRegistry


@pytest.fixture(scope="session")
def registry() -> TemplateRegistry:
    return TemplateRegistry.from_catalog(config.DEFAULT_CATALOG_PATH)


@pytest.fixture
def make_deployment() -> Callable[[Mapping[str, Any]], Deployment]:
    def _build(instances: Mapping[str, Any], **document: Any) -> Deployment:
        payload = {"name": "test", **document, "instances": dict(instances)}
        return parse_deployment(payload)

    return _build

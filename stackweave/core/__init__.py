"""Core loaders and configuration shared across the resolution layers."""

from . import catalog, config, deployment

__all__ = ["catalog", "config", "deployment"]

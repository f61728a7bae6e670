"""Interfaces for human and automation entrypoints."""

from . import cli

__all__ = ["cli"]

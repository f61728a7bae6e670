"""Secrets providers and secret stores."""

from . import secrets

__all__ = ["secrets"]

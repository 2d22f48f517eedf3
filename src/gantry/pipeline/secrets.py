"""Secrets stores — resolve named secret values at step-execution time.

Secret values are only ever held in memory while a step runs; runs, steps,
and logs record references (``${{ secrets.NAME }}``) or masked output.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Protocol


class SecretsStore(Protocol):
    """Supplies secret values by name."""

    def get(self, name: str) -> str | None:
        """Return the secret value, or None if it is not defined."""
        ...


class EnvSecretsStore:
    """Reads secrets from environment variables, e.g. ``GANTRY_SECRET_REGISTRY_TOKEN``."""

    def __init__(self, prefix: str = "GANTRY_SECRET_"):
        self.prefix = prefix

    def get(self, name: str) -> str | None:
        return os.environ.get(f"{self.prefix}{name.upper()}")


class StaticSecretsStore:
    """In-memory secrets, for local runs and tests."""

    def __init__(self, values: Mapping[str, str] | None = None):
        self._values = dict(values or {})

    def get(self, name: str) -> str | None:
        return self._values.get(name)

"""Concrete AccountBackend implementations."""

from __future__ import annotations

from typing import TYPE_CHECKING

from creditgate.backends.memory import InMemoryBackend
from creditgate.backends.postgrest import PostgrestBackend

if TYPE_CHECKING:
    from creditgate.backend import AccountBackend
    from creditgate.config import CreditGateConfig

__all__ = ["InMemoryBackend", "PostgrestBackend", "backend_from_config"]


def backend_from_config(config: CreditGateConfig) -> AccountBackend:
    """PostgREST when ``backend_url`` is configured, in-memory otherwise."""
    if config.backend_url:
        if not config.backend_api_key:
            raise ValueError("backend_api_key is required when backend_url is set")
        return PostgrestBackend(config.backend_url, config.backend_api_key)
    return InMemoryBackend()

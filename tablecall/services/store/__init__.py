"""
Call Store Factory

Provides a single entry point for obtaining the call store.
The rest of the application stays agnostic about which store is in use.

Usage:
    from tablecall.services.store import get_call_store

    store = get_call_store()
    snapshot = await store.get_establishment_snapshot(establishment_id)

Environment Switching:
    - ENV_MODE=development → InMemoryCallStore (no database)
    - ENV_MODE=staging → SQLAlchemyCallStore
    - ENV_MODE=production → SQLAlchemyCallStore
"""

import logging
from functools import lru_cache

from tablecall.core.config import get_settings
from tablecall.services.store.base import (
    BaseCallStore,
    EstablishmentNotFoundError,
    StoreError,
)
from tablecall.services.store.memory import InMemoryCallStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_call_store() -> BaseCallStore:
    """
    Get the configured call store instance.

    The instance is cached so every request shares one store (the
    in-memory store would otherwise lose its data between requests).
    """
    settings = get_settings()

    if not settings.use_database:
        logger.info("Call Store: Using InMemoryCallStore (development mode)")
        return InMemoryCallStore()

    from tablecall.database import async_session_maker
    from tablecall.services.store.sql import SQLAlchemyCallStore

    logger.info(f"Call Store: Using SQLAlchemyCallStore ({settings.env_mode.value} mode)")
    return SQLAlchemyCallStore(async_session_maker)


def reset_call_store() -> None:
    """
    Clear the cached store instance.

    Useful for testing or when configuration changes at runtime.
    """
    get_call_store.cache_clear()
    logger.debug("Call store cache cleared")


__all__ = [
    "get_call_store",
    "reset_call_store",
    "BaseCallStore",
    "EstablishmentNotFoundError",
    "InMemoryCallStore",
    "StoreError",
]

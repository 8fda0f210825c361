# storage/__init__.py
# ============================================================================
# PRINTDESK v1.0 - STORAGE MODULE
# ============================================================================
# Order store contract and the identifier-keyed document directories.
# The asyncpg-backed store lives in storage.postgres_store.
# ============================================================================

from storage.order_store import (
    IOrderStore,
    InMemoryOrderStore,
)
from storage.file_placement import FilePlacementManager

__all__ = [
    "IOrderStore",
    "InMemoryOrderStore",
    "FilePlacementManager",
]

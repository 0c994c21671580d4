"""Transactional persistence for cases, AI artifacts and evaluation data."""

from .store import Store, StoreTransaction

__all__ = ["Store", "StoreTransaction"]

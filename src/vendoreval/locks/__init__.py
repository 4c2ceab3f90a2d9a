"""Scope locks backed by the append-only lock log."""

from vendoreval.locks.manager import LockManager

__all__ = ["LockManager"]

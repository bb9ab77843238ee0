"""Snapshot persistence for agents and tasks."""

from nofx.persistence.store import JsonSnapshotStore, PersistenceProvider

__all__ = ["JsonSnapshotStore", "PersistenceProvider"]

"""Victims database.

Local cache of known-vulnerable artifact fingerprints, kept in step with
the remote victims service.
"""

from victims.services.victims.errors import StorageError, SyncError, VictimsError
from victims.services.victims.store import FingerprintStore
from victims.services.victims.synchronizer import Synchronizer

__all__ = [
    "FingerprintStore",
    "Synchronizer",
    "VictimsError",
    "StorageError",
    "SyncError",
]

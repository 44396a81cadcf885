from .db import initialize_database
from .snapshots import Snapshot, load_snapshot, prune_snapshots, save_snapshot

__all__ = [
    "Snapshot",
    "initialize_database",
    "load_snapshot",
    "prune_snapshots",
    "save_snapshot",
]

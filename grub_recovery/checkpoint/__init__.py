"""Pre-repair safety points: filesystem snapshots and archive backups."""

from .archive import BackupManifest, create_archive, latest_archive, list_archives, read_manifest
from .manager import CheckpointManager


__all__ = [
    "BackupManifest",
    "CheckpointManager",
    "create_archive",
    "latest_archive",
    "list_archives",
    "read_manifest",
]

"""Copy-on-write filesystem snapshots of the root filesystem."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from grub_recovery.domain.models import (
    Checkpoint,
    CheckpointKind,
    SnapshotCapability,
    SystemProfile,
)
from grub_recovery.exceptions import RollbackError, SnapshotError
from grub_recovery.logging import LoggerFactory
from grub_recovery.system import tools


log = LoggerFactory.for_checkpoint()

SNAPSHOT_PREFIX = "grub-recovery"
BTRFS_SNAPSHOT_DIR = "/.snapshots"


def snapshot_name(now: datetime) -> str:
    return f"{SNAPSHOT_PREFIX}-{now:%Y%m%d-%H%M%S}"


def _btrfs_snapshot(name: str, root: str) -> str:
    snapshot_dir = Path(root) / BTRFS_SNAPSHOT_DIR.lstrip("/")
    try:
        snapshot_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise SnapshotError("btrfs", f"cannot create {snapshot_dir}: {error}") from error
    destination = str(snapshot_dir / name)
    result = tools.btrfs_snapshot(root, destination)
    if not result.ok:
        raise SnapshotError("btrfs", result.message)
    return destination


def _zfs_snapshot(name: str, root: str) -> str:
    try:
        dataset = tools.zfs_dataset_for(root)
    except TimeoutError as error:
        raise SnapshotError("zfs", str(error)) from error
    if not dataset:
        raise SnapshotError("zfs", f"no dataset mounted at {root}")
    location = f"{dataset}@{name}"
    result = tools.zfs_snapshot(location)
    if not result.ok:
        raise SnapshotError("zfs", result.message)
    return location


def create_snapshot(profile: SystemProfile, *, now: Optional[datetime] = None) -> Checkpoint:
    """Snapshot the root filesystem using the profile's snapshot capability.

    Raises:
        SnapshotError: If the filesystem has no capability or the tool fails
    """
    capability = profile.snapshot_capability
    now = now or datetime.now()
    name = snapshot_name(now)
    if capability == SnapshotCapability.BTRFS:
        location = _btrfs_snapshot(name, profile.host_root)
    elif capability == SnapshotCapability.ZFS:
        location = _zfs_snapshot(name, profile.host_root)
    else:
        raise SnapshotError(profile.root_fstype, "filesystem has no snapshot support")

    log.info(f"{capability.value} snapshot created: {location}")
    return Checkpoint(
        kind=CheckpointKind.SNAPSHOT,
        identifier=name,
        created_at=now,
        location=location,
        profile=profile,
        capability=capability,
    )


def rollback_snapshot(checkpoint: Checkpoint) -> None:
    """Restore the filesystem state captured by ``checkpoint``.

    Raises:
        RollbackError: If the rollback command fails, or the snapshot kind
            cannot be rolled back live
    """
    if checkpoint.capability == SnapshotCapability.ZFS:
        result = tools.zfs_rollback(checkpoint.location)
        if not result.ok:
            raise RollbackError(checkpoint.identifier, result.message)
        log.success(f"ZFS rollback to {checkpoint.location} successful")
        return
    if checkpoint.capability == SnapshotCapability.BTRFS:
        raise RollbackError(
            checkpoint.identifier,
            f"btrfs rollback requires manual intervention (snapshot at {checkpoint.location})",
        )
    raise RollbackError(checkpoint.identifier, "checkpoint is not a filesystem snapshot")

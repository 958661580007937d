"""Checkpoint creation and rollback for one repair attempt."""

from __future__ import annotations

from typing import Optional

from grub_recovery.config.settings import RecoveryConfig
from grub_recovery.domain.models import Checkpoint, SnapshotCapability, SystemProfile
from grub_recovery.exceptions import RollbackError, SnapshotError
from grub_recovery.logging import EventLogger, LoggerFactory
from grub_recovery.services.metrics import MetricsStore

from . import archive, snapshot


class CheckpointManager:
    """Creates the pre-repair safety point and consumes it on rollback.

    A filesystem snapshot is preferred when the root filesystem supports one
    and snapshots are enabled; otherwise, or when the snapshot fails, an
    archive backup is written. Each checkpoint can be rolled back at most
    once.
    """

    def __init__(
        self,
        config: RecoveryConfig,
        *,
        metrics: Optional[MetricsStore] = None,
        job_id: Optional[str] = None,
    ):
        self.config = config
        self.metrics = metrics
        self.log = LoggerFactory.for_checkpoint(job_id)
        self._consumed: set[str] = set()

    def create(self, profile: SystemProfile) -> Checkpoint:
        """Create a checkpoint for ``profile``.

        Raises:
            ArchiveError: If the snapshot path was unavailable and the archive
                backup failed as well
        """
        if self.config.enable_snapshots and (
            profile.snapshot_capability != SnapshotCapability.NONE
        ):
            try:
                checkpoint = snapshot.create_snapshot(profile)
            except SnapshotError as error:
                self.log.warning(f"{error}; falling back to an archive backup")
            else:
                EventLogger.log_checkpoint_created(
                    self.log, checkpoint.kind.value, checkpoint.location
                )
                return checkpoint

        checkpoint = archive.create_archive(
            profile, self.config.backup_dir, retention=self.config.backup_retention
        )
        if self.metrics is not None:
            self.metrics.record_backup(checkpoint.created_at.timestamp())
        EventLogger.log_checkpoint_created(self.log, checkpoint.kind.value, checkpoint.location)
        return checkpoint

    def supports_rollback(self, checkpoint: Optional[Checkpoint]) -> bool:
        """Snapshots are rolled back live; archives are restored by hand."""
        return checkpoint is not None and checkpoint.is_snapshot

    def rollback(self, checkpoint: Checkpoint) -> None:
        """Roll back to ``checkpoint``, consuming it.

        Raises:
            RollbackError: If the checkpoint was already consumed, is not a
                live-rollback kind, or the rollback itself failed
        """
        if checkpoint.identifier in self._consumed:
            raise RollbackError(checkpoint.identifier, "checkpoint already consumed")
        self._consumed.add(checkpoint.identifier)
        if not checkpoint.is_snapshot:
            raise RollbackError(
                checkpoint.identifier,
                f"archive checkpoints are restored manually from {checkpoint.location}",
            )
        self.log.warning(f"Rolling back to {checkpoint.describe()}")
        snapshot.rollback_snapshot(checkpoint)

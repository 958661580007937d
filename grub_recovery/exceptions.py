"""Custom exceptions for recovery operations.

This module defines the error taxonomy of the recovery engine. Each class
maps to one failure class the repair state machine reacts to differently.

Exception Hierarchy:
    RecoveryError (base)
        ├── DetectionError           fatal, raised before any component runs
        ├── ProbeInconclusive        non-fatal, scored as one issue
        ├── CheckpointError          soft, disables rollback for the attempt
        │   ├── SnapshotError
        │   └── ArchiveError
        ├── SandboxError             hard, aborts before destructive actions
        │   ├── MountError
        │   ├── SandboxBusyError
        │   └── MountLeakError       mounts survived teardown escalation
        ├── RepairCommandError       hard, triggers rollback if possible
        ├── RollbackError            hard, terminal
        └── RepairInProgressError    another attempt holds the target

Usage:
    from grub_recovery.exceptions import MountError

    if result.returncode != 0:
        raise MountError(target, source=device, reason=result.stderr)
"""

from __future__ import annotations

from typing import Optional, Sequence


class RecoveryError(Exception):
    """Base exception for all recovery operations."""


class DetectionError(RecoveryError):
    """System profile could not be resolved (no root partition)."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"System detection failed: {reason}")


class ProbeInconclusive(RecoveryError):
    """A diagnostic probe could not complete."""

    def __init__(self, check_id: str, reason: str):
        self.check_id = check_id
        self.reason = reason
        super().__init__(f"Probe {check_id} inconclusive: {reason}")


class CheckpointError(RecoveryError):
    """Base exception for checkpoint creation failures."""


class SnapshotError(CheckpointError):
    """Filesystem snapshot could not be created."""

    def __init__(self, filesystem: str, reason: str):
        self.filesystem = filesystem
        self.reason = reason
        super().__init__(f"{filesystem} snapshot failed: {reason}")


class ArchiveError(CheckpointError):
    """Backup archive could not be created or failed validation."""

    def __init__(self, message: str, archive_path: Optional[str] = None):
        self.archive_path = archive_path
        super().__init__(message)


class SandboxError(RecoveryError):
    """Base exception for chroot sandbox failures."""


class MountError(SandboxError):
    """A mount step of the sandbox failed."""

    def __init__(self, target: str, source: str = "", reason: str = ""):
        self.target = target
        self.source = source
        self.reason = reason
        msg = f"Failed to mount {source or '(remount)'} on {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SandboxBusyError(SandboxError):
    """A sandbox session is already active in this process."""

    def __init__(self, mount_point: str):
        self.mount_point = mount_point
        super().__init__(f"A sandbox session is already active at {mount_point}")


class MountLeakError(SandboxError):
    """Mounts remain under the sandbox root after teardown escalation."""

    def __init__(self, mount_point: str, mountpoints: Sequence[str]):
        self.mount_point = mount_point
        self.mountpoints = list(mountpoints)
        mounts_str = ", ".join(self.mountpoints)
        super().__init__(
            f"Resource leak: mounts still active under {mount_point} "
            f"after teardown: {mounts_str}. Operator attention required"
        )


class RepairCommandError(RecoveryError):
    """The distribution-specific repair action failed or timed out."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        timed_out: bool = False,
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        command_str = " ".join(self.command)
        if timed_out:
            msg = f"Repair command timed out: {command_str}"
        else:
            msg = f"Repair command failed ({returncode}): {command_str}"
        if stderr.strip():
            msg += f": {stderr.strip().splitlines()[-1]}"
        super().__init__(msg)


class RollbackError(RecoveryError):
    """Rollback failed or is unsupported for the checkpoint kind."""

    def __init__(self, identifier: str, reason: str):
        self.identifier = identifier
        self.reason = reason
        super().__init__(f"Rollback to {identifier} failed: {reason}")


class RepairInProgressError(RecoveryError):
    """Another repair attempt is already running against this system."""

    def __init__(self, lock_path: str, holder: str = ""):
        self.lock_path = lock_path
        self.holder = holder
        msg = f"Another repair attempt is running (lock {lock_path})"
        if holder:
            msg += f" held by {holder}"
        super().__init__(msg)

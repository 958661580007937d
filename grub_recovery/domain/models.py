"""Domain model for bootloader recovery.

Type-safe, mostly immutable value objects shared by every component. The
SystemProfile is resolved once per run and passed explicitly; reports and
checkpoints are never mutated after creation. RepairAttempt is the only
mutable record: the state machine fills it in as it advances.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional


# ==============================================================================
# Exit codes
# ==============================================================================

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ISSUES_REMAIN = 2
EXIT_ROLLBACK_FAILED = 3
EXIT_RESOURCE_LEAK = 4


# ==============================================================================
# System Profile Domain
# ==============================================================================


class BootMode(Enum):
    """Firmware boot mode."""

    UEFI = "UEFI"
    BIOS = "BIOS"


class SnapshotCapability(Enum):
    """Copy-on-write snapshot support of the root filesystem."""

    NONE = "none"
    BTRFS = "btrfs"
    ZFS = "zfs"

    @classmethod
    def for_filesystem(cls, fstype: str) -> SnapshotCapability:
        try:
            return cls(fstype)
        except ValueError:
            return cls.NONE


@dataclass(frozen=True)
class PartitionRef:
    """A partition as seen by the running system."""

    device: str  # e.g., "/dev/sda2"
    mount_point: str  # e.g., "/boot"
    fstype: str = ""  # e.g., "ext4", "vfat"


@dataclass(frozen=True)
class KernelImage:
    """An installed kernel image under /boot."""

    path: str  # e.g., "/boot/vmlinuz-6.8.0-45-generic"
    version: str  # e.g., "6.8.0-45-generic"


@dataclass(frozen=True)
class SystemProfile:
    """Immutable facts about the host, resolved once per run.

    Every downstream component receives this value explicitly and only
    reads it.
    """

    boot_mode: BootMode
    architecture: str  # e.g., "x86_64"
    grub_target: str  # e.g., "x86_64-efi", "i386-pc"
    distro_id: str  # e.g., "ubuntu"
    root: PartitionRef
    boot: PartitionRef
    efi: Optional[PartitionRef] = None
    distro_version: str = "unknown"
    distro_like: tuple[str, ...] = ()
    pretty_name: str = ""
    root_fstype: str = "unknown"
    snapshot_capability: SnapshotCapability = SnapshotCapability.NONE
    kernels: tuple[KernelImage, ...] = ()
    running_kernel: str = ""
    target_disk: Optional[str] = None  # parent disk of root, e.g. "/dev/sda"
    secure_boot: Optional[bool] = None
    host_root: str = "/"  # filesystem root the profile was resolved against

    def __post_init__(self) -> None:
        if not self.root.device:
            raise ValueError("SystemProfile requires a root partition")

    @property
    def is_uefi(self) -> bool:
        return self.boot_mode == BootMode.UEFI

    @property
    def has_separate_boot(self) -> bool:
        return bool(self.boot.device) and self.boot.device != self.root.device

    @property
    def family_ids(self) -> tuple[str, ...]:
        """Distribution id followed by its ID_LIKE ancestors."""
        return (self.distro_id, *self.distro_like)


# ==============================================================================
# Health Report Domain
# ==============================================================================


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of exactly one health probe."""

    check_id: str
    issues: int
    detail: str = ""
    inconclusive: bool = False

    def __post_init__(self) -> None:
        if self.issues < 0:
            raise ValueError(f"Issue count cannot be negative: {self.issues}")

    @classmethod
    def failed_to_complete(cls, check_id: str, reason: str) -> ProbeResult:
        """An inconclusive probe counts as one issue."""
        return cls(check_id=check_id, issues=1, detail=reason, inconclusive=True)


def compute_score(total_issues: int) -> int:
    """score = clamp(100 - 10 * total_issues, 0, 100)."""
    return max(0, min(100, 100 - 10 * total_issues))


@dataclass(frozen=True)
class HealthReport:
    """Aggregated probe results keyed by check identifier.

    Built fresh on every diagnostic run. Entries are stored sorted by check
    id so two reports with the same results compare equal regardless of the
    order the probes finished in.
    """

    entries: tuple[ProbeResult, ...]

    def __post_init__(self) -> None:
        ids = [entry.check_id for entry in self.entries]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate check identifiers in report: {ids}")

    @classmethod
    def from_results(cls, results: Iterable[ProbeResult]) -> HealthReport:
        return cls(entries=tuple(sorted(results, key=lambda r: r.check_id)))

    @property
    def results(self) -> Mapping[str, ProbeResult]:
        return MappingProxyType({entry.check_id: entry for entry in self.entries})

    @property
    def total_issues(self) -> int:
        return sum(entry.issues for entry in self.entries)

    @property
    def score(self) -> int:
        return compute_score(self.total_issues)

    @property
    def needs_repair(self) -> bool:
        """Decision rule: any issue means repair is recommended."""
        return self.total_issues > 0

    def to_dict(self) -> dict:
        return {
            "health_score": self.score,
            "total_issues": self.total_issues,
            "checks": {
                entry.check_id: {
                    "issues": entry.issues,
                    "detail": entry.detail,
                    "inconclusive": entry.inconclusive,
                }
                for entry in self.entries
            },
        }


# ==============================================================================
# Checkpoint Domain
# ==============================================================================


class CheckpointKind(Enum):
    """Type of pre-repair safety point."""

    SNAPSHOT = "snapshot"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class Checkpoint:
    """A pre-repair safety point.

    For snapshots ``location`` is the snapshot path (BTRFS) or
    ``dataset@name`` (ZFS); for archives it is the published archive path.
    """

    kind: CheckpointKind
    identifier: str  # e.g., "grub-recovery-20250101-120000"
    created_at: datetime
    location: str
    profile: SystemProfile
    capability: SnapshotCapability = SnapshotCapability.NONE

    @property
    def is_snapshot(self) -> bool:
        return self.kind == CheckpointKind.SNAPSHOT

    def describe(self) -> str:
        if self.is_snapshot:
            return f"{self.capability.value} snapshot {self.identifier}"
        return f"archive {self.location}"


# ==============================================================================
# Repair Attempt Domain
# ==============================================================================


class RepairOutcome(Enum):
    """Terminal outcome of a repair attempt."""

    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed-with-warnings"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"
    ROLLBACK_FAILED = "rollback-failed"


@dataclass
class RepairAttempt:
    """One invocation of the repair state machine; the unit of record.

    ``outcome`` stays None when diagnosis found a healthy system and no
    repair was needed.
    """

    attempt_id: str
    started_at: datetime
    target_disk: Optional[str] = None
    forced: bool = False
    finished_at: Optional[datetime] = None
    final_state: str = "idle"
    outcome: Optional[RepairOutcome] = None
    checkpoint: Optional[Checkpoint] = None
    checkpoint_error: Optional[str] = None
    rollback_applicable: bool = False
    rollback_attempted: bool = False
    rollback_note: str = ""
    pre_report: Optional[HealthReport] = None
    post_report: Optional[HealthReport] = None
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    leaked_mounts: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def exit_code(self) -> int:
        if self.leaked_mounts:
            return EXIT_RESOURCE_LEAK
        if self.outcome is None or self.outcome == RepairOutcome.COMPLETED:
            return EXIT_OK
        if self.outcome == RepairOutcome.COMPLETED_WITH_WARNINGS:
            return EXIT_ISSUES_REMAIN
        if self.outcome == RepairOutcome.ROLLBACK_FAILED:
            return EXIT_ROLLBACK_FAILED
        return EXIT_FAILED

    def summary(self) -> list[str]:
        """Operator-facing account of what happened.

        A failed attempt always states whether a checkpoint existed, whether
        rollback was attempted and how it ended.
        """
        outcome = self.outcome.value if self.outcome else "no repair needed"
        lines = [f"Repair attempt {self.attempt_id}: {outcome}"]
        if self.error:
            lines.append(f"  Error:      {self.error}")
        if self.checkpoint is not None:
            lines.append(f"  Checkpoint: {self.checkpoint.describe()}")
        elif self.checkpoint_error:
            lines.append(f"  Checkpoint: none ({self.checkpoint_error})")
        else:
            lines.append("  Checkpoint: none")
        if self.rollback_attempted:
            result = "succeeded" if self.outcome == RepairOutcome.ROLLED_BACK else "FAILED"
            lines.append(f"  Rollback:   attempted, {result}")
        elif self.outcome == RepairOutcome.FAILED:
            lines.append(f"  Rollback:   not attempted ({self.rollback_note or 'not applicable'})")
        if self.rollback_note and self.rollback_attempted:
            lines.append(f"  Note:       {self.rollback_note}")
        for warning in self.warnings:
            lines.append(f"  Warning:    {warning}")
        if self.leaked_mounts:
            lines.append(
                "  LEAK:       mounts still active: " + ", ".join(self.leaked_mounts)
            )
        return lines

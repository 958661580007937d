"""Domain models for bootloader recovery.

Immutable value objects passed between the profile resolver, diagnostics,
checkpoint, sandbox and repair components.
"""

from __future__ import annotations

from .models import (
    BootMode,
    Checkpoint,
    CheckpointKind,
    HealthReport,
    KernelImage,
    PartitionRef,
    ProbeResult,
    RepairAttempt,
    RepairOutcome,
    SnapshotCapability,
    SystemProfile,
    compute_score,
)


__all__ = [
    "BootMode",
    "Checkpoint",
    "CheckpointKind",
    "HealthReport",
    "KernelImage",
    "PartitionRef",
    "ProbeResult",
    "RepairAttempt",
    "RepairOutcome",
    "SnapshotCapability",
    "SystemProfile",
    "compute_score",
]

"""Narrow typed wrappers around the external tools the engine consumes.

Each wrapper runs one tool and reduces its output to a small structured
value (a path, a count, a list of entries). Nothing outside this module
parses free-form tool output, so probes and repair steps can be tested by
patching these functions.

Conventions:
    - ``None`` means "tool unavailable / no answer", never "healthy"
    - a timed out tool raises ``TimeoutError``
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from grub_recovery.logging import LoggerFactory

from .commands import CommandResult, run_command, tool_available


log = LoggerFactory.for_detection()

DEFAULT_TOOL_TIMEOUT = 10
ESP_PARTTYPE_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
GRUB_SIGNATURE = b"GRUB"
BOOT_FAILURE_PATTERN = re.compile(
    r"Kernel panic|grub.*error|Failed to boot|emergency mode"
)
_EFI_ENTRY_PATTERN = re.compile(r"^Boot([0-9A-Fa-f]{4})(\*?)\s+(.*)$")


@dataclass(frozen=True)
class EfiBootEntry:
    """One firmware boot entry as listed by efibootmgr."""

    number: str  # e.g., "0001"
    label: str  # e.g., "ubuntu"
    active: bool


def _checked(result: CommandResult) -> CommandResult:
    if result.timed_out:
        raise TimeoutError(f"{result.command[0]} timed out")
    return result


# ==============================================================================
# Mount table / block devices
# ==============================================================================


def findmnt_value(target: str, column: str, *, timeout: float = DEFAULT_TOOL_TIMEOUT) -> Optional[str]:
    """Read one findmnt column (SOURCE, FSTYPE) for a mounted path."""
    result = _checked(run_command(["findmnt", "-n", "-o", column, target], timeout=timeout))
    if not result.ok:
        return None
    value = result.stdout.strip().splitlines()[0].strip() if result.stdout.strip() else ""
    if column == "SOURCE":
        # btrfs subvolumes are reported as /dev/sda2[/@]
        value = value.split("[", 1)[0]
    return value or None


def parent_disk(partition: str, *, timeout: float = DEFAULT_TOOL_TIMEOUT) -> Optional[str]:
    """Return the whole-disk node holding ``partition`` (e.g. /dev/sda)."""
    result = _checked(run_command(["lsblk", "-no", "PKNAME", partition], timeout=timeout))
    if not result.ok:
        return None
    for line in result.stdout.splitlines():
        name = line.strip()
        if name:
            return f"/dev/{name}"
    return None


def find_efi_partition(*, timeout: float = DEFAULT_TOOL_TIMEOUT) -> Optional[str]:
    """Find the first vfat partition carrying the EFI System partition type."""
    result = _checked(
        run_command(["lsblk", "-nro", "NAME,FSTYPE,PARTTYPE"], timeout=timeout)
    )
    if not result.ok:
        return None
    for line in result.stdout.splitlines():
        fields = line.split()
        if len(fields) < 3:
            continue
        name, fstype, parttype = fields[0], fields[1], fields[2]
        if fstype == "vfat" and parttype.lower() == ESP_PARTTYPE_GUID:
            return f"/dev/{name}"
    return None


def read_disk_head(disk: str, size: int = 512) -> bytes:
    """Read the first ``size`` bytes of a block device.

    Raises:
        OSError: If the device cannot be opened or read
    """
    with open(disk, "rb") as handle:
        return handle.read(size)


def has_grub_signature(disk: str) -> bool:
    """Check the boot sector of ``disk`` for the GRUB signature."""
    return GRUB_SIGNATURE in read_disk_head(disk, 512)


# ==============================================================================
# Firmware
# ==============================================================================


def efi_boot_entries(*, timeout: float = DEFAULT_TOOL_TIMEOUT) -> Optional[list[EfiBootEntry]]:
    """List firmware boot entries, or None if efibootmgr is unavailable."""
    if not tool_available("efibootmgr"):
        return None
    result = _checked(run_command(["efibootmgr"], timeout=timeout))
    if not result.ok:
        return None
    entries = []
    for line in result.stdout.splitlines():
        match = _EFI_ENTRY_PATTERN.match(line.strip())
        if not match:
            continue
        label = match.group(3).split("\t", 1)[0].strip()
        entries.append(
            EfiBootEntry(number=match.group(1), label=label, active=bool(match.group(2)))
        )
    return entries


def efi_boot_listing(*, timeout: float = DEFAULT_TOOL_TIMEOUT) -> Optional[str]:
    """Verbose efibootmgr listing, stored verbatim in backup archives."""
    if not tool_available("efibootmgr"):
        return None
    result = _checked(run_command(["efibootmgr", "-v"], timeout=timeout))
    return result.stdout if result.ok else None


def secure_boot_enabled(*, timeout: float = DEFAULT_TOOL_TIMEOUT) -> Optional[bool]:
    """Secure Boot state from mokutil, or None when unknown."""
    if not tool_available("mokutil"):
        return None
    result = run_command(["mokutil", "--sb-state"], timeout=timeout)
    if result.timed_out:
        return None
    text = f"{result.stdout}\n{result.stderr}".lower()
    if "enabled" in text:
        return True
    if "disabled" in text:
        return False
    return None


# ==============================================================================
# Journal
# ==============================================================================


def previous_boot_failure_count(*, timeout: float = DEFAULT_TOOL_TIMEOUT) -> Optional[int]:
    """Count boot-failure lines in the previous boot's journal.

    Returns None when journalctl is unavailable and 0 when the journal holds
    no previous boot.
    """
    if not tool_available("journalctl"):
        return None
    result = _checked(
        run_command(["journalctl", "-b", "-1", "--no-pager", "-q"], timeout=timeout)
    )
    if not result.ok:
        return 0
    return sum(1 for line in result.stdout.splitlines() if BOOT_FAILURE_PATTERN.search(line))


# ==============================================================================
# Partition table
# ==============================================================================


def backup_partition_table(disk: str, destination: Path, *, timeout: float = 30) -> bool:
    """Save a GPT backup with sgdisk; False when unavailable or failed."""
    if not tool_available("sgdisk"):
        return False
    result = run_command(["sgdisk", "-b", str(destination), disk], timeout=timeout)
    return result.ok


# ==============================================================================
# Snapshots
# ==============================================================================


def btrfs_snapshot(source: str, destination: str, *, timeout: float = 120) -> CommandResult:
    """Create a read-only btrfs snapshot of ``source`` at ``destination``."""
    return run_command(
        ["btrfs", "subvolume", "snapshot", "-r", source, destination], timeout=timeout
    )


def zfs_dataset_for(path: str = "/", *, timeout: float = DEFAULT_TOOL_TIMEOUT) -> Optional[str]:
    """Return the ZFS dataset mounted at ``path``."""
    result = _checked(run_command(["zfs", "list", "-H", "-o", "name", path], timeout=timeout))
    if not result.ok:
        return None
    for line in result.stdout.splitlines():
        if line.strip():
            return line.strip()
    return None


def zfs_snapshot(snapshot: str, *, timeout: float = 120) -> CommandResult:
    """Create ``dataset@name``."""
    return run_command(["zfs", "snapshot", snapshot], timeout=timeout)


def zfs_rollback(snapshot: str, *, timeout: float = 600) -> CommandResult:
    """Roll the dataset back to ``dataset@name``."""
    return run_command(["zfs", "rollback", snapshot], timeout=timeout)

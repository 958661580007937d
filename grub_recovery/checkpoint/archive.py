"""Backup archive operations: create, validate, list, prune, clean.

An archive is a gzip'd tar of one top-level directory ``backup_<timestamp>/``
holding ``config/``, ``boot/``, ``efi/``, the first MiB of the target disk
and ``manifest.json``. Publication is atomic: the archive is written to a
hidden ``.partial`` file, validated, then renamed into place, and only then
is ``latest_backup.txt`` replaced. A failed validation leaves both the
previous archives and the pointer untouched.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import tarfile
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from grub_recovery.__version__ import __version__
from grub_recovery.domain.models import Checkpoint, CheckpointKind, SystemProfile
from grub_recovery.exceptions import ArchiveError
from grub_recovery.logging import LoggerFactory
from grub_recovery.system import tools


log = LoggerFactory.for_checkpoint()

LATEST_POINTER = "latest_backup.txt"
MANIFEST_NAME = "manifest.json"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
DISK_HEAD_BYTES = 1024 * 1024
ARCHIVE_PATTERN = re.compile(r"^backup_(\d{8}_\d{6})(?:_(\d+))?\.tar\.gz$")

# Host paths copied into config/
CONFIG_DIRS = ("boot/grub", "boot/grub2", "etc/grub.d", "etc/default")
BOOT_FILE_PATTERNS = ("vmlinuz-*", "initrd*", "initramfs*")


# ==============================================================================
# Manifest
# ==============================================================================


@dataclass(frozen=True)
class BackupManifest:
    """Metadata stored as manifest.json inside every archive."""

    timestamp: str
    version: str
    distro: str
    boot_mode: str
    root_part: str
    boot_part: str
    efi_part: str
    kernel_version: str
    filesystem: str

    @classmethod
    def for_profile(cls, profile: SystemProfile, now: datetime) -> BackupManifest:
        return cls(
            timestamp=now.strftime(TIMESTAMP_FORMAT),
            version=__version__,
            distro=profile.distro_id,
            boot_mode=profile.boot_mode.value,
            root_part=profile.root.device,
            boot_part=profile.boot.device,
            efi_part=profile.efi.device if profile.efi else "",
            kernel_version=profile.running_kernel,
            filesystem=profile.root_fstype,
        )

    @classmethod
    def from_dict(cls, data: dict) -> BackupManifest:
        try:
            return cls(**{name: str(data[name]) for name in cls.__dataclass_fields__})
        except (KeyError, TypeError) as error:
            raise ArchiveError(f"Malformed manifest: missing {error}") from error

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


# ==============================================================================
# Staging
# ==============================================================================


def _copy_tree(source: Path, destination: Path) -> None:
    try:
        shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
    except (OSError, shutil.Error) as error:
        log.warning(f"Partial copy of {source}: {error}")


def stage_backup(profile: SystemProfile, staging: Path, manifest: BackupManifest) -> None:
    """Collect everything worth restoring into ``staging``.

    Individual items are best-effort; only the manifest is mandatory.
    """
    host = Path(profile.host_root)
    for sub in ("config", "boot", "efi"):
        (staging / sub).mkdir(parents=True, exist_ok=True)

    for relative in CONFIG_DIRS:
        source = host / relative
        if source.is_dir():
            _copy_tree(source, staging / "config" / source.name)

    boot_dir = host / "boot"
    for pattern in BOOT_FILE_PATTERNS:
        for path in sorted(boot_dir.glob(pattern)):
            if not path.is_file():
                continue
            try:
                shutil.copy2(path, staging / "boot" / path.name)
            except OSError as error:
                log.warning(f"Could not copy {path}: {error}")

    efi_dir = host / "boot/efi"
    if profile.is_uefi and efi_dir.is_dir():
        try:
            with tarfile.open(staging / "efi" / "efi_backup.tar.gz", "w:gz") as tar:
                tar.add(str(efi_dir), arcname=".")
        except (OSError, tarfile.TarError) as error:
            log.warning(f"Could not archive {efi_dir}: {error}")
        try:
            listing = tools.efi_boot_listing()
        except TimeoutError as error:
            log.warning(f"Firmware boot entries not saved: {error}")
            listing = None
        if listing is not None:
            (staging / "efi" / "efi_entries.txt").write_text(listing, encoding="utf-8")

    if profile.target_disk:
        try:
            head = tools.read_disk_head(profile.target_disk, DISK_HEAD_BYTES)
        except OSError as error:
            log.warning(f"Could not read {profile.target_disk}: {error}")
        else:
            (staging / "mbr_gpt_backup.bin").write_bytes(head)
        if not tools.backup_partition_table(
            profile.target_disk, staging / "partition_table.bin"
        ):
            log.debug("Partition table backup skipped (sgdisk unavailable or failed)")

    (staging / MANIFEST_NAME).write_text(
        json.dumps(manifest.to_dict(), indent=2), encoding="utf-8"
    )


# ==============================================================================
# Archive operations
# ==============================================================================


def _archive_key(path: Path) -> tuple[str, int]:
    match = ARCHIVE_PATTERN.match(path.name)
    if not match:
        return ("", 0)
    return (match.group(1), int(match.group(2) or 0))


def _unique_archive_name(backup_dir: Path, now: datetime) -> str:
    base = f"backup_{now.strftime(TIMESTAMP_FORMAT)}"
    name = base
    counter = 0
    while (backup_dir / f"{name}.tar.gz").exists():
        counter += 1
        name = f"{base}_{counter}"
    return name


def read_manifest(archive_path: Path) -> BackupManifest:
    """Read manifest.json from an archive.

    Raises:
        ArchiveError: If the archive is unreadable or has no manifest
    """
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            member = next(
                (m for m in tar.getmembers() if Path(m.name).name == MANIFEST_NAME
                 and len(Path(m.name).parts) <= 2),
                None,
            )
            if member is None:
                raise ArchiveError("Archive has no manifest", str(archive_path))
            handle = tar.extractfile(member)
            if handle is None:
                raise ArchiveError("Manifest is not a regular file", str(archive_path))
            data = json.loads(handle.read().decode("utf-8"))
    except (OSError, tarfile.TarError, EOFError) as error:
        raise ArchiveError(f"Unreadable archive: {error}", str(archive_path)) from error
    except ValueError as error:
        raise ArchiveError(f"Invalid manifest: {error}", str(archive_path)) from error
    if not isinstance(data, dict):
        raise ArchiveError("Invalid manifest: not an object", str(archive_path))
    return BackupManifest.from_dict(data)


def validate_archive(archive_path: Path, expected: BackupManifest) -> None:
    """Check an archive is non-empty, readable and carries ``expected``.

    Raises:
        ArchiveError: On any failed check
    """
    try:
        size = archive_path.stat().st_size
    except OSError as error:
        raise ArchiveError(f"Archive missing: {error}", str(archive_path)) from error
    if size == 0:
        raise ArchiveError("Archive is empty", str(archive_path))
    if read_manifest(archive_path) != expected:
        raise ArchiveError("Manifest does not match what was written", str(archive_path))


def _write_pointer(backup_dir: Path, archive_path: Path) -> None:
    pointer = backup_dir / LATEST_POINTER
    fd, tmp_name = tempfile.mkstemp(dir=backup_dir, prefix=".latest-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{archive_path}\n")
        os.replace(tmp_name, pointer)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def create_archive(
    profile: SystemProfile,
    backup_dir: Path,
    *,
    retention: int = 10,
    now: Optional[datetime] = None,
) -> Checkpoint:
    """Build, validate and publish a backup archive.

    Args:
        profile: Resolved system profile
        backup_dir: Directory holding archives and the latest pointer
        retention: Number of newest archives kept after publishing
        now: Creation time (defaults to the current time)

    Returns:
        Archive checkpoint pointing at the published file

    Raises:
        ArchiveError: If the archive cannot be built or fails validation
    """
    now = now or datetime.now()
    backup_dir = Path(backup_dir)
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise ArchiveError(f"Cannot create backup directory {backup_dir}: {error}") from error

    name = _unique_archive_name(backup_dir, now)
    manifest = BackupManifest.for_profile(profile, now)
    final_path = backup_dir / f"{name}.tar.gz"
    partial_path = backup_dir / f".{name}.tar.gz.partial"

    log.info(f"Creating backup archive {final_path}")
    try:
        with tempfile.TemporaryDirectory(dir=backup_dir, prefix=".staging-") as staging:
            stage_root = Path(staging) / name
            stage_root.mkdir()
            stage_backup(profile, stage_root, manifest)
            with tarfile.open(partial_path, "w:gz") as tar:
                tar.add(str(stage_root), arcname=name)
        validate_archive(partial_path, manifest)
        os.replace(partial_path, final_path)
    except ArchiveError:
        partial_path.unlink(missing_ok=True)
        raise
    except (OSError, tarfile.TarError) as error:
        partial_path.unlink(missing_ok=True)
        raise ArchiveError(f"Backup failed: {error}", str(final_path)) from error

    try:
        _write_pointer(backup_dir, final_path)
    except OSError as error:
        raise ArchiveError(f"Could not update {LATEST_POINTER}: {error}", str(final_path)) from error

    removed = prune_archives(backup_dir, retention, protect=final_path)
    if removed:
        log.info(f"Pruned {len(removed)} old backup(s)")
    log.success(f"Backup created: {final_path}")
    return Checkpoint(
        kind=CheckpointKind.ARCHIVE,
        identifier=name,
        created_at=now,
        location=str(final_path),
        profile=profile,
    )


def list_archives(backup_dir: Path) -> list[Path]:
    """Published archives, newest first."""
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        return []
    archives = [
        path for path in backup_dir.iterdir()
        if path.is_file() and ARCHIVE_PATTERN.match(path.name)
    ]
    return sorted(archives, key=_archive_key, reverse=True)


def latest_archive(backup_dir: Path) -> Optional[Path]:
    """Archive named by the latest pointer, if it still exists."""
    pointer = Path(backup_dir) / LATEST_POINTER
    try:
        target = pointer.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if not target:
        return None
    path = Path(target)
    return path if path.is_file() else None


def prune_archives(backup_dir: Path, keep: int, *, protect: Optional[Path] = None) -> list[Path]:
    """Delete archives beyond the newest ``keep``; returns what was removed."""
    removed = []
    for path in list_archives(backup_dir)[max(1, keep):]:
        if protect is not None and path == protect:
            continue
        try:
            path.unlink()
        except OSError as error:
            log.warning(f"Could not remove old backup {path}: {error}")
            continue
        removed.append(path)
    return removed


def clean_archives(
    backup_dir: Path,
    max_age_days: int,
    *,
    now: Optional[datetime] = None,
) -> list[Path]:
    """Delete archives older than ``max_age_days`` by modification time."""
    cutoff = (now or datetime.now()) - timedelta(days=max_age_days)
    latest = latest_archive(backup_dir)
    removed = []
    for path in list_archives(backup_dir):
        if datetime.fromtimestamp(path.stat().st_mtime) >= cutoff:
            continue
        try:
            path.unlink()
        except OSError as error:
            log.warning(f"Could not remove {path}: {error}")
            continue
        removed.append(path)
    if latest is not None and latest in removed:
        (Path(backup_dir) / LATEST_POINTER).unlink(missing_ok=True)
    return removed

"""Resolve the immutable SystemProfile for the running host."""

from __future__ import annotations

import platform
import re
from pathlib import Path
from typing import Optional

from grub_recovery.domain.models import (
    BootMode,
    KernelImage,
    PartitionRef,
    SnapshotCapability,
    SystemProfile,
)
from grub_recovery.exceptions import DetectionError
from grub_recovery.logging import LoggerFactory

from . import tools


log = LoggerFactory.for_detection()

BIOS_TARGET = "i386-pc"
EFI_TARGETS = {
    "x86_64": "x86_64-efi",
    "amd64": "x86_64-efi",
    "aarch64": "arm64-efi",
    "arm64": "arm64-efi",
    "i686": "i386-efi",
    "i386": "i386-efi",
}


def detect_boot_mode(root: Path) -> BootMode:
    return BootMode.UEFI if (root / "sys/firmware/efi").is_dir() else BootMode.BIOS


def grub_target_for(boot_mode: BootMode, architecture: str) -> str:
    """Map firmware mode and CPU architecture to a grub-install target."""
    if boot_mode == BootMode.BIOS:
        return BIOS_TARGET
    return EFI_TARGETS.get(architecture, f"{architecture}-efi")


def parse_os_release(text: str) -> dict[str, str]:
    """Parse os-release KEY=value lines, stripping quotes."""
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def read_os_release(root: Path) -> dict[str, str]:
    for candidate in ("etc/os-release", "usr/lib/os-release"):
        path = root / candidate
        try:
            return parse_os_release(path.read_text(encoding="utf-8", errors="replace"))
        except OSError:
            continue
    return {}


def version_key(version: str) -> tuple:
    """Natural sort key: "5.10.0" sorts after "5.9.0"."""
    return tuple(
        (0, int(chunk), "") if chunk.isdigit() else (1, 0, chunk)
        for chunk in re.findall(r"\d+|[^\d]+", version)
    )


def list_kernels(root: Path) -> tuple[KernelImage, ...]:
    """Installed kernel images under /boot, version-sorted."""
    boot_dir = root / "boot"
    if not boot_dir.is_dir():
        return ()
    kernels = [
        KernelImage(path=str(path), version=path.name[len("vmlinuz-"):])
        for path in boot_dir.glob("vmlinuz-*")
        if path.is_file()
    ]
    return tuple(sorted(kernels, key=lambda kernel: version_key(kernel.version)))


def _partition(mount_point: str) -> Optional[PartitionRef]:
    device = tools.findmnt_value(mount_point, "SOURCE")
    if not device:
        return None
    fstype = tools.findmnt_value(mount_point, "FSTYPE") or ""
    return PartitionRef(device=device, mount_point=mount_point, fstype=fstype)


def _optional(what: str, lookup, *args):
    """Run a lookup for an optional fact; a timed out tool yields None."""
    try:
        return lookup(*args)
    except TimeoutError as error:
        log.warning(f"Could not determine {what}: {error}")
        return None


def resolve_profile(
    *,
    root: Path = Path("/"),
    custom_grub_target: Optional[str] = None,
    custom_target_disk: Optional[str] = None,
) -> SystemProfile:
    """Resolve boot mode, partitions, distribution and kernel inventory.

    Args:
        root: Filesystem root to inspect (the running system by default)
        custom_grub_target: Overrides the grub-install target
        custom_target_disk: Overrides the disk used for BIOS installs

    Raises:
        DetectionError: If the root partition cannot be determined
    """
    root = Path(root)
    try:
        root_part = _partition("/")
    except TimeoutError as error:
        raise DetectionError(f"findmnt timed out: {error}") from error
    if root_part is None:
        raise DetectionError("could not determine the root partition")

    boot_mode = detect_boot_mode(root)
    architecture = platform.machine() or "unknown"
    grub_target = custom_grub_target or grub_target_for(boot_mode, architecture)

    boot_part = _optional("the boot partition", _partition, "/boot") or PartitionRef(
        device=root_part.device, mount_point="/boot", fstype=root_part.fstype
    )

    efi_part = None
    if boot_mode == BootMode.UEFI:
        efi_part = _optional("the EFI partition", _partition, "/boot/efi")
        if efi_part is None:
            device = _optional("the EFI partition", tools.find_efi_partition)
            if device:
                efi_part = PartitionRef(device=device, mount_point="/boot/efi", fstype="vfat")

    os_release = read_os_release(root)
    distro_like = tuple(os_release.get("ID_LIKE", "").split())
    root_fstype = root_part.fstype or "unknown"

    target_disk = custom_target_disk or _optional(
        "the target disk", tools.parent_disk, root_part.device
    )
    secure_boot = tools.secure_boot_enabled() if boot_mode == BootMode.UEFI else None

    profile = SystemProfile(
        boot_mode=boot_mode,
        architecture=architecture,
        grub_target=grub_target,
        distro_id=os_release.get("ID", "unknown").lower(),
        root=root_part,
        boot=boot_part,
        efi=efi_part,
        distro_version=os_release.get("VERSION_ID", "unknown"),
        distro_like=distro_like,
        pretty_name=os_release.get("PRETTY_NAME", ""),
        root_fstype=root_fstype,
        snapshot_capability=SnapshotCapability.for_filesystem(root_fstype),
        kernels=list_kernels(root),
        running_kernel=platform.release(),
        target_disk=target_disk,
        secure_boot=secure_boot,
        host_root=str(root),
    )
    log.info(
        f"System: {profile.pretty_name or profile.distro_id} "
        f"({profile.boot_mode.value}, {profile.architecture}, target {profile.grub_target})"
    )
    log.debug(
        f"Root {root_part.device} ({root_fstype}), boot {boot_part.device}, "
        f"EFI {efi_part.device if efi_part else '-'}, disk {target_disk or '-'}"
    )
    return profile


def describe_profile(profile: SystemProfile) -> list[str]:
    """Human-readable profile lines for status output."""
    secure_boot = {True: "enabled", False: "disabled", None: "unknown"}[profile.secure_boot]
    lines = [
        f"Distribution: {profile.pretty_name or profile.distro_id} ({profile.distro_version})",
        f"Boot mode:    {profile.boot_mode.value}",
        f"Architecture: {profile.architecture}",
        f"GRUB target:  {profile.grub_target}",
        f"Root:         {profile.root.device} ({profile.root_fstype})",
        f"Boot:         {profile.boot.device}",
        f"EFI:          {profile.efi.device if profile.efi else '-'}",
        f"Target disk:  {profile.target_disk or '-'}",
        f"Kernel:       {profile.running_kernel}",
        f"Snapshots:    {profile.snapshot_capability.value}",
    ]
    if profile.is_uefi:
        lines.append(f"Secure Boot:  {secure_boot}")
    return lines

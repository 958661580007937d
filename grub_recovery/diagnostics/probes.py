"""Health probes run by the diagnostic engine.

Every probe takes the SystemProfile and the filesystem root to inspect and
returns exactly one ProbeResult. Probes never share state and never write
anything, so they can run concurrently and repeatedly.

A probe that cannot reach a verdict raises ``ProbeInconclusive``; the engine
scores that as one issue.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable

import psutil

from grub_recovery.domain.models import ProbeResult, SystemProfile
from grub_recovery.exceptions import ProbeInconclusive
from grub_recovery.logging import LoggerFactory
from grub_recovery.system import tools
from grub_recovery.system.commands import tool_available


log = LoggerFactory.for_diagnostics()

Probe = Callable[[SystemProfile, Path], ProbeResult]

GRUB_BINARIES = (
    "grub-install",
    "grub-mkconfig",
    "update-grub",
    "grub2-install",
    "grub2-mkconfig",
)
MIN_CONFIG_SIZE = 100
MIN_BOOT_FREE_BYTES = 50 * 1024 * 1024
EFI_ENTRY_PATTERN = re.compile(r"grub|ubuntu|debian|fedora|centos", re.IGNORECASE)


def check_grub_binaries(profile: SystemProfile, root: Path) -> ProbeResult:
    found = [binary for binary in GRUB_BINARIES if tool_available(binary)]
    if not found:
        return ProbeResult("grub_binaries", 1, "no GRUB tools found on PATH")
    return ProbeResult("grub_binaries", 0, f"found {', '.join(found)}")


def grub_config_candidates(root: Path) -> list[Path]:
    candidates = [root / "boot/grub/grub.cfg", root / "boot/grub2/grub.cfg"]
    efi_dir = root / "boot/efi/EFI"
    if efi_dir.is_dir():
        candidates.extend(sorted(efi_dir.glob("*/grub.cfg")))
    return candidates


def check_grub_config(profile: SystemProfile, root: Path) -> ProbeResult:
    """Score every readable grub.cfg for size and menu entries."""
    issues = 0
    notes = []
    readable = 0
    for path in grub_config_candidates(root):
        if not path.is_file():
            continue
        try:
            content = path.read_bytes()
        except OSError:
            continue
        readable += 1
        if len(content) < MIN_CONFIG_SIZE:
            issues += 1
            notes.append(f"{path} suspiciously small ({len(content)} bytes)")
        if b"menuentry" not in content:
            issues += 1
            notes.append(f"{path} has no menuentry")
    if readable == 0:
        issues += 1
        notes.append("no readable GRUB configuration found")
    for note in notes:
        log.warning(note)
    return ProbeResult("grub_config", issues, "; ".join(notes) or f"{readable} config(s) valid")


def _check_bios_install(profile: SystemProfile) -> ProbeResult:
    disk = profile.target_disk
    if not disk:
        return ProbeResult("bootloader_install", 0, "target disk unknown, boot sector not checked")
    try:
        installed = tools.has_grub_signature(disk)
    except OSError as error:
        raise ProbeInconclusive("bootloader_install", f"cannot read {disk}: {error}") from error
    if not installed:
        return ProbeResult("bootloader_install", 1, f"no GRUB signature in boot sector of {disk}")
    return ProbeResult("bootloader_install", 0, f"GRUB present on {disk}")


def _check_uefi_install(root: Path) -> ProbeResult:
    entries = tools.efi_boot_entries()
    if entries is None:
        return ProbeResult(
            "bootloader_install", 0, "efibootmgr not available, UEFI setup not verified"
        )
    issues = 0
    notes = []
    if not any(EFI_ENTRY_PATTERN.search(entry.label) for entry in entries):
        issues += 1
        notes.append("no GRUB entry in UEFI boot manager")
    efi_dir = root / "boot/efi/EFI"
    if efi_dir.is_dir() and not any(efi_dir.rglob("grub*.efi")):
        issues += 1
        notes.append(f"no grub*.efi under {efi_dir}")
    return ProbeResult("bootloader_install", issues, "; ".join(notes) or "UEFI entry and image present")


def check_bootloader_install(profile: SystemProfile, root: Path) -> ProbeResult:
    if profile.is_uefi:
        return _check_uefi_install(root)
    return _check_bios_install(profile)


def _has_initrd(boot_dir: Path, version: str) -> bool:
    names = (f"initrd.img-{version}", f"initramfs-{version}.img")
    return any(any(boot_dir.rglob(name)) for name in names)


def check_boot_environment(profile: SystemProfile, root: Path) -> ProbeResult:
    """Every kernel needs an initrd, and /boot needs room for new images."""
    boot_dir = root / "boot"
    issues = 0
    notes = []
    for kernel in profile.kernels:
        if not _has_initrd(boot_dir, kernel.version):
            issues += 1
            notes.append(f"no initrd for kernel {kernel.version}")
    if boot_dir.is_dir():
        free = psutil.disk_usage(str(boot_dir)).free
        if free < MIN_BOOT_FREE_BYTES:
            issues += 1
            notes.append(f"low space on /boot: {free // 1024}KB available")
    return ProbeResult("boot_environment", issues, "; ".join(notes))


def check_previous_failures(profile: SystemProfile, root: Path) -> ProbeResult:
    count = tools.previous_boot_failure_count()
    if count is None:
        return ProbeResult("previous_failures", 0, "journalctl not available")
    if count > 0:
        return ProbeResult(
            "previous_failures", 1, f"{count} boot-related errors in previous session"
        )
    return ProbeResult("previous_failures", 0)


PROBES: dict[str, Probe] = {
    "grub_binaries": check_grub_binaries,
    "grub_config": check_grub_config,
    "bootloader_install": check_bootloader_install,
    "boot_environment": check_boot_environment,
    "previous_failures": check_previous_failures,
}

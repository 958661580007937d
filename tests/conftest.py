"""
Pytest configuration and shared fixtures for grub-auto-recovery tests.

This module provides common fixtures and utilities used across all test modules.
No test touches real mounts, block devices or the host's /boot.
"""

from pathlib import Path
from typing import List
from unittest.mock import Mock

import pytest

from grub_recovery.config.settings import RecoveryConfig
from grub_recovery.domain.models import (
    BootMode,
    KernelImage,
    PartitionRef,
    SnapshotCapability,
    SystemProfile,
)


VALID_GRUB_CFG = (
    "set default=0\n"
    "set timeout=5\n"
    "menuentry 'Ubuntu' --class ubuntu --class gnu-linux {\n"
    "    linux /vmlinuz-6.8.0-45-generic root=/dev/sda2 ro quiet splash\n"
    "    initrd /initrd.img-6.8.0-45-generic\n"
    "}\n"
)


# ==============================================================================
# System Profile Fixtures
# ==============================================================================


@pytest.fixture
def bios_profile() -> SystemProfile:
    """
    Fixture providing a BIOS Ubuntu profile with a separate /boot.

    Returns:
        SystemProfile for /dev/sda with root on sda2 and boot on sda1.
    """
    return SystemProfile(
        boot_mode=BootMode.BIOS,
        architecture="x86_64",
        grub_target="i386-pc",
        distro_id="ubuntu",
        distro_like=("debian",),
        distro_version="24.04",
        pretty_name="Ubuntu 24.04 LTS",
        root=PartitionRef("/dev/sda2", "/", "ext4"),
        boot=PartitionRef("/dev/sda1", "/boot", "ext4"),
        root_fstype="ext4",
        kernels=(KernelImage("/boot/vmlinuz-6.8.0-45-generic", "6.8.0-45-generic"),),
        running_kernel="6.8.0-45-generic",
        target_disk="/dev/sda",
    )


@pytest.fixture
def uefi_profile() -> SystemProfile:
    """
    Fixture providing a UEFI Fedora profile on btrfs.

    Returns:
        SystemProfile for an NVMe disk with an EFI System partition.
    """
    return SystemProfile(
        boot_mode=BootMode.UEFI,
        architecture="x86_64",
        grub_target="x86_64-efi",
        distro_id="fedora",
        distro_version="40",
        pretty_name="Fedora Linux 40",
        root=PartitionRef("/dev/nvme0n1p3", "/", "btrfs"),
        boot=PartitionRef("/dev/nvme0n1p2", "/boot", "ext4"),
        efi=PartitionRef("/dev/nvme0n1p1", "/boot/efi", "vfat"),
        root_fstype="btrfs",
        snapshot_capability=SnapshotCapability.BTRFS,
        running_kernel="6.10.6-200.fc40.x86_64",
        target_disk="/dev/nvme0n1",
        secure_boot=False,
    )


@pytest.fixture
def zfs_profile(bios_profile) -> SystemProfile:
    """Fixture providing a BIOS profile whose root is a ZFS dataset."""
    from dataclasses import replace

    return replace(
        bios_profile,
        root=PartitionRef("rpool/ROOT/ubuntu", "/", "zfs"),
        root_fstype="zfs",
        snapshot_capability=SnapshotCapability.ZFS,
    )


# ==============================================================================
# File System Fixtures
# ==============================================================================


@pytest.fixture
def fake_host(tmp_path) -> Path:
    """
    Fixture providing a healthy host tree in a temporary directory.

    Returns:
        Path to a directory laid out like /, with /boot and /etc populated.
    """
    host = tmp_path / "host"
    (host / "boot" / "grub").mkdir(parents=True)
    (host / "boot" / "grub" / "grub.cfg").write_text(VALID_GRUB_CFG)
    (host / "boot" / "vmlinuz-6.8.0-45-generic").write_bytes(b"kernel")
    (host / "boot" / "initrd.img-6.8.0-45-generic").write_bytes(b"initrd")
    (host / "etc" / "default").mkdir(parents=True)
    (host / "etc" / "default" / "grub").write_text('GRUB_DEFAULT=0\nGRUB_TIMEOUT=5\n')
    (host / "etc" / "grub.d").mkdir()
    (host / "etc" / "grub.d" / "10_linux").write_text("#!/bin/sh\n")
    (host / "etc" / "os-release").write_text(
        'NAME="Ubuntu"\nID=ubuntu\nID_LIKE=debian\nVERSION_ID="24.04"\n'
        'PRETTY_NAME="Ubuntu 24.04 LTS"\n'
    )
    (host / "etc" / "resolv.conf").write_text("nameserver 1.1.1.1\n")
    return host


@pytest.fixture
def recovery_config(tmp_path) -> RecoveryConfig:
    """
    Fixture providing a config whose directories all live under tmp_path.

    Returns:
        RecoveryConfig with backup, state and mount directories in tmp_path.
    """
    return RecoveryConfig(
        backup_dir=tmp_path / "backups",
        state_dir=tmp_path / "state",
        mount_point=tmp_path / "mnt" / "recovery_chroot",
        operation_timeout=5,
        probe_timeout=2,
    )


# ==============================================================================
# Mount Table Fixtures
# ==============================================================================


@pytest.fixture
def fake_mount_table(mocker) -> List[str]:
    """
    Fixture replacing the live mount table with a mutable list.

    Mount helpers patched by tests append to and remove from this list;
    ``mounts_under`` reads it instead of psutil.

    Returns:
        List of active mountpoints.
    """
    table: List[str] = ["/", "/boot", "/dev", "/proc", "/sys", "/run"]
    mocker.patch(
        "grub_recovery.system.mount.active_mountpoints", side_effect=lambda: list(table)
    )
    return table


@pytest.fixture
def fake_mounts(mocker, fake_mount_table):
    """
    Fixture patching the sandbox's mount primitives to edit the fake table.

    Returns:
        Mock namespace with the patched ``mount_device``, ``remount_rw``,
        ``bind_mount`` and ``unmount`` plus the shared ``calls`` list.
    """
    calls: List[tuple] = []

    def mount_device(device, target, **kwargs):
        calls.append(("mount", device, str(target), kwargs.get("read_only", False)))
        fake_mount_table.append(str(target))

    def remount_rw(target, **kwargs):
        calls.append(("remount", str(target)))

    def bind_mount(source, target, **kwargs):
        calls.append(("bind", str(source), str(target)))
        fake_mount_table.append(str(target))
        return "--bind"

    def unmount(target, **kwargs):
        flags = tuple(name for name in ("recursive", "lazy", "force") if kwargs.get(name))
        calls.append(("umount", str(target), flags))
        if str(target) in fake_mount_table:
            fake_mount_table.remove(str(target))
        return True

    namespace = Mock()
    namespace.calls = calls
    namespace.table = fake_mount_table
    namespace.mount_device = mocker.patch(
        "grub_recovery.sandbox.session.mount_device", side_effect=mount_device
    )
    namespace.remount_rw = mocker.patch(
        "grub_recovery.sandbox.session.remount_rw", side_effect=remount_rw
    )
    namespace.bind_mount = mocker.patch(
        "grub_recovery.sandbox.session.bind_mount", side_effect=bind_mount
    )
    namespace.unmount = mocker.patch(
        "grub_recovery.sandbox.session.unmount", side_effect=unmount
    )
    return namespace


# ==============================================================================
# Subprocess Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


@pytest.fixture
def capture_subprocess_calls(mocker) -> List[List]:
    """
    Fixture that captures all subprocess.run calls for inspection.

    Returns:
        List that will contain all subprocess command arguments.
    """
    calls = []

    def track_call(cmd, **kwargs):
        calls.append(cmd)
        result = Mock()
        result.returncode = 0
        result.stdout = ""
        result.stderr = ""
        return result

    mocker.patch("subprocess.run", side_effect=track_call)
    return calls


# ==============================================================================
# Global State
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_sandbox_state():
    """
    Auto-use fixture that clears the process-wide sandbox session.

    Keeps a failed sandbox test from making later ones report busy.
    """
    yield
    from grub_recovery.sandbox import session

    active = session._active_session
    if active is not None:
        active._discharge_guard()
    session._active_session = None

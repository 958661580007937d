"""Tests for system/profile.py - host profile resolution."""

from unittest.mock import patch

import pytest

from grub_recovery.domain.models import BootMode, SnapshotCapability
from grub_recovery.exceptions import DetectionError
from grub_recovery.system import profile as profile_module
from grub_recovery.system.profile import (
    describe_profile,
    grub_target_for,
    list_kernels,
    parse_os_release,
    resolve_profile,
    version_key,
)


class TestGrubTarget:
    @pytest.mark.parametrize(
        "mode,arch,expected",
        [
            (BootMode.BIOS, "x86_64", "i386-pc"),
            (BootMode.UEFI, "x86_64", "x86_64-efi"),
            (BootMode.UEFI, "aarch64", "arm64-efi"),
            (BootMode.UEFI, "i686", "i386-efi"),
            (BootMode.UEFI, "riscv64", "riscv64-efi"),
        ],
    )
    def test_targets(self, mode, arch, expected):
        assert grub_target_for(mode, arch) == expected


class TestOsRelease:
    def test_parse_strips_quotes_and_comments(self):
        values = parse_os_release('# comment\nID=arch\nPRETTY_NAME="Arch Linux"\n\nBROKEN\n')
        assert values == {"ID": "arch", "PRETTY_NAME": "Arch Linux"}


class TestKernels:
    def test_version_key_is_natural(self):
        assert version_key("5.10.0") > version_key("5.9.0")

    def test_list_kernels_sorted(self, tmp_path):
        boot = tmp_path / "boot"
        boot.mkdir()
        for version in ("5.10.0-1", "5.9.0-3", "6.1.0-2"):
            (boot / f"vmlinuz-{version}").write_bytes(b"k")
        (boot / "vmlinuz-broken").mkdir()

        kernels = list_kernels(tmp_path)

        assert [kernel.version for kernel in kernels] == ["5.9.0-3", "5.10.0-1", "6.1.0-2"]

    def test_no_boot_directory(self, tmp_path):
        assert list_kernels(tmp_path) == ()


def _findmnt(table):
    def fake(target, column, **kwargs):
        return table.get((target, column))

    return fake


class TestResolveProfile:
    @patch("platform.release", return_value="6.8.0-45-generic")
    @patch("platform.machine", return_value="x86_64")
    @patch.object(profile_module.tools, "parent_disk", return_value="/dev/sda")
    @patch.object(profile_module.tools, "findmnt_value")
    def test_bios_with_separate_boot(self, mock_findmnt, mock_disk, mock_machine, mock_release, fake_host):
        mock_findmnt.side_effect = _findmnt(
            {
                ("/", "SOURCE"): "/dev/sda2",
                ("/", "FSTYPE"): "ext4",
                ("/boot", "SOURCE"): "/dev/sda1",
                ("/boot", "FSTYPE"): "ext4",
            }
        )

        profile = resolve_profile(root=fake_host)

        assert profile.boot_mode == BootMode.BIOS
        assert profile.grub_target == "i386-pc"
        assert profile.distro_id == "ubuntu"
        assert profile.distro_like == ("debian",)
        assert profile.root.device == "/dev/sda2"
        assert profile.boot.device == "/dev/sda1"
        assert profile.has_separate_boot is True
        assert profile.efi is None
        assert profile.target_disk == "/dev/sda"
        assert profile.secure_boot is None
        assert profile.snapshot_capability == SnapshotCapability.NONE
        assert [kernel.version for kernel in profile.kernels] == ["6.8.0-45-generic"]
        assert profile.host_root == str(fake_host)

    @patch("platform.machine", return_value="x86_64")
    @patch.object(profile_module.tools, "secure_boot_enabled", return_value=True)
    @patch.object(profile_module.tools, "find_efi_partition", return_value="/dev/nvme0n1p1")
    @patch.object(profile_module.tools, "parent_disk", return_value="/dev/nvme0n1")
    @patch.object(profile_module.tools, "findmnt_value")
    def test_uefi_btrfs_without_boot_mount(
        self, mock_findmnt, mock_disk, mock_efi, mock_secure, mock_machine, fake_host
    ):
        (fake_host / "sys" / "firmware" / "efi").mkdir(parents=True)
        mock_findmnt.side_effect = _findmnt(
            {("/", "SOURCE"): "/dev/nvme0n1p3", ("/", "FSTYPE"): "btrfs"}
        )

        profile = resolve_profile(root=fake_host, custom_grub_target="x86_64-efi-signed")

        assert profile.boot_mode == BootMode.UEFI
        assert profile.grub_target == "x86_64-efi-signed"
        assert profile.boot.device == "/dev/nvme0n1p3"
        assert profile.has_separate_boot is False
        assert profile.efi.device == "/dev/nvme0n1p1"
        assert profile.secure_boot is True
        assert profile.snapshot_capability == SnapshotCapability.BTRFS

    @patch.object(profile_module.tools, "parent_disk")
    @patch.object(profile_module.tools, "findmnt_value")
    def test_custom_target_disk(self, mock_findmnt, mock_disk, fake_host):
        mock_findmnt.side_effect = _findmnt({("/", "SOURCE"): "/dev/sda2"})

        profile = resolve_profile(root=fake_host, custom_target_disk="/dev/sdb")

        assert profile.target_disk == "/dev/sdb"
        mock_disk.assert_not_called()

    @patch.object(profile_module.tools, "parent_disk", side_effect=TimeoutError("lsblk timed out"))
    @patch.object(profile_module.tools, "findmnt_value")
    def test_target_disk_timeout_degrades(self, mock_findmnt, mock_disk, fake_host):
        mock_findmnt.side_effect = _findmnt({("/", "SOURCE"): "/dev/sda2", ("/", "FSTYPE"): "ext4"})

        profile = resolve_profile(root=fake_host)

        assert profile.target_disk is None
        assert profile.root.device == "/dev/sda2"

    @patch.object(profile_module.tools, "parent_disk", return_value="/dev/sda")
    @patch.object(profile_module.tools, "findmnt_value")
    def test_boot_lookup_timeout_falls_back_to_root(self, mock_findmnt, mock_disk, fake_host):
        def fake(target, column, **kwargs):
            if target == "/boot":
                raise TimeoutError("findmnt timed out")
            return {"SOURCE": "/dev/sda2", "FSTYPE": "ext4"}[column]

        mock_findmnt.side_effect = fake

        profile = resolve_profile(root=fake_host)

        assert profile.boot.device == "/dev/sda2"
        assert profile.has_separate_boot is False

    @patch.object(profile_module.tools, "secure_boot_enabled", return_value=None)
    @patch.object(profile_module.tools, "find_efi_partition", side_effect=TimeoutError("lsblk timed out"))
    @patch.object(profile_module.tools, "parent_disk", return_value="/dev/nvme0n1")
    @patch.object(profile_module.tools, "findmnt_value")
    def test_efi_lookup_timeout_leaves_efi_unknown(
        self, mock_findmnt, mock_disk, mock_efi, mock_secure, fake_host
    ):
        (fake_host / "sys" / "firmware" / "efi").mkdir(parents=True)

        def fake(target, column, **kwargs):
            if target == "/boot/efi":
                raise TimeoutError("findmnt timed out")
            return {("/", "SOURCE"): "/dev/nvme0n1p3", ("/", "FSTYPE"): "btrfs"}.get((target, column))

        mock_findmnt.side_effect = fake

        profile = resolve_profile(root=fake_host)

        assert profile.boot_mode == BootMode.UEFI
        assert profile.efi is None
        mock_efi.assert_called_once_with()

    @patch.object(profile_module.tools, "findmnt_value", return_value=None)
    def test_missing_root_raises(self, mock_findmnt, fake_host):
        with pytest.raises(DetectionError, match="root partition"):
            resolve_profile(root=fake_host)

    @patch.object(profile_module.tools, "findmnt_value", side_effect=TimeoutError("findmnt"))
    def test_findmnt_timeout_raises(self, mock_findmnt, fake_host):
        with pytest.raises(DetectionError, match="timed out"):
            resolve_profile(root=fake_host)


class TestDescribeProfile:
    def test_bios_lines(self, bios_profile):
        lines = describe_profile(bios_profile)
        assert any("i386-pc" in line for line in lines)
        assert not any("Secure Boot" in line for line in lines)

    def test_uefi_lines(self, uefi_profile):
        lines = describe_profile(uefi_profile)
        assert "Secure Boot:  disabled" in lines
        assert "EFI:          /dev/nvme0n1p1" in lines

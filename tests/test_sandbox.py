"""Tests for sandbox/session.py - chroot mount lifecycle.

All mount primitives are replaced by the ``fake_mounts`` fixture, which keeps
a fake mount table so teardown verification can be exercised end to end.
"""

import os
import signal
from dataclasses import replace
from unittest.mock import patch

import pytest

from grub_recovery.domain.models import PartitionRef
from grub_recovery.exceptions import MountError, MountLeakError, SandboxBusyError, SandboxError
from grub_recovery.sandbox import session as session_module
from grub_recovery.sandbox.session import (
    MountRecord,
    MountStack,
    active_session,
    release_mount,
    setup_sandbox,
    teardown_sandbox,
)
from grub_recovery.system.commands import CommandResult


@pytest.fixture
def mount_point(tmp_path):
    return tmp_path / "mnt" / "recovery_chroot"


def _under(mount_point, *parts):
    return str(mount_point.joinpath(*parts))


class TestMountStack:
    def test_lifo(self):
        stack = MountStack()
        stack.push(MountRecord("/a", "/dev/sda2", "root"))
        stack.push(MountRecord("/a/proc", "/proc", "bind"))

        assert stack.targets() == ["/a", "/a/proc"]
        assert stack.pop().target == "/a/proc"
        assert len(stack) == 1


class TestReleaseMount:
    def test_escalates_to_force(self, mocker):
        unmount = mocker.patch.object(session_module, "unmount", side_effect=[False, False, True])

        assert release_mount("/mnt/r/proc") is True

        flags = [call.kwargs for call in unmount.call_args_list]
        assert flags == [{}, {"lazy": True}, {"force": True}]

    def test_recursive_first(self, mocker):
        unmount = mocker.patch.object(session_module, "unmount", return_value=True)

        assert release_mount("/mnt/r/dev", recursive=True) is True
        unmount.assert_called_once_with("/mnt/r/dev", recursive=True)

    def test_all_attempts_fail(self, mocker):
        mocker.patch.object(session_module, "unmount", return_value=False)
        assert release_mount("/mnt/r/sys") is False


class TestSetup:
    def test_mount_order_bios(self, fake_mounts, bios_profile, mount_point):
        session = setup_sandbox(bios_profile, mount_point)

        assert fake_mounts.calls == [
            ("mount", "/dev/sda2", str(mount_point), True),
            ("remount", str(mount_point)),
            ("mount", "/dev/sda1", _under(mount_point, "boot"), False),
            ("bind", "/dev", _under(mount_point, "dev")),
            ("bind", "/dev/pts", _under(mount_point, "dev", "pts")),
            ("bind", "/proc", _under(mount_point, "proc")),
            ("bind", "/sys", _under(mount_point, "sys")),
            ("bind", "/run", _under(mount_point, "run")),
        ]
        assert active_session() is session
        teardown_sandbox(session)

    def test_uefi_mounts_efi_after_boot(self, fake_mounts, uefi_profile, mount_point):
        session = setup_sandbox(uefi_profile, mount_point)

        targets = session.stack.targets()
        assert targets[:3] == [
            str(mount_point),
            _under(mount_point, "boot"),
            _under(mount_point, "boot", "efi"),
        ]
        teardown_sandbox(session)

    def test_shared_boot_is_not_mounted_twice(self, fake_mounts, bios_profile, mount_point):
        profile = replace(bios_profile, boot=PartitionRef("/dev/sda2", "/boot"))

        with setup_sandbox(profile, mount_point):
            pass

        assert [call for call in fake_mounts.calls if call[0] == "mount"] == [
            ("mount", "/dev/sda2", str(mount_point), True)
        ]

    def test_copies_resolv_conf(self, fake_mounts, bios_profile, fake_host, mount_point):
        (mount_point / "etc").mkdir(parents=True)
        profile = replace(bios_profile, host_root=str(fake_host))

        session = setup_sandbox(profile, mount_point)

        assert (mount_point / "etc" / "resolv.conf").read_text() == "nameserver 1.1.1.1\n"
        teardown_sandbox(session)


class TestFailureUnwind:
    def test_failed_bind_unwinds_everything(self, fake_mounts, bios_profile, mount_point):
        """A failing /proc bind releases the four earlier mounts in reverse."""
        original = fake_mounts.bind_mount.side_effect

        def failing_bind(source, target, **kwargs):
            if source == "/proc":
                raise MountError(str(target), source, "permission denied")
            return original(source, target, **kwargs)

        fake_mounts.bind_mount.side_effect = failing_bind

        with pytest.raises(MountError):
            setup_sandbox(bios_profile, mount_point)

        unmounted = [call[1] for call in fake_mounts.calls if call[0] == "umount"]
        assert unmounted == [
            _under(mount_point, "dev", "pts"),
            _under(mount_point, "dev"),
            _under(mount_point, "boot"),
            str(mount_point),
        ]
        assert session_module.mounts_under(mount_point) == []
        assert active_session() is None

    def test_failed_efi_mount_releases_boot_then_root(self, fake_mounts, uefi_profile, mount_point):
        """Root and boot are up when the EFI mount fails; both come down in reverse."""
        original = fake_mounts.mount_device.side_effect

        def failing_mount(device, target, **kwargs):
            if str(target).endswith("boot/efi"):
                raise MountError(str(target), device, "unknown filesystem type 'vfat'")
            return original(device, target, **kwargs)

        fake_mounts.mount_device.side_effect = failing_mount

        with pytest.raises(MountError, match="vfat"):
            setup_sandbox(uefi_profile, mount_point)

        unmounted = [call[1] for call in fake_mounts.calls if call[0] == "umount"]
        assert unmounted == [_under(mount_point, "boot"), str(mount_point)]
        assert session_module.mounts_under(mount_point) == []
        assert active_session() is None

    def test_leak_during_unwind_is_reported(self, fake_mounts, bios_profile, mount_point):
        stuck = str(mount_point)
        fake_mounts.unmount.side_effect = lambda target, **kwargs: str(target) != stuck and (
            fake_mounts.table.remove(str(target)) or True
        )
        fake_mounts.remount_rw.side_effect = MountError(str(mount_point), reason="ro media")

        with pytest.raises(MountLeakError) as exc_info:
            setup_sandbox(bios_profile, mount_point)

        assert isinstance(exc_info.value.__cause__, MountError)
        assert active_session() is None

    def test_interrupt_during_setup_unwinds(self, fake_mounts, bios_profile, mount_point):
        fake_mounts.bind_mount.side_effect = KeyboardInterrupt()

        with pytest.raises(KeyboardInterrupt):
            setup_sandbox(bios_profile, mount_point)

        assert session_module.mounts_under(mount_point) == []


class TestTeardown:
    def test_reverse_order_and_idempotent(self, fake_mounts, bios_profile, mount_point):
        session = setup_sandbox(bios_profile, mount_point)
        mounted = session.stack.targets()
        fake_mounts.calls.clear()

        session.teardown()
        session.teardown()

        assert [call[1] for call in fake_mounts.calls] == list(reversed(mounted))
        assert session_module.mounts_under(mount_point) == []
        assert not mount_point.exists()

    def test_rbind_released_recursively(self, fake_mounts, bios_profile, mount_point):
        fake_mounts.bind_mount.side_effect = lambda source, target, **kwargs: (
            fake_mounts.table.append(str(target)) or "--rbind"
        )
        session = setup_sandbox(bios_profile, mount_point)
        fake_mounts.calls.clear()

        session.teardown()

        assert fake_mounts.calls[0] == ("umount", _under(mount_point, "run"), ("recursive",))

    def test_leak_raises(self, fake_mounts, bios_profile, mount_point):
        session = setup_sandbox(bios_profile, mount_point)
        fake_mounts.table.append(_under(mount_point, "proc", "sys", "fs", "binfmt_misc"))

        with pytest.raises(MountLeakError) as exc_info:
            session.teardown()

        assert exc_info.value.mountpoints == [
            _under(mount_point, "proc", "sys", "fs", "binfmt_misc")
        ]
        assert active_session() is None

    def test_run_after_teardown(self, fake_mounts, bios_profile, mount_point):
        session = setup_sandbox(bios_profile, mount_point)
        session.teardown()

        with pytest.raises(SandboxError, match="torn down"):
            session.run(["update-grub"])

    def test_context_manager_releases_on_error(self, fake_mounts, bios_profile, mount_point):
        with pytest.raises(RuntimeError):
            with setup_sandbox(bios_profile, mount_point):
                raise RuntimeError("repair crashed")

        assert session_module.mounts_under(mount_point) == []


class TestRun:
    def test_wraps_in_chroot(self, fake_mounts, bios_profile, mount_point):
        with patch.object(
            session_module, "run_command", return_value=CommandResult(("chroot",), 0)
        ) as mock_run:
            with setup_sandbox(bios_profile, mount_point) as session:
                session.run(["update-grub"], timeout=30)

        mock_run.assert_called_once_with(
            ["chroot", str(mount_point), "update-grub"], timeout=30, env=None, log_output=True
        )


class TestSessionExclusivity:
    def test_second_session_is_busy(self, fake_mounts, bios_profile, mount_point, tmp_path):
        first = setup_sandbox(bios_profile, mount_point)

        with pytest.raises(SandboxBusyError):
            setup_sandbox(bios_profile, tmp_path / "other")

        teardown_sandbox(first)
        second = setup_sandbox(bios_profile, tmp_path / "other")
        teardown_sandbox(second)

    def test_stale_mounts_cleared_first(self, fake_mounts, bios_profile, mount_point):
        fake_mounts.table.extend([str(mount_point), _under(mount_point, "proc")])

        session = setup_sandbox(bios_profile, mount_point)

        assert fake_mounts.calls[:2] == [
            ("umount", _under(mount_point, "proc"), ("recursive",)),
            ("umount", str(mount_point), ("recursive",)),
        ]
        teardown_sandbox(session)


class TestReleaseGuard:
    def test_signal_handlers_installed_and_restored(self, fake_mounts, bios_profile, mount_point):
        previous = signal.getsignal(signal.SIGTERM)

        session = setup_sandbox(bios_profile, mount_point)
        assert signal.getsignal(signal.SIGTERM) == session._handle_signal

        session.teardown()
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_signal_becomes_system_exit(self, fake_mounts, bios_profile, mount_point):
        session = setup_sandbox(bios_profile, mount_point)
        try:
            with pytest.raises(SystemExit) as exc_info:
                session._handle_signal(signal.SIGTERM, None)
            assert exc_info.value.code == 128 + signal.SIGTERM
        finally:
            session.teardown()

    def test_exit_hook_tears_down(self, fake_mounts, bios_profile, mount_point):
        session = setup_sandbox(bios_profile, mount_point)

        session._teardown_at_exit()

        assert session_module.mounts_under(mount_point) == []
        assert active_session() is None

    def test_signal_during_teardown_is_deferred(self, fake_mounts, bios_profile, mount_point):
        previous = signal.getsignal(signal.SIGINT)
        session = setup_sandbox(bios_profile, mount_point)
        original = fake_mounts.unmount.side_effect
        interrupted = []

        def interrupting_unmount(target, **kwargs):
            if not interrupted:
                interrupted.append(str(target))
                os.kill(os.getpid(), signal.SIGINT)
            return original(target, **kwargs)

        fake_mounts.unmount.side_effect = interrupting_unmount

        with pytest.raises(SystemExit) as exc_info:
            session.teardown()

        assert exc_info.value.code == 128 + signal.SIGINT
        assert interrupted == [_under(mount_point, "run")]
        assert session_module.mounts_under(mount_point) == []
        assert len(session.stack) == 0
        assert signal.getsignal(signal.SIGINT) == previous
        assert active_session() is None

    def test_failed_release_keeps_guard_for_retry(self, fake_mounts, bios_profile, mount_point):
        session = setup_sandbox(bios_profile, mount_point)
        original = fake_mounts.unmount.side_effect
        fake_mounts.unmount.side_effect = RuntimeError("umount crashed")

        with pytest.raises(RuntimeError):
            session.teardown()

        assert session.stack.targets()[-1] == _under(mount_point, "run")
        assert signal.getsignal(signal.SIGINT) == session._handle_signal
        assert active_session() is session

        fake_mounts.unmount.side_effect = original
        session._teardown_at_exit()

        assert session_module.mounts_under(mount_point) == []
        assert active_session() is None


class TestZfsRoot:
    """Real mount helpers with only the mount commands replaced."""

    @pytest.fixture
    def mount_commands(self, mocker, fake_mount_table):
        return mocker.patch(
            "grub_recovery.system.mount.run_command",
            side_effect=lambda command, **kwargs: CommandResult(tuple(command), 0),
        )

    def test_dataset_mounted_with_zfs_type(self, mount_commands, zfs_profile, mount_point):
        session = setup_sandbox(zfs_profile, mount_point)

        commands = [call.args[0] for call in mount_commands.call_args_list]
        assert commands[:3] == [
            ["mount", "-o", "ro,zfsutil", "-t", "zfs", "rpool/ROOT/ubuntu", str(mount_point)],
            ["mount", "-o", "remount,rw", str(mount_point)],
            ["mount", "/dev/sda1", _under(mount_point, "boot")],
        ]
        teardown_sandbox(session)
        assert active_session() is None

    def test_invalid_source_is_a_mount_error(self, mount_commands, bios_profile, mount_point):
        profile = replace(bios_profile, root=PartitionRef("rpool/ROOT/ubuntu", "/", "ext4"))

        with pytest.raises(MountError, match="invalid device path"):
            setup_sandbox(profile, mount_point)

        mount_commands.assert_not_called()
        assert active_session() is None

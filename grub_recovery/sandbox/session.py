"""Chroot sandbox lifecycle: ordered mounts and guaranteed teardown.

A session mounts the host's root, boot and EFI partitions plus the kernel
pseudo filesystems under one mount point, runs repair commands inside it with
``chroot`` and then unmounts everything in strict reverse order.

Release is guaranteed three ways:
    - ``with`` blocks and explicit ``teardown()`` calls
    - SIGINT/SIGTERM/SIGHUP handlers that raise SystemExit so ``finally``
      clauses run (installed only from the main thread)
    - an ``atexit`` hook for interpreter shutdown
The handlers and hook are installed at the first mount and removed once
teardown has emptied the mount stack. A guarded signal that arrives during
teardown is held until every mount has been released.

Only one session may be active per process.

Usage:
    with setup_sandbox(profile, Path("/mnt/recovery_chroot")) as session:
        session.run(["grub-install", "--recheck", "/dev/sda"], timeout=600)
"""

from __future__ import annotations

import atexit
import shutil
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Mapping, Optional, Sequence

from grub_recovery.domain.models import PartitionRef, SystemProfile
from grub_recovery.exceptions import (
    MountLeakError,
    SandboxBusyError,
    SandboxError,
)
from grub_recovery.logging import LoggerFactory
from grub_recovery.system.commands import CommandResult, run_command
from grub_recovery.system.mount import (
    bind_mount,
    mount_device,
    mounts_under,
    remount_rw,
    unmount,
)


log = LoggerFactory.for_sandbox()

BIND_DIRS = ("/dev", "/dev/pts", "/proc", "/sys", "/run")
GUARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

# Lock for the process-wide active session
_lock = threading.Lock()
_active_session: Optional[SandboxSession] = None


@dataclass(frozen=True)
class MountRecord:
    """One mount made by a session."""

    target: str
    source: str
    kind: str  # "root", "boot", "efi" or "bind"
    recursive: bool = False


class MountStack:
    """Mounts in the order they were made; released in reverse."""

    def __init__(self) -> None:
        self._records: list[MountRecord] = []

    def push(self, record: MountRecord) -> None:
        self._records.append(record)

    def peek(self) -> MountRecord:
        return self._records[-1]

    def pop(self) -> MountRecord:
        return self._records.pop()

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[MountRecord]:
        return iter(list(self._records))

    def targets(self) -> list[str]:
        return [record.target for record in self._records]


def release_mount(target: str, *, recursive: bool = False) -> bool:
    """Unmount with escalation: plain, then lazy, then forced."""
    if recursive and unmount(target, recursive=True):
        return True
    if unmount(target):
        return True
    log.warning(f"umount {target} failed, retrying lazily")
    if unmount(target, lazy=True):
        return True
    log.warning(f"Lazy umount of {target} failed, forcing")
    return unmount(target, force=True)


def clear_stale_session(mount_point: Path) -> None:
    """Unmount anything a previous, crashed run left under ``mount_point``.

    Raises:
        MountLeakError: If stale mounts survive escalation
    """
    stale = mounts_under(mount_point)
    if not stale:
        return
    log.warning(f"Clearing {len(stale)} stale mount(s) under {mount_point}")
    for target in stale:
        release_mount(target, recursive=True)
    leftovers = mounts_under(mount_point)
    if leftovers:
        raise MountLeakError(str(mount_point), leftovers)


def _mount_type(partition: PartitionRef) -> Optional[str]:
    # datasets need an explicit type; block devices are probed by mount
    return "zfs" if partition.fstype == "zfs" else None


def active_session() -> Optional[SandboxSession]:
    with _lock:
        return _active_session


class SandboxSession:
    """A mounted chroot jail built from a SystemProfile."""

    def __init__(self, profile: SystemProfile, mount_point: Path):
        self.profile = profile
        self.root = Path(mount_point)
        self.stack = MountStack()
        self._torn_down = False
        self._guard_installed = False
        self._previous_handlers: dict[int, object] = {}
        self._deferred_signal: Optional[int] = None

    # ------------------------------------------------------------------
    # Release guard
    # ------------------------------------------------------------------

    def _install_guard(self) -> None:
        if self._guard_installed:
            return
        self._guard_installed = True
        atexit.register(self._teardown_at_exit)
        if threading.current_thread() is not threading.main_thread():
            log.debug("Not on the main thread, signal handlers not installed")
            return
        for signum in GUARDED_SIGNALS:
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)

    def _set_guard_handler(self, handler) -> None:
        # signal.signal() only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in self._previous_handlers:
            signal.signal(signum, handler)

    def _discharge_guard(self) -> None:
        if not self._guard_installed:
            return
        self._guard_installed = False
        atexit.unregister(self._teardown_at_exit)
        if threading.current_thread() is threading.main_thread():
            for signum, handler in self._previous_handlers.items():
                signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        log.error(f"Received {name}, unwinding sandbox at {self.root}")
        raise SystemExit(128 + signum)

    def _defer_signal(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        log.warning(f"Received {name} during teardown, finishing unmounts first")
        if self._deferred_signal is None:
            self._deferred_signal = signum

    def _raise_deferred_signal(self) -> None:
        signum, self._deferred_signal = self._deferred_signal, None
        if signum is None:
            return
        log.error(f"Sandbox released, exiting on deferred {signal.Signals(signum).name}")
        raise SystemExit(128 + signum)

    def _teardown_at_exit(self) -> None:
        if self._torn_down:
            return
        log.error(f"Interpreter exiting with sandbox still mounted at {self.root}")
        try:
            self.teardown()
        except SandboxError as error:
            log.critical(str(error))

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _push(self, record: MountRecord) -> None:
        self.stack.push(record)
        self._install_guard()

    def _path(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")

    def setup(self) -> None:
        """Mount everything in dependency order.

        Raises:
            MountError: If any mandatory mount fails
        """
        profile = self.profile
        self.root.mkdir(parents=True, exist_ok=True)

        mount_device(
            profile.root.device, self.root, read_only=True, fstype=_mount_type(profile.root)
        )
        self._push(MountRecord(str(self.root), profile.root.device, "root"))
        remount_rw(self.root)

        if profile.has_separate_boot:
            target = self._path("/boot")
            mount_device(profile.boot.device, target, fstype=_mount_type(profile.boot))
            self._push(MountRecord(str(target), profile.boot.device, "boot"))

        if profile.is_uefi and profile.efi is not None:
            target = self._path("/boot/efi")
            mount_device(profile.efi.device, target)
            self._push(MountRecord(str(target), profile.efi.device, "efi"))

        for directory in BIND_DIRS:
            target = self._path(directory)
            option = bind_mount(directory, target)
            self._push(
                MountRecord(str(target), directory, "bind", recursive=option == "--rbind")
            )

        self._copy_resolv_conf()
        log.success(f"Chroot environment ready at {self.root} ({len(self.stack)} mounts)")

    def _copy_resolv_conf(self) -> None:
        source = Path(self.profile.host_root) / "etc/resolv.conf"
        try:
            shutil.copyfile(source, self._path("/etc/resolv.conf"))
        except OSError as error:
            log.debug(f"resolv.conf not copied: {error}")

    # ------------------------------------------------------------------
    # Use
    # ------------------------------------------------------------------

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """Run ``argv`` inside the jail."""
        if self._torn_down:
            raise SandboxError(f"Sandbox at {self.root} has been torn down")
        return run_command(
            ["chroot", str(self.root), *argv], timeout=timeout, env=env, log_output=True
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self) -> None:
        """Unmount in strict reverse order and verify nothing is left.

        Safe to call more than once. Guarded signals that arrive while the
        stack is being drained are held back and re-raised as SystemExit once
        teardown has finished. A record leaves the stack only after its
        release was attempted, and the exit hook stays registered until the
        stack is empty.

        Raises:
            MountLeakError: If mounts remain under the session root
            SystemExit: If a guarded signal arrived during teardown
        """
        global _active_session

        if self._torn_down:
            return
        self._set_guard_handler(self._defer_signal)
        try:
            while len(self.stack):
                record = self.stack.peek()
                if release_mount(record.target, recursive=record.recursive):
                    log.debug(f"Unmounted {record.target}")
                else:
                    log.error(f"Could not unmount {record.target}")
                self.stack.pop()
            self._torn_down = True
            leftovers = mounts_under(self.root)
            if leftovers:
                leak = MountLeakError(str(self.root), leftovers)
                if self._deferred_signal is not None:
                    log.critical(str(leak))
                raise leak
            try:
                self.root.rmdir()
            except OSError:
                pass
            log.debug(f"Sandbox at {self.root} released")
        finally:
            if self._torn_down:
                self._discharge_guard()
                with _lock:
                    if _active_session is self:
                        _active_session = None
            else:
                self._set_guard_handler(self._handle_signal)
            self._raise_deferred_signal()

    def __enter__(self) -> SandboxSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()


def setup_sandbox(profile: SystemProfile, mount_point: Path) -> SandboxSession:
    """Build a mounted sandbox for ``profile`` at ``mount_point``.

    Any failure unmounts whatever was already mounted before raising.

    Raises:
        SandboxBusyError: If another session is active in this process
        MountError: If a mount step fails
        SandboxError: If the mount point cannot be prepared
        MountLeakError: If stale or partial mounts cannot be released
    """
    global _active_session

    mount_point = Path(mount_point)
    session = SandboxSession(profile, mount_point)
    with _lock:
        if _active_session is not None:
            raise SandboxBusyError(str(_active_session.root))
        _active_session = session

    try:
        clear_stale_session(mount_point)
        session.setup()
    except BaseException as error:
        log.error(f"Sandbox setup failed: {error}")
        try:
            session.teardown()
        except MountLeakError as leak:
            raise leak from error
        finally:
            with _lock:
                if _active_session is session:
                    _active_session = None
        if isinstance(error, OSError):
            raise SandboxError(f"Sandbox setup at {mount_point} failed: {error}") from error
        raise
    return session


def teardown_sandbox(session: SandboxSession) -> None:
    session.teardown()


__all__ = [
    "MountRecord",
    "MountStack",
    "SandboxSession",
    "clear_stale_session",
    "setup_sandbox",
    "teardown_sandbox",
]

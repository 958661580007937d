"""Mount primitives used by the chroot sandbox.

All calls go through ``run_command`` with argument lists and a hard timeout.
Mounting raises ``MountError`` with the tool's stderr; unmounting never raises
and reports success as a bool so teardown can escalate.

The live mount table is read with psutil rather than by parsing
/proc/self/mounts by hand.

Functions:
    - mount_device(): Mount a block device, optionally read-only
    - remount_rw(): Remount an existing mount read-write
    - bind_mount(): Bind mount a host directory, falling back to rbind
    - unmount(): Unmount with optional lazy/force flags
    - active_mountpoints(): Every mountpoint currently active
    - mounts_under(): Active mountpoints at or below a root, deepest first
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Union

import psutil

from grub_recovery.exceptions import MountError
from grub_recovery.logging import LoggerFactory

from .commands import run_command


log = LoggerFactory.for_sandbox()

MOUNT_TIMEOUT = 30
_INVALID_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")
# pool/dataset[/child...]
_ZFS_DATASET = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]*(/[A-Za-z0-9_.:-]+)*$")

PathLike = Union[str, Path]


def _validate_source(device: str, target: str, fstype: Optional[str]) -> None:
    if not isinstance(device, str) or not device:
        raise MountError(target, source=str(device), reason="invalid device path")
    if any(char in device for char in _INVALID_CHARS):
        raise MountError(target, source=device, reason="device path contains invalid characters")
    if fstype == "zfs":
        if not _ZFS_DATASET.match(device):
            raise MountError(target, source=device, reason="invalid ZFS dataset name")
    elif not device.startswith("/dev/"):
        raise MountError(target, source=device, reason="invalid device path")


def mount_device(
    device: str,
    target: PathLike,
    *,
    read_only: bool = False,
    fstype: Optional[str] = None,
    timeout: float = MOUNT_TIMEOUT,
) -> None:
    """Mount ``device`` on ``target``, creating the directory if needed.

    ``device`` is a /dev path, or a dataset name when ``fstype`` is "zfs".
    Datasets are mounted with ``zfsutil`` so non-legacy mountpoints work.

    Raises:
        MountError: If the source is invalid, or mount fails or times out
    """
    target = str(target)
    _validate_source(device, target, fstype)
    options = ["ro"] if read_only else []
    if fstype == "zfs":
        options.append("zfsutil")
    try:
        os.makedirs(target, exist_ok=True)
    except OSError as error:
        raise MountError(target, source=device, reason=str(error)) from error
    command = ["mount"]
    if options:
        command += ["-o", ",".join(options)]
    if fstype:
        command += ["-t", fstype]
    command += [device, target]
    result = run_command(command, timeout=timeout)
    if not result.ok:
        raise MountError(target, source=device, reason=result.message)
    log.debug(f"Mounted {device} on {target}{' (ro)' if read_only else ''}")


def remount_rw(target: PathLike, *, timeout: float = MOUNT_TIMEOUT) -> None:
    """Remount ``target`` read-write.

    Raises:
        MountError: If the remount fails
    """
    target = str(target)
    result = run_command(["mount", "-o", "remount,rw", target], timeout=timeout)
    if not result.ok:
        raise MountError(target, reason=f"remount read-write failed: {result.message}")
    log.debug(f"Remounted {target} read-write")


def bind_mount(source: PathLike, target: PathLike, *, timeout: float = MOUNT_TIMEOUT) -> str:
    """Bind mount ``source`` on ``target``.

    A plain bind is tried first; when it fails a recursive bind is used.

    Returns:
        The mount option that succeeded ("--bind" or "--rbind")

    Raises:
        MountError: If both attempts fail
    """
    source, target = str(source), str(target)
    try:
        os.makedirs(target, exist_ok=True)
    except OSError as error:
        raise MountError(target, source=source, reason=str(error)) from error
    result = run_command(["mount", "--bind", source, target], timeout=timeout)
    if result.ok:
        return "--bind"
    log.debug(f"Bind mount of {source} failed ({result.message}), trying rbind")
    result = run_command(["mount", "--rbind", source, target], timeout=timeout)
    if result.ok:
        return "--rbind"
    raise MountError(target, source=source, reason=result.message)


def unmount(
    target: PathLike,
    *,
    lazy: bool = False,
    force: bool = False,
    recursive: bool = False,
    timeout: float = MOUNT_TIMEOUT,
) -> bool:
    """Unmount ``target``; returns True when the command succeeded."""
    command = ["umount"]
    if recursive:
        command.append("-R")
    if lazy:
        command.append("-l")
    if force:
        command.append("-f")
    command.append(str(target))
    result = run_command(command, timeout=timeout)
    if not result.ok:
        log.debug(f"{' '.join(command)} failed: {result.message}")
    return result.ok


def active_mountpoints() -> list[str]:
    """Every active mountpoint, including pseudo filesystems."""
    return [partition.mountpoint for partition in psutil.disk_partitions(all=True)]


def mounts_under(root: PathLike) -> list[str]:
    """Active mountpoints at or below ``root``, deepest first."""
    root = os.path.normpath(str(root))
    prefix = root.rstrip("/") + "/"
    found = {
        os.path.normpath(mountpoint)
        for mountpoint in active_mountpoints()
        if os.path.normpath(mountpoint) == root
        or os.path.normpath(mountpoint).startswith(prefix)
    }
    return sorted(found, key=lambda path: (path.count("/"), path), reverse=True)

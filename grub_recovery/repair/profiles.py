"""Distribution-specific repair profiles.

Each RepairProfile turns a SystemProfile into an ordered list of commands run
inside the chroot sandbox: best-effort package refresh steps first, then the
mandatory GRUB install and configuration regeneration. Profiles are selected
from a table by distribution id, then by ID_LIKE ancestry, with a generic
fallback that probes the jail for whichever GRUB tools it has.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Sequence

from grub_recovery.domain.models import SystemProfile
from grub_recovery.exceptions import RepairCommandError
from grub_recovery.logging import get_logger


log = get_logger(source="repair", tags=["repair"])

EFI_DIRECTORY = "/boot/efi"
BIN_DIRS = ("usr/sbin", "usr/bin", "sbin", "bin", "usr/local/sbin", "usr/local/bin")


@dataclass(frozen=True)
class RepairStep:
    """One command run inside the sandbox."""

    argv: tuple[str, ...]
    description: str
    mandatory: bool = True
    env: Mapping[str, str] = field(default_factory=dict)


def chroot_has_tool(jail_root: Path, tool: str) -> bool:
    """Check whether ``tool`` exists in the jail's standard binary dirs."""
    return any((Path(jail_root) / directory / tool).exists() for directory in BIN_DIRS)


class RepairProfile(ABC):
    """Base class for a distribution family's repair procedure."""

    name = "base"
    distro_ids: tuple[str, ...] = ()
    install_tool = "grub-install"
    install_extra_uefi: tuple[str, ...] = ("--recheck",)
    install_extra_bios: tuple[str, ...] = ("--recheck",)
    use_bootloader_id = True

    @classmethod
    def matches(cls, family_id: str) -> bool:
        return family_id in cls.distro_ids

    def refresh_steps(self, jail_root: Path) -> list[RepairStep]:
        """Package-manager steps; failures only produce warnings."""
        return []

    @abstractmethod
    def config_step(self, jail_root: Path) -> RepairStep:
        """Mandatory grub.cfg regeneration."""

    def install_tool_for(self, jail_root: Path) -> str:
        return self.install_tool

    def install_step(
        self, profile: SystemProfile, jail_root: Path, *, bootloader_id: str = "GRUB"
    ) -> RepairStep:
        """Mandatory bootloader installation for the profile's boot mode."""
        tool = self.install_tool_for(jail_root)
        argv = [tool, f"--target={profile.grub_target}"]
        if profile.is_uefi:
            argv.append(f"--efi-directory={EFI_DIRECTORY}")
            if self.use_bootloader_id:
                argv.append(f"--bootloader-id={bootloader_id}")
            argv.extend(self.install_extra_uefi)
        else:
            if not profile.target_disk:
                raise RepairCommandError(argv, stderr="target disk for BIOS install is unknown")
            argv.append(profile.target_disk)
            argv.extend(self.install_extra_bios)
        return RepairStep(tuple(argv), "Installing GRUB")

    def steps(
        self, profile: SystemProfile, jail_root: Path, *, bootloader_id: str = "GRUB"
    ) -> list[RepairStep]:
        return [
            *self.refresh_steps(jail_root),
            self.install_step(profile, jail_root, bootloader_id=bootloader_id),
            self.config_step(jail_root),
        ]


class DebianFamily(RepairProfile):
    name = "debian"
    distro_ids = ("debian", "ubuntu", "kali", "pop", "linuxmint", "mint")
    install_extra_uefi = ("--recheck", "--no-floppy")
    install_extra_bios = ("--recheck", "--no-floppy", "--force")

    def refresh_steps(self, jail_root: Path) -> list[RepairStep]:
        return [
            RepairStep(("apt-get", "update", "-qq"), "Updating package cache", mandatory=False),
            RepairStep(
                (
                    "apt-get", "install", "-y", "--reinstall",
                    "grub-common", "grub2-common", "grub-pc-bin", "grub-efi-amd64-bin",
                ),
                "Reinstalling GRUB packages",
                mandatory=False,
                env={"DEBIAN_FRONTEND": "noninteractive"},
            ),
        ]

    def config_step(self, jail_root: Path) -> RepairStep:
        return RepairStep(("update-grub",), "Regenerating configuration")


class RHELFamily(RepairProfile):
    name = "rhel"
    distro_ids = ("fedora", "centos", "rhel", "rocky", "almalinux", "alma")
    install_tool = "grub2-install"
    install_extra_uefi = ()
    install_extra_bios = ()

    def refresh_steps(self, jail_root: Path) -> list[RepairStep]:
        if chroot_has_tool(jail_root, "dnf"):
            return [
                RepairStep(("dnf", "check-update", "-q"), "Updating package cache", mandatory=False),
                RepairStep(
                    ("dnf", "reinstall", "-y", "grub2-common", "grub2-tools", "grub2-efi-x64"),
                    "Reinstalling GRUB packages",
                    mandatory=False,
                ),
            ]
        return [
            RepairStep(("yum", "check-update", "-q"), "Updating package cache", mandatory=False),
            RepairStep(
                ("yum", "reinstall", "-y", "grub2-common", "grub2-tools"),
                "Reinstalling GRUB packages",
                mandatory=False,
            ),
        ]

    def config_step(self, jail_root: Path) -> RepairStep:
        return RepairStep(
            ("grub2-mkconfig", "-o", "/boot/grub2/grub.cfg"), "Regenerating configuration"
        )


class ArchFamily(RepairProfile):
    name = "arch"
    distro_ids = ("arch", "manjaro", "endeavouros")

    def refresh_steps(self, jail_root: Path) -> list[RepairStep]:
        return [
            RepairStep(("pacman", "-Syy", "--noconfirm"), "Updating package databases", mandatory=False),
            RepairStep(
                ("pacman", "-S", "--noconfirm", "grub", "efibootmgr"),
                "Reinstalling GRUB packages",
                mandatory=False,
            ),
        ]

    def config_step(self, jail_root: Path) -> RepairStep:
        return RepairStep(
            ("grub-mkconfig", "-o", "/boot/grub/grub.cfg"), "Regenerating configuration"
        )


class SUSEFamily(RepairProfile):
    name = "suse"
    distro_ids = ("suse", "sles", "opensuse")
    install_tool = "grub2-install"
    install_extra_uefi = ()
    install_extra_bios = ()
    use_bootloader_id = False

    @classmethod
    def matches(cls, family_id: str) -> bool:
        return family_id in cls.distro_ids or family_id.startswith("opensuse")

    def refresh_steps(self, jail_root: Path) -> list[RepairStep]:
        return [
            RepairStep(("zypper", "refresh", "-f"), "Refreshing repositories", mandatory=False),
            RepairStep(("zypper", "install", "-y", "grub2"), "Reinstalling GRUB packages", mandatory=False),
        ]

    def config_step(self, jail_root: Path) -> RepairStep:
        return RepairStep(
            ("grub2-mkconfig", "-o", "/boot/grub2/grub.cfg"), "Regenerating configuration"
        )


class GenericProfile(RepairProfile):
    """Fallback: use whichever GRUB tools the jail provides."""

    name = "generic"
    INSTALL_CANDIDATES = ("grub-install", "grub2-install")
    CONFIG_CANDIDATES = (
        ("update-grub",),
        ("grub2-mkconfig", "-o", "/boot/grub2/grub.cfg"),
        ("grub-mkconfig", "-o", "/boot/grub/grub.cfg"),
    )

    @classmethod
    def matches(cls, family_id: str) -> bool:
        return True

    def install_tool_for(self, jail_root: Path) -> str:
        for tool in self.INSTALL_CANDIDATES:
            if chroot_has_tool(jail_root, tool):
                return tool
        raise RepairCommandError(
            list(self.INSTALL_CANDIDATES), stderr="no GRUB install tool inside the sandbox"
        )

    def config_step(self, jail_root: Path) -> RepairStep:
        for argv in self.CONFIG_CANDIDATES:
            if chroot_has_tool(jail_root, argv[0]):
                return RepairStep(argv, "Regenerating configuration")
        raise RepairCommandError(
            [argv[0] for argv in self.CONFIG_CANDIDATES],
            stderr="no GRUB configuration tool inside the sandbox",
        )


# Order matters: the first family whose ids match wins
PROFILE_TABLE: tuple[type[RepairProfile], ...] = (
    DebianFamily,
    RHELFamily,
    ArchFamily,
    SUSEFamily,
)


def select_repair_profile(
    profile: SystemProfile, table: Sequence[type[RepairProfile]] = PROFILE_TABLE
) -> RepairProfile:
    """Pick a profile by distribution id, then by ID_LIKE, else generic."""
    for family_id in profile.family_ids:
        for candidate in table:
            if candidate.matches(family_id.lower()):
                log.debug(f"Repair profile {candidate.name} selected via '{family_id}'")
                return candidate()
    log.info(f"No repair profile for '{profile.distro_id}', using generic procedure")
    return GenericProfile()


def execute_steps(
    session,
    steps: Sequence[RepairStep],
    *,
    timeout: float,
    base_env: Optional[Mapping[str, str]] = None,
    job_log=None,
) -> list[str]:
    """Run ``steps`` inside ``session`` in order.

    Returns:
        Warnings from failed best-effort steps

    Raises:
        RepairCommandError: When a mandatory step fails or times out
    """
    job_log = job_log or log
    warnings = []
    for step in steps:
        job_log.info(f"{step.description}: {' '.join(step.argv)}")
        env = None
        if step.env:
            env = {**os.environ, **(base_env or {}), **step.env}
        result = session.run(list(step.argv), timeout=timeout, env=env)
        if result.ok:
            continue
        if step.mandatory:
            raise RepairCommandError(
                step.argv,
                returncode=result.returncode,
                stderr=result.stderr,
                timed_out=result.timed_out,
            )
        warning = f"{step.description} failed (ignored): {result.message}"
        job_log.warning(warning)
        warnings.append(warning)
    return warnings

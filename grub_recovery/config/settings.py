"""Settings storage for recovery configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


SETTINGS_PATH = Path(
    os.environ.get(
        "GRUB_RECOVERY_SETTINGS_PATH",
        "/etc/grub-recovery/settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_OPERATION_TIMEOUT = 600
DEFAULT_PROBE_TIMEOUT = 30
DEFAULT_PARALLEL_JOBS = 4
DEFAULT_BACKUP_RETENTION = 10
DEFAULT_BACKUP_DIR = "/var/backups/grub-recovery"
DEFAULT_STATE_DIR = "/var/lib/grub-recovery"
DEFAULT_MOUNT_POINT = "/mnt/recovery_chroot"

DEFAULT_SETTINGS: dict[str, Any] = {
    "auto_recovery_enabled": True,
    "operation_timeout": DEFAULT_OPERATION_TIMEOUT,
    "probe_timeout": DEFAULT_PROBE_TIMEOUT,
    "parallel_jobs": DEFAULT_PARALLEL_JOBS,
    "enable_snapshots": True,
    "auto_rollback": True,
    "allow_repair_without_checkpoint": False,
    "backup_retention": DEFAULT_BACKUP_RETENTION,
    "backup_dir": DEFAULT_BACKUP_DIR,
    "state_dir": DEFAULT_STATE_DIR,
    "mount_point": DEFAULT_MOUNT_POINT,
    "custom_grub_target": None,
    "custom_target_disk": None,
    "bootloader_id": "GRUB",
    "clean_max_age_days": 90,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class RecoveryConfig:
    """Immutable view of the settings handed to each component."""

    auto_recovery_enabled: bool = True
    operation_timeout: int = DEFAULT_OPERATION_TIMEOUT
    probe_timeout: int = DEFAULT_PROBE_TIMEOUT
    parallel_jobs: int = DEFAULT_PARALLEL_JOBS
    enable_snapshots: bool = True
    auto_rollback: bool = True
    allow_repair_without_checkpoint: bool = False
    backup_retention: int = DEFAULT_BACKUP_RETENTION
    backup_dir: Path = Path(DEFAULT_BACKUP_DIR)
    state_dir: Path = Path(DEFAULT_STATE_DIR)
    mount_point: Path = Path(DEFAULT_MOUNT_POINT)
    custom_grub_target: Optional[str] = None
    custom_target_disk: Optional[str] = None
    bootloader_id: str = "GRUB"
    clean_max_age_days: int = 90

    @property
    def metrics_path(self) -> Path:
        return self.state_dir / "metrics.json"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "repair.lock"

    @classmethod
    def from_settings(cls) -> RecoveryConfig:
        """Build the config from the loaded settings store."""
        return cls(
            auto_recovery_enabled=get_bool("auto_recovery_enabled", True),
            operation_timeout=max(1, get_int("operation_timeout", DEFAULT_OPERATION_TIMEOUT)),
            probe_timeout=max(1, get_int("probe_timeout", DEFAULT_PROBE_TIMEOUT)),
            parallel_jobs=max(1, get_int("parallel_jobs", DEFAULT_PARALLEL_JOBS)),
            enable_snapshots=get_bool("enable_snapshots", True),
            auto_rollback=get_bool("auto_rollback", True),
            allow_repair_without_checkpoint=get_bool("allow_repair_without_checkpoint"),
            backup_retention=max(1, get_int("backup_retention", DEFAULT_BACKUP_RETENTION)),
            backup_dir=Path(get_setting("backup_dir") or DEFAULT_BACKUP_DIR),
            state_dir=Path(get_setting("state_dir") or DEFAULT_STATE_DIR),
            mount_point=Path(get_setting("mount_point") or DEFAULT_MOUNT_POINT),
            custom_grub_target=get_setting("custom_grub_target") or None,
            custom_target_disk=get_setting("custom_target_disk") or None,
            bootloader_id=get_setting("bootloader_id") or "GRUB",
            clean_max_age_days=max(1, get_int("clean_max_age_days", 90)),
        )


load_settings()

"""Recovery configuration backed by a JSON settings file."""

from .settings import RecoveryConfig, get_setting, load_settings, set_setting


__all__ = ["RecoveryConfig", "get_setting", "load_settings", "set_setting"]

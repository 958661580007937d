"""GRUB auto-recovery: diagnose and safely repair a broken GRUB installation."""

from .__version__ import __version__


__all__ = ["__version__"]

"""Mounted chroot sandbox with guaranteed release."""

from .session import (
    MountRecord,
    MountStack,
    SandboxSession,
    clear_stale_session,
    setup_sandbox,
    teardown_sandbox,
)


__all__ = [
    "MountRecord",
    "MountStack",
    "SandboxSession",
    "clear_stale_session",
    "setup_sandbox",
    "teardown_sandbox",
]

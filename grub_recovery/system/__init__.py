"""Host-facing layer: commands, tool wrappers, mounts and profile resolution."""

from .commands import CommandResult, run_command, tool_available
from .profile import resolve_profile


__all__ = ["CommandResult", "resolve_profile", "run_command", "tool_available"]

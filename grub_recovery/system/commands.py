"""Command execution utilities with hard timeouts.

Every external tool the recovery engine touches goes through ``run_command``.
It never raises for a non-zero exit, a missing binary or a timeout; those are
reported in the returned ``CommandResult`` so callers decide which failures
are fatal.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from grub_recovery.logging import LoggerFactory


log = LoggerFactory.for_system()
output_log = LoggerFactory.for_command()

# Exit status the shell uses for "command not found"
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    """Minimal structured result of an external command."""

    command: tuple[str, ...]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0

    @property
    def message(self) -> str:
        """Best single-line explanation of a failure."""
        if self.timed_out:
            return "timed out"
        text = self.stderr.strip() or self.stdout.strip()
        if text:
            return text.splitlines()[-1]
        return f"exit status {self.returncode}"


def tool_available(tool: str) -> bool:
    """Check if a command-line tool is available."""
    return shutil.which(tool) is not None


def run_command(
    command: Sequence[str],
    *,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    log_output: bool = False,
) -> CommandResult:
    """Run a command, bounded by ``timeout`` seconds.

    Args:
        command: Argument list (never a shell string)
        timeout: Hard limit in seconds; exceeding it kills the process
        input_text: Optional text fed to stdin
        env: Full environment for the child, or None to inherit
        log_output: Echo stdout/stderr lines to the command-output log

    Returns:
        CommandResult; ``returncode`` is None when the command timed out
    """
    argv = tuple(str(part) for part in command)
    log.debug(f"Running command: {' '.join(argv)}")
    try:
        result = subprocess.run(
            list(argv),
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
            env=dict(env) if env is not None else None,
            encoding="utf-8",
            errors="replace",
        )
    except subprocess.TimeoutExpired as error:
        log.warning(f"Command timed out after {timeout}s: {' '.join(argv)}")
        return CommandResult(
            command=argv,
            returncode=None,
            stdout=_as_text(error.stdout),
            stderr=_as_text(error.stderr),
            timed_out=True,
        )
    except FileNotFoundError:
        log.debug(f"Command not found: {argv[0]}")
        return CommandResult(
            command=argv,
            returncode=EXIT_NOT_FOUND,
            stderr=f"{argv[0]}: command not found",
        )
    except OSError as error:
        log.debug(f"Command could not start: {' '.join(argv)}: {error}")
        return CommandResult(command=argv, returncode=EXIT_NOT_FOUND, stderr=str(error))

    if log_output:
        for line in (result.stdout or "").splitlines():
            output_log.trace(line)
        for line in (result.stderr or "").splitlines():
            output_log.trace(line)
    if result.returncode != 0:
        log.debug(f"Command failed with code {result.returncode}: {' '.join(argv)}")
    return CommandResult(
        command=argv,
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
    )


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = [
    "CommandResult",
    "EXIT_NOT_FOUND",
    "run_command",
    "tool_available",
]

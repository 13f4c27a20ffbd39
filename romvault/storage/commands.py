"""Command execution helpers for external storage tools."""

from __future__ import annotations

import subprocess
from typing import Optional, Sequence

from romvault.logging import get_logger


log = get_logger(source="command")
output_log = get_logger(source="command", tags=["command-output"])


def run_checked_command(
    command: Sequence[str],
    input_text: Optional[str] = None,
    timeout: Optional[float] = None,
) -> str:
    """Run a command and raise RuntimeError if it fails."""
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command),
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError as error:
        raise RuntimeError(f"Command not found: {command[0]}") from error
    except subprocess.TimeoutExpired as error:
        raise RuntimeError(
            f"Command timed out after {timeout}s ({' '.join(command)})"
        ) from error
    if result.stdout:
        output_log.trace(result.stdout.rstrip())
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        message = stderr or stdout or "Command failed"
        raise RuntimeError(f"Command failed ({' '.join(command)}): {message}")
    return result.stdout


def run_command_status(
    command: Sequence[str], timeout: Optional[float] = None
) -> tuple[int, str]:
    """Run a command and return (returncode, combined output).

    Used for tools whose non-zero exit codes carry meaning (e.g. e2fsck).
    """
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command),
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        return 127, f"Command not found: {command[0]}"
    except subprocess.TimeoutExpired:
        return -1, f"Command timed out after {timeout}s"
    output = "\n".join(
        part.strip() for part in (result.stdout, result.stderr) if part and part.strip()
    )
    if output:
        output_log.trace(output)
    return result.returncode, output

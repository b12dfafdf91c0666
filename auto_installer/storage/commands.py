"""Command execution helpers for external tools (udevadm, ip, dig, mount, xorriso)."""

from __future__ import annotations

import subprocess
from typing import Sequence

from auto_installer.logging import get_logger

log = get_logger(source=__name__)


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    input_text: str | None = None,
) -> subprocess.CompletedProcess:
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command), check=check, text=True, capture_output=True, input=input_text
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(command: Sequence[str], input_text: str | None = None) -> str:
    """Run ``command`` and return its stdout; a non-zero exit raises RuntimeError."""
    result = run_command(command, check=False, input_text=input_text)
    if result.returncode == 0:
        return result.stdout
    detail = result.stderr.strip() or result.stdout.strip() or "Command failed"
    raise RuntimeError(f"Command failed ({' '.join(command)}): {detail}")

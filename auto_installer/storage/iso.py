"""Preparing installation ISOs for automated installation.

The source ISO is copied next to its target, the fetch mode file (and,
depending on the mode, the answer file and a first-boot executable) is
injected with ``xorriso`` and the result is moved into place.
"""

from __future__ import annotations

import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from auto_installer.config import settings
from auto_installer.config.mode import AutoInstSettings, FetchMode, HttpOptions
from auto_installer.exceptions import IsoPrepareError
from auto_installer.logging import get_logger
from auto_installer.storage.commands import run_command

log = get_logger(source=__name__, tags=["iso"])

PROXMOX_ISO_FLAG = "/auto-installer-capable"
FIRST_BOOT_EXEC_NAME = "proxmox-first-boot"
FIRST_BOOT_EXEC_MAX_SIZE = 1024 * 1024

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class PrepareIsoOptions:
    input: Path
    fetch_from: FetchMode
    output: Path | None = None
    answer_file: Path | None = None
    url: str | None = None
    cert_fingerprint: str | None = None
    tmp: Path | None = None
    partition_label: str = settings.DEFAULT_PARTITION_LABEL
    on_first_boot: Path | None = None

    def mode_settings(self) -> AutoInstSettings:
        return AutoInstSettings(
            mode=self.fetch_from,
            partition_label=self.partition_label,
            http=HttpOptions(url=self.url, cert_fingerprint=self.cert_fingerprint),
        )


def check_xorriso(iso: Path, runner: Runner = run_command) -> None:
    """Ensure ``iso`` exists and supports automated installation."""
    if not Path(iso).exists():
        raise IsoPrepareError(f"Source file {iso} does not exist.")
    try:
        result = runner(
            ["xorriso", "-dev", str(iso), "-find", PROXMOX_ISO_FLAG],
            check=False,
            log_output=False,
        )
    except FileNotFoundError as error:
        raise IsoPrepareError("Could not find the 'xorriso' binary. Please install it.") from error
    except OSError as error:
        raise IsoPrepareError(f"unexpected error when trying to execute 'xorriso' - {error}") from error
    if result.returncode != 0:
        raise IsoPrepareError(
            "The source ISO file is not able to be installed automatically. "
            "Please try a more current one."
        )


def get_iso_uuid(iso: Path, runner: Runner = run_command) -> str:
    result = runner(
        ["xorriso", "-dev", str(iso), "-report_system_area", "cmd"], check=False
    )
    if result.returncode != 0:
        raise IsoPrepareError(
            f"Error determining the UUID of the source ISO: {result.stderr.strip()}"
        )
    for line in result.stdout.splitlines():
        if line.startswith("-volume_date uuid"):
            return line.split(" ")[-1].replace("'", "").strip()
    return ""


def inject_file(iso: Path, file: Path, location: str, uuid: str, runner: Runner = run_command) -> None:
    """Map ``file`` to ``location`` inside ``iso``, keeping boot setup and UUID."""
    command = [
        "xorriso",
        "-boot_image", "any", "keep",
        "-volume_date", "uuid", uuid,
        "-dev", str(iso),
        "-map", str(file), location,
    ]
    result = runner(command, check=False)
    if result.returncode != 0:
        raise IsoPrepareError(f"Error injecting {file} into {iso}: {result.stderr.strip()}")


def final_iso_name(options: PrepareIsoOptions) -> Path:
    """Target path, e.g. ``pve-auto-from-http-url-fp.iso`` beside the input."""
    if options.output is not None:
        return Path(options.output)
    suffix = f"auto-from-{options.fetch_from.value}"
    if options.url is not None:
        suffix += "-url"
    if options.cert_fingerprint is not None:
        suffix += "-fp"
    source = Path(options.input)
    return source.parent / f"{source.stem}-{suffix}.iso"


def validate_prepare_options(options: PrepareIsoOptions) -> None:
    mode = options.fetch_from
    if mode is FetchMode.ISO and options.answer_file is None:
        raise IsoPrepareError(
            "Missing path to the answer file required for the fetch-from 'iso' mode."
        )
    if options.url is not None and mode is not FetchMode.HTTP:
        raise IsoPrepareError(
            f"Setting a URL is incompatible with the fetch-from '{mode.value}' mode, "
            "only works with the 'http' mode"
        )
    if options.cert_fingerprint is not None and mode is not FetchMode.HTTP:
        raise IsoPrepareError(
            f"Setting a certificate fingerprint is incompatible with the fetch-from "
            f"'{mode.value}' mode, only works for 'http' mode."
        )
    if options.answer_file is not None and mode is not FetchMode.ISO:
        raise IsoPrepareError(
            "You must set '--fetch-from' to 'iso' to place the answer file directly in the ISO."
        )
    if options.on_first_boot is not None:
        try:
            size = Path(options.on_first_boot).stat().st_size
        except OSError as error:
            raise IsoPrepareError(f"Cannot access first-boot executable: {error}") from error
        if size > FIRST_BOOT_EXEC_MAX_SIZE:
            raise IsoPrepareError(
                "Maximum file size for first-boot executable file is "
                f"{FIRST_BOOT_EXEC_MAX_SIZE // 1024 // 1024} MiB"
            )


def prepare_iso(options: PrepareIsoOptions, runner: Runner = run_command) -> Path:
    """Build the prepared ISO and return its final location.

    The answer file itself is expected to be validated by the caller.

    Raises:
        IsoPrepareError: If the options are inconsistent or xorriso fails
    """
    validate_prepare_options(options)
    check_xorriso(options.input, runner)
    uuid = get_iso_uuid(options.input, runner)

    target = final_iso_name(options)
    tmp_base = Path(options.tmp) if options.tmp is not None else target.parent
    tmp_iso = tmp_base / f"{target.name}.tmp"

    log.info("Copying source ISO to temporary location...")
    try:
        shutil.copyfile(options.input, tmp_iso)
    except OSError as error:
        raise IsoPrepareError(f"Copying {options.input} to {tmp_iso} failed: {error}") from error

    log.info("Preparing ISO...")
    with tempfile.TemporaryDirectory(dir=tmp_base) as staging:
        mode_file = Path(staging) / settings.AUTOINST_MODE_FILE
        mode_file.write_text(options.mode_settings().dumps(), encoding="utf-8")
        inject_file(tmp_iso, mode_file, f"/{settings.AUTOINST_MODE_FILE}", uuid, runner)

    if options.answer_file is not None:
        inject_file(tmp_iso, options.answer_file, f"/{settings.ANSWER_FILE_NAME}", uuid, runner)
    if options.on_first_boot is not None:
        inject_file(tmp_iso, options.on_first_boot, f"/{FIRST_BOOT_EXEC_NAME}", uuid, runner)

    log.info("Moving prepared ISO to target location...")
    shutil.move(str(tmp_iso), target)
    log.success(f"Final ISO is available at {target}.")
    return target

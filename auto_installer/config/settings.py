"""Filesystem locations and constants shared by the command line tools."""

from __future__ import annotations

import os
from pathlib import Path


def is_test_mode() -> bool:
    return os.environ.get("AUTO_INSTALLER_TEST_MODE", "") not in ("", "0")


def base_dir(test_mode: bool | None = None) -> Path:
    """Root under which the installer runtime files live.

    ``AUTO_INSTALLER_BASE_DIR`` wins; otherwise test mode uses ``./testdir``
    and production uses ``/``.
    """
    override = os.environ.get("AUTO_INSTALLER_BASE_DIR")
    if override:
        return Path(override)
    if test_mode is None:
        test_mode = is_test_mode()
    return Path("./testdir") if test_mode else Path("/")


def run_dir(test_mode: bool | None = None) -> Path:
    return base_dir(test_mode) / "run" / "proxmox-installer"


# Runtime information written by the ISO environment before the installer starts
ISO_INFO_FILE = "iso-info.json"
LOCALES_FILE = "locales.json"
RUN_ENV_INFO_FILE = "run-env-info.json"
RUN_ENV_UDEV_FILE = "run-env-udev.json"

# Answer fetching
ANSWER_FILE_NAME = "answer.toml"
AUTOINST_MODE_FILE = "auto-installer-mode.toml"
ISO_MOUNT_POINT = Path("/cdrom")
PARTITION_MOUNT_POINT = Path("/mnt/answer")
DISK_BY_LABEL_DIR = Path("/dev/disk/by-label")
DHCP_LEASE_DIR = Path("/var/lib/dhcp")
DEFAULT_PARTITION_LABEL = "proxmox-ais"
HTTP_TIMEOUT_SECONDS = 60

# Log files
AUTO_INSTALLER_LOG = "auto_installer.log"
FETCH_ANSWER_LOG = "fetch_answer.log"

# Subordinate programs
LOW_LEVEL_INSTALLER = "proxmox-low-level-installer"
AUTO_INSTALLER_BINARY = "auto-installer"

# Device capture
SYS_BLOCK_DIR = Path("/sys/block")
DMI_DIR = Path("/sys/devices/virtual/dmi/id")

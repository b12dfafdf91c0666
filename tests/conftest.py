"""
Pytest configuration and shared fixtures for auto-installer tests.

This module provides the runtime files of a small test machine (three disks,
two NICs) and helpers for building answer files.
"""

import ipaddress
import json
from pathlib import Path
from typing import Any, Callable, Dict
from unittest.mock import Mock

import pytest
from loguru import logger

from auto_installer.devices.inventory import DeviceInventory
from auto_installer.domain.install_config import InstallConfig, InstallRootPassword
from auto_installer.domain.options import CidrAddress, Filesystem, FsType
from auto_installer.domain.setup import LocaleInfo, RuntimeInfo, SetupInfo


# ==============================================================================
# Device Inventory Fixtures
# ==============================================================================


@pytest.fixture
def udev_snapshot() -> Dict[str, Any]:
    """
    Fixture providing a ``run-env-udev.json`` structure.

    Disk ``2`` has no ``ID_BUS`` property, which matters for ALL filters.
    """
    return {
        "disks": {
            "0": {
                "DEVNAME": "/dev/sda",
                "DEVTYPE": "disk",
                "ID_BUS": "ata",
                "ID_MODEL": "QEMU_HARDDISK",
                "ID_SERIAL_SHORT": "AAA1111",
            },
            "1": {
                "DEVNAME": "/dev/sdb",
                "DEVTYPE": "disk",
                "ID_BUS": "ata",
                "ID_MODEL": "QEMU_HARDDISK",
                "ID_SERIAL_SHORT": "BBB2222",
            },
            "2": {
                "DEVNAME": "/dev/nvme0n1",
                "DEVTYPE": "disk",
                "ID_MODEL": "Samsung_SSD_970",
                "ID_SERIAL_SHORT": "CCC2222",
            },
        },
        "nics": {
            "enp1s0": {
                "INTERFACE": "enp1s0",
                "ID_NET_NAME_MAC": "enx525400aaaaaa",
                "ID_VENDOR_FROM_DATABASE": "Red Hat, Inc.",
            },
            "enp2s0": {
                "INTERFACE": "enp2s0",
                "ID_NET_NAME_MAC": "enx525400bbbbbb",
                "ID_NET_DRIVER": "e1000",
            },
        },
    }


@pytest.fixture
def inventory(udev_snapshot) -> DeviceInventory:
    """Fixture providing the device inventory of the test machine."""
    return DeviceInventory.from_dict(udev_snapshot)


# ==============================================================================
# Runtime Information Fixtures
# ==============================================================================


@pytest.fixture
def run_env_info() -> Dict[str, Any]:
    """
    Fixture providing a ``run-env-info.json`` structure.

    Disk sizes are in 512-byte sectors: 32 GiB, 64 GiB and 100 GiB.
    """
    return {
        "disks": [
            [0, "/dev/sda", 67108864, "QEMU HARDDISK", 512],
            [1, "/dev/sdb", 134217728, "QEMU HARDDISK", 512],
            [2, "/dev/nvme0n1", 209715200, "Samsung SSD 970", 512],
        ],
        "network": {
            "dns": {"domain": "dhcp.example", "dns": ["192.168.1.1"]},
            "routes": {"gateway4": {"dev": "enp1s0", "gateway": "192.168.1.1"}},
            "interfaces": {
                "enp1s0": {
                    "name": "enp1s0",
                    "index": 2,
                    "mac": "52:54:00:aa:aa:aa",
                    "pinned_id": 0,
                    "state": "UP",
                    "addresses": [{"family": "inet", "address": "192.168.1.50", "prefix": 24}],
                },
                "enp2s0": {
                    "name": "enp2s0",
                    "index": 3,
                    "mac": "52:54:00:bb:bb:bb",
                    "state": "DOWN",
                },
            },
            "hostname": "dhcp-host",
        },
        "total_memory": 8192,
        "default_zfs_arc_max": 819,
        "boot_type": "efi",
        "country": "at",
        "hvm_supported": 1,
    }


@pytest.fixture
def runtime(run_env_info) -> RuntimeInfo:
    return RuntimeInfo.from_dict(run_env_info)


@pytest.fixture
def locales_data() -> Dict[str, Any]:
    """Fixture providing a minimal ``locales.json`` structure."""
    return {
        "cczones": {"at": ["Europe/Vienna"], "de": ["Europe/Berlin"]},
        "country": {
            "at": {"name": "Austria", "kmap": "de", "zone": "Europe/Vienna"},
            "de": {"name": "Germany", "kmap": "de", "zone": "Europe/Berlin"},
        },
        "kmap": {
            "de": {"name": "German", "kvm": "de", "x11": "de"},
            "en-us": {"name": "U.S. English", "kvm": "en-us", "x11": "us"},
        },
    }


@pytest.fixture
def locales(locales_data) -> LocaleInfo:
    return LocaleInfo.from_dict(locales_data)


@pytest.fixture
def iso_info() -> Dict[str, Any]:
    """Fixture providing an ``iso-info.json`` structure."""
    return {
        "product-cfg": {"fullname": "Proxmox VE", "product": "pve", "enable_btrfs": 1},
        "iso-info": {"release": "8.2", "isorelease": "1"},
        "locations": {"iso": "/cdrom"},
    }


@pytest.fixture
def setup_info(iso_info) -> SetupInfo:
    return SetupInfo.from_dict(iso_info)


@pytest.fixture
def runtime_dir(tmp_path, monkeypatch, iso_info, locales_data, run_env_info, udev_snapshot) -> Path:
    """
    Fixture writing all runtime files below a temporary base directory.

    Returns:
        The ``run/proxmox-installer`` directory.
    """
    run_dir = tmp_path / "run" / "proxmox-installer"
    run_dir.mkdir(parents=True)
    (run_dir / "iso-info.json").write_text(json.dumps(iso_info))
    (run_dir / "locales.json").write_text(json.dumps(locales_data))
    (run_dir / "run-env-info.json").write_text(json.dumps(run_env_info))
    (run_dir / "run-env-udev.json").write_text(json.dumps(udev_snapshot))
    monkeypatch.setenv("AUTO_INSTALLER_BASE_DIR", str(tmp_path))
    return run_dir


# ==============================================================================
# Answer File Fixtures
# ==============================================================================

DEFAULT_GLOBAL = """\
[global]
keyboard = "de"
country = "at"
fqdn = "pveauto.testinstall"
mailto = "mail@no.invalid"
timezone = "Europe/Vienna"
root-password = "12345678"
"""

DEFAULT_NETWORK = """\
[network]
source = "from-dhcp"
"""

DEFAULT_DISK_SETUP = """\
[disk-setup]
filesystem = "ext4"
disk-list = ["sda"]
"""


@pytest.fixture
def answer_factory() -> Callable[..., str]:
    """
    Fixture providing a builder for answer file text.

    Each section can be replaced as a whole; ``extra`` is appended.
    """

    def build(
        global_: str = DEFAULT_GLOBAL,
        network: str = DEFAULT_NETWORK,
        disk_setup: str = DEFAULT_DISK_SETUP,
        extra: str = "",
    ) -> str:
        return "\n".join(part for part in (global_, network, disk_setup, extra) if part)

    return build


@pytest.fixture
def answer_toml(answer_factory) -> str:
    """Fixture providing a minimal valid answer file."""
    return answer_factory()


# ==============================================================================
# Logging and Subprocess Fixtures
# ==============================================================================


@pytest.fixture
def log_messages():
    """
    Fixture collecting formatted log messages emitted during a test.

    Returns:
        List that receives ``"LEVEL message"`` strings.
    """
    messages: list[str] = []
    handler_id = logger.add(
        lambda message: messages.append(
            f"{message.record['level'].name} {message.record['message']}"
        ),
        level="DEBUG",
        enqueue=False,
    )
    yield messages
    logger.remove(handler_id)


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> Mock:
    result = Mock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


@pytest.fixture
def make_result() -> Callable[..., Mock]:
    """Fixture providing a factory for CompletedProcess-like results."""
    return completed


# ==============================================================================
# Install Config Fixtures
# ==============================================================================


def install_config(**overrides) -> InstallConfig:
    values: Dict[str, Any] = dict(
        filesys=FsType(Filesystem.EXT4),
        hdsize=32.0,
        country="at",
        timezone="Europe/Vienna",
        keymap="de",
        root_password=InstallRootPassword(plain="12345678"),
        mailto="mail@no.invalid",
        mngmt_nic="enp1s0",
        hostname="pveauto",
        domain="testinstall",
        cidr=CidrAddress.parse("192.168.1.50/24"),
        gateway=ipaddress.ip_address("192.168.1.1"),
        dns=ipaddress.ip_address("192.168.1.1"),
    )
    values.update(overrides)
    return InstallConfig(**values)


@pytest.fixture
def make_config() -> Callable[..., InstallConfig]:
    """Fixture providing a factory for resolved ext4 install configs."""
    return install_config

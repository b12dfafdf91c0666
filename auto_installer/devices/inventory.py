"""Disk and network interface properties as reported by udev.

The inventory is captured once, either live through ``udevadm`` or from the
``run-env-udev.json`` snapshot written by the installer environment, and is
read-only afterwards. Devices are always iterated in lexical order of their
id so every consumer sees the same order regardless of how the data arrived.

Snapshot format::

    {
        "disks": {"0": {"DEVNAME": "/dev/sda", "ID_SERIAL": "..."}},
        "nics": {"enp1s0": {"ID_NET_NAME_MAC": "...", "INTERFACE": "enp1s0"}}
    }
"""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping

from auto_installer.config.settings import SYS_BLOCK_DIR
from auto_installer.devices.glob import GlobPattern
from auto_installer.exceptions import SetupError
from auto_installer.logging import LoggerFactory
from auto_installer.storage.commands import run_command

log = LoggerFactory.for_udev()

# Block devices that can never be installation targets
UNWANTED_BLOCK_DEVICES = tuple(
    GlobPattern(pattern)
    for pattern in (
        "ram[0-9]*",
        "loop[0-9]*",
        "md[0-9]*",
        "dm-*",
        "fd[0-9]*",
        "sr[0-9]*",
    )
)

PROP_DEVTYPE = "DEVTYPE"
PROP_CDROM = "ID_CDROM"
PROP_FS_TYPE = "ID_FS_TYPE"


def _frozen(mapping: Mapping[str, str]) -> Mapping[str, str]:
    return MappingProxyType({key: mapping[key] for key in sorted(mapping)})


@dataclass(frozen=True)
class DeviceRecord:
    """One disk or NIC with its udev properties."""

    index: str
    name: str
    properties: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "properties", _frozen(self.properties))

    def get(self, key: str) -> str | None:
        return self.properties.get(key)

    def to_dict(self) -> dict[str, str]:
        return dict(self.properties)


class DeviceMap(Mapping[str, DeviceRecord]):
    """Read-only id -> DeviceRecord mapping iterated in lexical id order."""

    def __init__(self, records: Mapping[str, DeviceRecord] | None = None):
        records = records or {}
        self._records = {key: records[key] for key in sorted(records)}

    def __getitem__(self, key: str) -> DeviceRecord:
        return self._records[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"DeviceMap({list(self._records)!r})"

    def to_dict(self) -> dict[str, dict[str, str]]:
        return {key: record.to_dict() for key, record in self._records.items()}


@dataclass(frozen=True)
class DeviceInventory:
    disks: DeviceMap = field(default_factory=DeviceMap)
    nics: DeviceMap = field(default_factory=DeviceMap)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DeviceInventory:
        """Build an inventory from the ``run-env-udev.json`` structure."""
        try:
            disks = {
                str(index): DeviceRecord(
                    index=str(index),
                    name=props.get("DEVNAME", str(index)),
                    properties={str(k): str(v) for k, v in props.items()},
                )
                for index, props in data.get("disks", {}).items()
            }
            nics = {
                str(ifname): DeviceRecord(
                    index=str(ifname),
                    name=str(ifname),
                    properties={str(k): str(v) for k, v in props.items()},
                )
                for ifname, props in data.get("nics", {}).items()
            }
        except AttributeError as error:
            raise SetupError("udev information", f"malformed device data: {error}") from error
        return cls(disks=DeviceMap(disks), nics=DeviceMap(nics))

    @classmethod
    def load(cls, path: Path) -> DeviceInventory:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except OSError as error:
            raise SetupError("udev information", str(error)) from error
        except json.JSONDecodeError as error:
            raise SetupError("udev information", f"failed to parse JSON: {error}") from error
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, dict[str, dict[str, str]]]:
        return {"disks": self.disks.to_dict(), "nics": self.nics.to_dict()}

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


def parse_udev_properties(output: str) -> tuple[str | None, dict[str, str]]:
    """Decode ``udevadm info --query all`` output.

    Returns:
        Tuple of the device node name (``N:`` line, if any) and the
        ``E:`` properties as a dict
    """
    name = None
    properties: dict[str, str] = {}
    for line in output.splitlines():
        if line.startswith("N: "):
            name = line[3:].strip()
        elif line.startswith("E: "):
            key, sep, value = line[3:].partition("=")
            if sep:
                properties[key] = value
    return name, properties


def get_udev_properties(
    path: Path, runner: Callable[..., subprocess.CompletedProcess] = run_command
) -> str:
    result = runner(
        ["udevadm", "info", "--path", str(path), "--query", "all"],
        check=False,
        log_output=False,
    )
    if result.returncode != 0:
        raise RuntimeError(f"could not run udevadm successfully for {path}")
    return result.stdout


def is_unwanted_block_device(name: str) -> bool:
    return any(pattern.matches(name) for pattern in UNWANTED_BLOCK_DEVICES)


def is_install_target(properties: Mapping[str, str]) -> bool:
    """Whole disks only; optical drives and ISO9660 media are skipped."""
    if properties.get(PROP_DEVTYPE, "disk") != "disk":
        return False
    if PROP_CDROM in properties:
        return False
    return properties.get(PROP_FS_TYPE) != "iso9660"


def collect_disks(
    sys_block: Path = SYS_BLOCK_DIR,
    runner: Callable[..., subprocess.CompletedProcess] = run_command,
) -> DeviceMap:
    """Query udev for every block device suitable as installation target.

    Disks are keyed by their device node name.
    """
    disks: dict[str, DeviceRecord] = {}
    for entry in sorted(Path(sys_block).iterdir()):
        if is_unwanted_block_device(entry.name):
            continue
        try:
            output = get_udev_properties(entry, runner)
        except (OSError, RuntimeError) as error:
            log.warning(f"Skipping {entry.name}: {error}")
            continue

        node_name, properties = parse_udev_properties(output)
        if not is_install_target(properties):
            log.debug(f"Skipping {entry.name}: not an installable disk")
            continue
        name = node_name or entry.name
        disks[name] = DeviceRecord(index=name, name=name, properties=properties)
    return DeviceMap(disks)


def get_nic_list(runner: Callable[..., subprocess.CompletedProcess] = run_command) -> list[str]:
    """Names of all network links except loopback, from ``ip -j link``."""
    result = runner(["ip", "-j", "link"], log_output=False)
    try:
        links = json.loads(result.stdout or "[]")
    except json.JSONDecodeError as error:
        raise SetupError("network links", f"failed to parse JSON: {error}") from error
    return [link["ifname"] for link in links if link.get("ifname") != "lo"]


def collect_nics(
    sys_class_net: Path = Path("/sys/class/net"),
    runner: Callable[..., subprocess.CompletedProcess] = run_command,
) -> DeviceMap:
    nics: dict[str, DeviceRecord] = {}
    for link in get_nic_list(runner):
        try:
            output = get_udev_properties(Path(sys_class_net) / link, runner)
        except (OSError, RuntimeError) as error:
            log.warning(f"Skipping {link}: {error}")
            continue
        _, properties = parse_udev_properties(output)
        nics[link] = DeviceRecord(index=link, name=link, properties=properties)
    return DeviceMap(nics)


def capture_inventory(
    runner: Callable[..., subprocess.CompletedProcess] = run_command,
) -> DeviceInventory:
    """Snapshot disks and NICs of the running system."""
    log.info("Collecting udev properties of disks and network interfaces")
    return DeviceInventory(disks=collect_disks(runner=runner), nics=collect_nics(runner=runner))

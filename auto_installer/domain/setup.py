"""Runtime information provided by the installer environment.

Before any installer front-end starts, the ISO environment writes a set of
JSON files into ``/run/proxmox-installer``:

- ``iso-info.json``: product configuration and ISO release information
- ``locales.json``: countries, time zones and keyboard maps
- ``run-env-info.json``: disks, network state and memory of this machine
- ``run-env-udev.json``: udev properties of disks and NICs

This module loads the first three into immutable domain objects. Disk
tuples in ``run-env-info.json`` carry their size in 512-byte sectors, which
is converted to GiB here.
"""

from __future__ import annotations

import ipaddress
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from auto_installer.config import settings
from auto_installer.domain.options import CidrAddress, IpAddress
from auto_installer.exceptions import SetupError

SECTOR_SIZE = 512
DEFAULT_ZFS_ARC_MAX = 2048


# ==============================================================================
# Product
# ==============================================================================


class ProxmoxProduct(Enum):
    PVE = "pve"
    PBS = "pbs"
    PMG = "pmg"
    PDM = "pdm"

    @property
    def default_hostname(self) -> str:
        return self.value


@dataclass(frozen=True)
class ProductConfig:
    fullname: str
    product: ProxmoxProduct
    enable_btrfs: bool = False


@dataclass(frozen=True)
class IsoInfo:
    release: str
    isorelease: str


@dataclass(frozen=True)
class SetupInfo:
    config: ProductConfig
    iso_info: IsoInfo
    iso_location: Path | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SetupInfo:
        product_cfg = data["product-cfg"]
        iso_info = data["iso-info"]
        locations = data.get("locations", {})
        return cls(
            config=ProductConfig(
                fullname=product_cfg["fullname"],
                product=ProxmoxProduct(product_cfg["product"]),
                enable_btrfs=bool(int(product_cfg.get("enable_btrfs", 0))),
            ),
            iso_info=IsoInfo(
                release=str(iso_info["release"]),
                isorelease=str(iso_info["isorelease"]),
            ),
            iso_location=Path(locations["iso"]) if "iso" in locations else None,
        )


# ==============================================================================
# Locales
# ==============================================================================


@dataclass(frozen=True)
class CountryInfo:
    name: str
    kmap: str
    zone: str = ""


@dataclass(frozen=True)
class LocaleInfo:
    """Catalog of valid countries, keyboard maps and time zones."""

    cczones: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    countries: Mapping[str, CountryInfo] = field(default_factory=dict)
    kmap: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LocaleInfo:
        return cls(
            cczones={cc: tuple(zones) for cc, zones in data.get("cczones", {}).items()},
            countries={
                cc: CountryInfo(
                    name=info["name"], kmap=info.get("kmap", ""), zone=info.get("zone", "")
                )
                for cc, info in data.get("country", {}).items()
            },
            kmap={key: info.get("name", key) for key, info in data.get("kmap", {}).items()},
        )

    def has_country(self, country: str) -> bool:
        return country in self.countries

    def has_keymap(self, keymap: str) -> bool:
        return keymap in self.kmap

    def has_timezone(self, timezone: str) -> bool:
        if timezone == "UTC":
            return True
        return any(timezone in zones for zones in self.cczones.values())


# ==============================================================================
# Runtime environment
# ==============================================================================


@dataclass(frozen=True)
class Disk:
    index: str
    path: str
    size: float  # GiB
    model: str | None = None
    block_size: int | None = None

    @classmethod
    def from_tuple(cls, entry: list[Any]) -> Disk:
        index, device, size_sectors, model, logical_bsize = entry[:5]
        return cls(
            index=str(index),
            path=device,
            size=size_sectors * SECTOR_SIZE / 1024 / 1024 / 1024,
            model=model or None,
            block_size=logical_bsize,
        )

    def sort_key(self) -> tuple[int, str]:
        return (int(self.index), self.path) if self.index.isdigit() else (-1, self.index)


@dataclass(frozen=True)
class Gateway:
    dev: str
    gateway: IpAddress


@dataclass(frozen=True)
class Interface:
    name: str
    index: int
    mac: str
    state: str = "UNKNOWN"
    addresses: tuple[CidrAddress, ...] = ()
    pinned_id: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Interface:
        addresses = tuple(
            CidrAddress(ipaddress.ip_address(addr["address"]), int(addr["prefix"]))
            for addr in data.get("addresses") or ()
        )
        return cls(
            name=data["name"],
            index=int(data["index"]),
            mac=data["mac"],
            state=str(data.get("state", "UNKNOWN")).upper(),
            addresses=addresses,
            pinned_id=None if data.get("pinned_id") is None else str(data["pinned_id"]),
        )


@dataclass(frozen=True)
class NetworkInfo:
    dns_domain: str | None = None
    dns_servers: tuple[IpAddress, ...] = ()
    gateway4: Gateway | None = None
    gateway6: Gateway | None = None
    interfaces: Mapping[str, Interface] = field(default_factory=dict)
    hostname: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NetworkInfo:
        dns = data.get("dns", {})
        routes = data.get("routes") or {}

        def gateway(key: str) -> Gateway | None:
            entry = routes.get(key)
            if not entry:
                return None
            return Gateway(dev=entry["dev"], gateway=ipaddress.ip_address(entry["gateway"]))

        return cls(
            dns_domain=dns.get("domain"),
            dns_servers=tuple(ipaddress.ip_address(ip) for ip in dns.get("dns", [])),
            gateway4=gateway("gateway4"),
            gateway6=gateway("gateway6"),
            interfaces={
                name: Interface.from_dict(iface)
                for name, iface in data.get("interfaces", {}).items()
            },
            hostname=data.get("hostname"),
        )


@dataclass(frozen=True)
class RuntimeInfo:
    disks: tuple[Disk, ...]
    network: NetworkInfo
    total_memory: int = 0
    default_zfs_arc_max: int = DEFAULT_ZFS_ARC_MAX
    boot_type: str = "bios"
    country: str | None = None
    hvm_supported: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RuntimeInfo:
        disks = sorted((Disk.from_tuple(entry) for entry in data.get("disks", [])), key=Disk.sort_key)
        return cls(
            disks=tuple(disks),
            network=NetworkInfo.from_dict(data.get("network", {})),
            total_memory=int(data.get("total_memory", 0)),
            default_zfs_arc_max=int(data.get("default_zfs_arc_max", DEFAULT_ZFS_ARC_MAX)),
            boot_type=data.get("boot_type", "bios"),
            country=data.get("country"),
            hvm_supported=bool(int(data.get("hvm_supported", 0))),
        )

    def disk_by_index(self, index: str) -> Disk | None:
        return next((disk for disk in self.disks if disk.index == index), None)

    def disk_by_suffix(self, name: str) -> Disk | None:
        """First disk whose path ends with ``name`` (e.g. ``sda`` -> ``/dev/sda``)."""
        return next((disk for disk in self.disks if disk.path.endswith(name)), None)


# ==============================================================================
# Loading
# ==============================================================================


def read_json(path: Path, what: str) -> Any:
    try:
        with open(path, encoding="utf-8") as handle:
            return json.load(handle)
    except OSError as error:
        raise SetupError(what, str(error)) from error
    except json.JSONDecodeError as error:
        raise SetupError(what, f"failed to parse JSON: {error}") from error


def _build(factory, data: Any, what: str):
    try:
        return factory(data)
    except (KeyError, TypeError, ValueError) as error:
        raise SetupError(what, f"malformed data: {error!r}") from error


def load_setup_info(run_dir: Path) -> SetupInfo:
    data = read_json(run_dir / settings.ISO_INFO_FILE, "setup info")
    return _build(SetupInfo.from_dict, data, "setup info")


def load_locale_info(run_dir: Path) -> LocaleInfo:
    data = read_json(run_dir / settings.LOCALES_FILE, "locale info")
    return _build(LocaleInfo.from_dict, data, "locale info")


def load_runtime_info(run_dir: Path) -> RuntimeInfo:
    data = read_json(run_dir / settings.RUN_ENV_INFO_FILE, "runtime environment info")
    return _build(RuntimeInfo.from_dict, data, "runtime environment info")


def installer_setup(
    test_mode: bool | None = None,
) -> tuple[SetupInfo, LocaleInfo, RuntimeInfo]:
    """Load product, locale and runtime information of the installer environment.

    Raises:
        SetupError: If a file is missing or malformed, or no disk was found
    """
    run_dir = settings.run_dir(test_mode)
    setup_info = load_setup_info(run_dir)
    locales = load_locale_info(run_dir)
    runtime = load_runtime_info(run_dir)
    if not runtime.disks:
        raise SetupError(
            "runtime environment info", "The installer could not find any supported hard disks."
        )
    return setup_info, locales, runtime

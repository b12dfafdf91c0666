"""The fully resolved configuration handed to the low-level installer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from auto_installer.domain.options import (
    BtrfsCompressOption,
    CidrAddress,
    FsType,
    IpAddress,
    ZfsChecksumOption,
    ZfsCompressOption,
)


@dataclass(frozen=True)
class InstallZfsOption:
    ashift: int
    arc_max: int
    compress: ZfsCompressOption
    checksum: ZfsChecksumOption
    copies: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "ashift": self.ashift,
            "compress": str(self.compress),
            "checksum": str(self.checksum),
            "copies": self.copies,
            "arc_max": self.arc_max,
        }


@dataclass(frozen=True)
class InstallBtrfsOption:
    compress: BtrfsCompressOption

    def to_dict(self) -> dict[str, Any]:
        return {"compress": str(self.compress)}


@dataclass(frozen=True)
class InstallRootPassword:
    """Either a plain text or an already hashed root password."""

    plain: str | None = None
    hashed: str | None = None

    def __post_init__(self) -> None:
        if (self.plain is None) == (self.hashed is None):
            raise ValueError("exactly one of plain or hashed password must be set")

    def to_dict(self) -> dict[str, str]:
        if self.plain is not None:
            return {"plain": self.plain}
        return {"hashed": self.hashed}

    def __repr__(self) -> str:
        kind = "plain" if self.plain is not None else "hashed"
        return f"InstallRootPassword({kind}=<redacted>)"


@dataclass(frozen=True)
class InstallFirstBootSetup:
    enabled: bool = False
    ordering_target: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"enabled": self.enabled}
        if self.ordering_target is not None:
            data["ordering_target"] = self.ordering_target
        return data


@dataclass(frozen=True)
class InstallConfig:
    """Resolved installation plan.

    Instances are never modified. ``autoreboot`` is always emitted as 0, the
    caller decides about rebooting after the low-level installer returns.
    ``network_interface_pin_map`` is only emitted when interface name pinning
    is enabled.
    """

    filesys: FsType
    hdsize: float
    country: str
    timezone: str
    keymap: str
    root_password: InstallRootPassword
    mailto: str
    mngmt_nic: str
    hostname: str
    domain: str
    cidr: CidrAddress
    gateway: IpAddress
    dns: IpAddress
    autoreboot: int = 0
    swapsize: float | None = None
    maxroot: float | None = None
    minfree: float | None = None
    maxvz: float | None = None
    zfs_opts: InstallZfsOption | None = None
    btrfs_opts: InstallBtrfsOption | None = None
    target_hd: str | None = None
    disk_selection: Mapping[str, str] = field(default_factory=dict)
    existing_storage_auto_rename: int = 1
    root_ssh_keys: tuple[str, ...] = ()
    first_boot: InstallFirstBootSetup = field(default_factory=InstallFirstBootSetup)
    network_interface_pin_map: Mapping[str, str] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "autoreboot", 0)
        object.__setattr__(
            self,
            "disk_selection",
            MappingProxyType({key: self.disk_selection[key] for key in sorted(self.disk_selection)}),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "autoreboot": 0,
            "filesys": self.filesys.serialize(),
            "hdsize": self.hdsize,
            "existing_storage_auto_rename": self.existing_storage_auto_rename,
            "country": self.country,
            "timezone": self.timezone,
            "keymap": self.keymap,
            "root_password": self.root_password.to_dict(),
            "mailto": self.mailto,
            "root_ssh_keys": list(self.root_ssh_keys),
            "mngmt_nic": self.mngmt_nic,
            "hostname": self.hostname,
            "domain": self.domain,
            "cidr": str(self.cidr),
            "gateway": str(self.gateway),
            "dns": str(self.dns),
            "first_boot": self.first_boot.to_dict(),
        }
        for key in ("swapsize", "maxroot", "minfree", "maxvz", "target_hd"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.zfs_opts is not None:
            data["zfs_opts"] = self.zfs_opts.to_dict()
        if self.btrfs_opts is not None:
            data["btrfs_opts"] = self.btrfs_opts.to_dict()
        if self.disk_selection:
            data["disk_selection"] = dict(self.disk_selection)
        if self.network_interface_pin_map is not None:
            data["network_interface_pin_map"] = dict(self.network_interface_pin_map)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

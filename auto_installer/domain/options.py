"""Value types shared by the answer file and the install configuration.

Every type here validates on construction, so an instance that exists is
always well-formed. Parsers raise :class:`ValueError` with a human readable
reason; the answer layer wraps these into field-named validation errors.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Union

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

EMAIL_DEFAULT_PLACEHOLDER = "mail@example.invalid"
ROOT_PASSWORD_MIN_LENGTH = 8

_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


class _LowercaseEnum(Enum):
    """Enum parsed case-insensitively from its lowercase value."""

    @classmethod
    def from_value(cls, value: str):
        if not isinstance(value, str):
            raise ValueError(f"expected a string, got {type(value).__name__}")
        try:
            return cls(value.lower())
        except ValueError:
            choices = ", ".join(member.value for member in cls)
            raise ValueError(f"unknown value '{value}', expected one of: {choices}") from None

    def __str__(self) -> str:
        return self.value


class ZfsRaidLevel(_LowercaseEnum):
    RAID0 = "raid0"
    RAID1 = "raid1"
    RAID10 = "raid10"
    RAIDZ1 = "raidz-1"
    RAIDZ2 = "raidz-2"
    RAIDZ3 = "raidz-3"

    @property
    def min_disks(self) -> int:
        return _MIN_DISKS[self.value]

    def __str__(self) -> str:
        return self.value.upper()


class BtrfsRaidLevel(_LowercaseEnum):
    RAID0 = "raid0"
    RAID1 = "raid1"
    RAID10 = "raid10"

    @property
    def min_disks(self) -> int:
        return _MIN_DISKS[self.value]

    def __str__(self) -> str:
        return self.value.upper()


_MIN_DISKS = {
    "raid0": 1,
    "raid1": 2,
    "raid10": 4,
    "raidz-1": 3,
    "raidz-2": 4,
    "raidz-3": 5,
}


class Filesystem(_LowercaseEnum):
    EXT4 = "ext4"
    XFS = "xfs"
    ZFS = "zfs"
    BTRFS = "btrfs"


@dataclass(frozen=True)
class FsType:
    """Filesystem together with its RAID level where one applies."""

    filesystem: Filesystem
    raid: ZfsRaidLevel | BtrfsRaidLevel | None = None

    def __post_init__(self) -> None:
        expected = {
            Filesystem.ZFS: ZfsRaidLevel,
            Filesystem.BTRFS: BtrfsRaidLevel,
        }.get(self.filesystem)
        if expected is None and self.raid is not None:
            raise ValueError(f"{self.filesystem} does not take a RAID level")
        if expected is not None and not isinstance(self.raid, expected):
            raise ValueError(f"{self.filesystem} requires a {expected.__name__}")

    @property
    def is_lvm(self) -> bool:
        return self.filesystem in (Filesystem.EXT4, Filesystem.XFS)

    @property
    def is_zfs(self) -> bool:
        return self.filesystem is Filesystem.ZFS

    @property
    def is_btrfs(self) -> bool:
        return self.filesystem is Filesystem.BTRFS

    @property
    def min_disks(self) -> int:
        return 1 if self.raid is None else self.raid.min_disks

    def serialize(self) -> str:
        """Name the low-level installer expects, e.g. ``zfs (RAID1)``."""
        if self.raid is None:
            return self.filesystem.value
        return f"{self.filesystem.value} ({self.raid})"

    def __str__(self) -> str:
        if self.raid is None:
            return "ext4" if self.filesystem is Filesystem.EXT4 else "XFS"
        return f"{self.filesystem.value.upper()} ({self.raid})"


class ZfsCompressOption(_LowercaseEnum):
    ON = "on"
    OFF = "off"
    LZJB = "lzjb"
    LZ4 = "lz4"
    ZLE = "zle"
    GZIP = "gzip"
    ZSTD = "zstd"


class ZfsChecksumOption(_LowercaseEnum):
    ON = "on"
    FLETCHER4 = "fletcher4"
    SHA256 = "sha256"


class BtrfsCompressOption(_LowercaseEnum):
    ON = "on"
    OFF = "off"
    ZLIB = "zlib"
    LZO = "lzo"
    ZSTD = "zstd"


class KeyboardLayout(_LowercaseEnum):
    DE = "de"
    DE_CH = "de-ch"
    DK = "dk"
    EN_GB = "en-gb"
    EN_US = "en-us"
    ES = "es"
    FI = "fi"
    FR = "fr"
    FR_BE = "fr-be"
    FR_CA = "fr-ca"
    FR_CH = "fr-ch"
    HU = "hu"
    IS = "is"
    IT = "it"
    JP = "jp"
    LT = "lt"
    MK = "mk"
    NL = "nl"
    NO = "no"
    PL = "pl"
    PT = "pt"
    PT_BR = "pt-br"
    SE = "se"
    SI = "si"
    TR = "tr"


def mask_limit(address: IpAddress) -> int:
    return 32 if address.version == 4 else 128


@dataclass(frozen=True)
class CidrAddress:
    """An IP address with prefix length, e.g. ``192.168.1.10/24``."""

    address: IpAddress
    mask: int

    def __post_init__(self) -> None:
        if not 0 <= self.mask <= mask_limit(self.address):
            raise ValueError(f"invalid mask {self.mask} for {self.address}")

    @classmethod
    def parse(cls, value: str) -> CidrAddress:
        if not isinstance(value, str):
            raise ValueError(f"expected a string, got {type(value).__name__}")
        addr, sep, mask = value.partition("/")
        if not sep:
            raise ValueError(f"missing prefix length in '{value}'")
        try:
            address = ipaddress.ip_address(addr)
        except ValueError:
            raise ValueError(f"invalid IP address '{addr}'") from None
        if not mask.isdigit():
            raise ValueError(f"invalid mask '{mask}'")
        return cls(address, int(mask))

    @property
    def is_ipv4(self) -> bool:
        return self.address.version == 4

    @property
    def is_ipv6(self) -> bool:
        return self.address.version == 6

    def __str__(self) -> str:
        return f"{self.address}/{self.mask}"


def parse_ip_address(value: str) -> IpAddress:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {type(value).__name__}")
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        raise ValueError(f"invalid IP address '{value}'") from None


def _valid_label(label: str) -> bool:
    if not label or not label.isascii():
        return False
    if not (label[0].isalnum() and label[-1].isalnum()):
        return False
    return all(char.isalnum() or char == "-" for char in label)


@dataclass(frozen=True)
class Fqdn:
    """A fully qualified domain name with at least a host and one domain label."""

    parts: tuple[str, ...]

    @classmethod
    def parse(cls, value: str) -> Fqdn:
        if not isinstance(value, str):
            raise ValueError(f"expected a string, got {type(value).__name__}")
        parts = tuple(value.split("."))
        for part in parts:
            if not _valid_label(part):
                raise ValueError(f"invalid part '{part}' in FQDN '{value}'")
        if len(parts) < 2:
            raise ValueError(f"FQDN '{value}' is missing a hostname or domain")
        if parts[0].isdigit():
            raise ValueError(f"hostname '{parts[0]}' must not be purely numeric")
        return cls(parts)

    @property
    def host(self) -> str:
        return self.parts[0]

    @property
    def domain(self) -> str:
        return ".".join(self.parts[1:])

    def __str__(self) -> str:
        return ".".join(self.parts)


def validate_email(value: str) -> None:
    if not _EMAIL_RE.match(value):
        raise ValueError("Email does not look like a valid address (user@domain.tld)")
    if value == EMAIL_DEFAULT_PLACEHOLDER:
        raise ValueError("Invalid (default) email address")


def check_swapsize(swapsize: float, hdsize: float) -> None:
    threshold = hdsize / 2.0
    if swapsize > threshold:
        raise ValueError(
            f"Swap size {swapsize} GiB cannot be greater than {threshold} GiB "
            f"(hard disk size / 2)"
        )

"""Answer file model: parse and validate the user-provided ``answer.toml``.

The answer file is TOML with three mandatory sections and two optional ones::

    [global]
    keyboard = "de"
    country = "at"
    fqdn = "pve-1.example.com"
    mailto = "mail@example.com"
    timezone = "Europe/Vienna"
    root-password = "123456789"

    [network]
    source = "from-dhcp"

    [disk-setup]
    filesystem = "zfs"
    zfs.raid = "raid1"
    disk-list = ["sda", "sdb"]

    [first-boot]                    # optional
    [post-installation-webhook]     # optional

Keys are kebab-case; the older snake_case spelling of each key is accepted as
an alias. Unknown keys are rejected, except inside device ``filter`` tables
whose keys are udev property names.

Every rule is checked while parsing. A successfully parsed :class:`Answer`
is internally consistent; what remains to be checked against the running
system (locales, disks, NICs) is the resolver's job.
"""

from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Union

from auto_installer.devices.selector import FilterMatch
from auto_installer.domain.options import (
    BtrfsCompressOption,
    BtrfsRaidLevel,
    CidrAddress,
    Filesystem,
    Fqdn,
    FsType,
    IpAddress,
    KeyboardLayout,
    ROOT_PASSWORD_MIN_LENGTH,
    ZfsChecksumOption,
    ZfsCompressOption,
    ZfsRaidLevel,
    check_swapsize,
    parse_ip_address,
    validate_email,
)
from auto_installer.exceptions import AnswerParseError, AnswerValidationError
from auto_installer.logging import LoggerFactory

log = LoggerFactory.for_answer()

# Tables whose keys are udev property names or MAC addresses rather than answer fields
FILTER_TABLES = ("filter", "mapping")


# ==============================================================================
# Raw table access
# ==============================================================================


class _Section:
    """One TOML table with kebab-case keys, snake_case aliases resolved."""

    def __init__(
        self,
        data: Any,
        path: str,
        allowed: Iterable[str],
        aliases: Mapping[str, str] | None = None,
    ):
        if not isinstance(data, dict):
            raise AnswerValidationError(path, "expected a table")
        self.path = path
        allowed = set(allowed)
        aliases = dict(aliases or {})
        self.values: dict[str, Any] = {}
        self.spelling: dict[str, str] = {}

        for key, value in data.items():
            canonical = aliases.get(key, key.replace("_", "-"))
            if canonical not in allowed:
                raise AnswerValidationError(self.field(key), "unknown field")
            if canonical in self.values:
                raise AnswerValidationError(
                    self.field(canonical),
                    f"given twice, as '{self.spelling[canonical]}' and '{key}'",
                )
            self.values[canonical] = value
            self.spelling[canonical] = key

    def field(self, key: str) -> str:
        return f"{self.path}.{key}" if self.path else key

    def __contains__(self, key: str) -> bool:
        return key in self.values

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def _required(self, key: str) -> Any:
        if key not in self.values:
            raise AnswerValidationError(self.field(key), f"Field '{key}' must be set.")
        return self.values[key]

    def string(self, key: str, required: bool = False) -> str | None:
        if required:
            value = self._required(key)
        elif key not in self.values:
            return None
        else:
            value = self.values[key]
        if not isinstance(value, str):
            raise AnswerValidationError(self.field(key), "expected a string")
        return value

    def boolean(self, key: str, default: bool) -> bool:
        value = self.values.get(key, default)
        if not isinstance(value, bool):
            raise AnswerValidationError(self.field(key), "expected true or false")
        return value

    def integer(self, key: str) -> int | None:
        value = self.values.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise AnswerValidationError(self.field(key), "expected a non-negative integer")
        return value

    def number(self, key: str) -> float | None:
        value = self.values.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise AnswerValidationError(self.field(key), "expected a number")
        return float(value)

    def string_list(self, key: str) -> tuple[str, ...]:
        value = self.values.get(key, [])
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise AnswerValidationError(self.field(key), "expected a list of strings")
        return tuple(value)

    def parsed(self, key: str, parser: Callable[[Any], Any], required: bool = False) -> Any:
        if required:
            value = self._required(key)
        elif key not in self.values:
            return None
        else:
            value = self.values[key]
        try:
            return parser(value)
        except ValueError as error:
            raise AnswerValidationError(self.field(key), str(error)) from error

    def section(self, key: str, allowed: Iterable[str], aliases=None) -> _Section | None:
        if key not in self.values:
            return None
        return _Section(self.values[key], self.field(key), allowed, aliases)

    def filter(self, key: str) -> Mapping[str, str] | None:
        if key not in self.values:
            return None
        value = self.values[key]
        if not isinstance(value, dict) or not all(
            isinstance(pattern, str) for pattern in value.values()
        ):
            raise AnswerValidationError(
                self.field(key), "expected a table of udev property names to glob patterns"
            )
        return MappingProxyType(dict(sorted(value.items())))


# ==============================================================================
# Global
# ==============================================================================


class RebootMode(Enum):
    REBOOT = "reboot"
    POWER_OFF = "power-off"


class FqdnSource(Enum):
    FROM_DHCP = "from-dhcp"


@dataclass(frozen=True)
class FqdnFromDhcp:
    """Hostname from DHCP; the domain given here wins over the one from DHCP."""

    domain: str | None = None


FqdnConfig = Union[Fqdn, FqdnFromDhcp]


@dataclass(frozen=True)
class GlobalSettings:
    country: str
    fqdn: FqdnConfig
    keyboard: KeyboardLayout
    mailto: str
    timezone: str
    root_password: str | None = None
    root_password_hashed: str | None = None
    reboot_on_error: bool = False
    reboot_mode: RebootMode = RebootMode.REBOOT
    root_ssh_keys: tuple[str, ...] = ()
    pre_commands: tuple[str, ...] = ()
    post_commands: tuple[str, ...] = ()

    @classmethod
    def from_section(cls, section: _Section) -> GlobalSettings:
        fqdn = _parse_fqdn(section)
        mailto = section.string("mailto", required=True)
        try:
            validate_email(mailto)
        except ValueError as error:
            raise AnswerValidationError(section.field("mailto"), str(error)) from error

        root_password = section.string("root-password")
        root_password_hashed = section.string("root-password-hashed")
        if root_password is not None and root_password_hashed is not None:
            raise AnswerValidationError(
                section.field("root-password"),
                "`global.root-password` and `global.root-password-hashed` "
                "cannot be set at the same time",
            )
        if root_password is None and root_password_hashed is None:
            raise AnswerValidationError(
                section.field("root-password"),
                "One of `global.root-password` or `global.root-password-hashed` must be set",
            )
        if root_password is not None and len(root_password) < ROOT_PASSWORD_MIN_LENGTH:
            raise AnswerValidationError(
                section.field("root-password"),
                f"`global.root-password` must be at least {ROOT_PASSWORD_MIN_LENGTH} "
                f"characters long",
            )

        return cls(
            country=section.string("country", required=True),
            fqdn=fqdn,
            keyboard=section.parsed("keyboard", KeyboardLayout.from_value, required=True),
            mailto=mailto,
            timezone=section.string("timezone", required=True),
            root_password=root_password,
            root_password_hashed=root_password_hashed,
            reboot_on_error=section.boolean("reboot-on-error", False),
            reboot_mode=section.parsed("reboot-mode", RebootMode) or RebootMode.REBOOT,
            root_ssh_keys=section.string_list("root-ssh-keys"),
            pre_commands=section.string_list("pre-commands"),
            post_commands=section.string_list("post-commands"),
        )


def _parse_fqdn(section: _Section) -> FqdnConfig:
    value = section.get("fqdn")
    if value is None:
        raise AnswerValidationError(section.field("fqdn"), "Field 'fqdn' must be set.")
    if isinstance(value, str):
        return section.parsed("fqdn", Fqdn.parse)

    extended = section.section("fqdn", ("source", "domain"))
    extended.parsed("source", FqdnSource)
    domain = extended.string("domain")
    return FqdnFromDhcp(domain=domain)


# ==============================================================================
# Network
# ==============================================================================


class NetworkSource(Enum):
    FROM_DHCP = "from-dhcp"
    FROM_ANSWER = "from-answer"


MANUAL_NETWORK_FIELDS = ("cidr", "dns", "gateway", "filter")


@dataclass(frozen=True)
class DhcpNetwork:
    """Use whatever the DHCP server handed out at boot."""


@dataclass(frozen=True)
class ManualNetwork:
    cidr: CidrAddress
    dns: IpAddress
    gateway: IpAddress
    filter: Mapping[str, str]


NetworkSettings = Union[DhcpNetwork, ManualNetwork]


MAX_IFNAME_LEN = 15
PINNING_FIELDS = ("enabled", "mapping")
_IFNAME = re.compile(r"[A-Za-z0-9_]+")


def check_interface_name(name: str) -> None:
    """Raise ValueError unless ``name`` is usable as a pinned interface name."""
    if not name:
        raise ValueError("interface name cannot be empty")
    if len(name) > MAX_IFNAME_LEN:
        raise ValueError(
            f"interface name '{name}' cannot be longer than {MAX_IFNAME_LEN} characters"
        )
    if name.isdigit():
        raise ValueError(f"interface name '{name}' must not be fully numeric")
    if name[0].isdigit():
        raise ValueError(f"interface name '{name}' must not start with a number")
    if not _IFNAME.fullmatch(name):
        raise ValueError(
            f"interface name '{name}' must only consist of alphanumeric characters and underscores"
        )


@dataclass(frozen=True)
class InterfacePinning:
    """Fixed names for network interfaces, keyed by lower case MAC address.

    Interfaces without an entry are named ``nic<N>`` after the id the
    low-level installer assigned them.
    """

    enabled: bool = False
    mapping: Mapping[str, str] = field(default_factory=dict)

    DEFAULT_PREFIX = "nic"

    def pinned_name(self, mac: str, pinned_id: str | None) -> str | None:
        name = self.mapping.get(mac.lower())
        if name is None and pinned_id is not None:
            name = f"{self.DEFAULT_PREFIX}{pinned_id}"
        return name

    @classmethod
    def from_section(cls, section: _Section) -> InterfacePinning:
        enabled = section.boolean("enabled", False)
        raw = section.get("mapping", {})
        if not isinstance(raw, dict):
            raise AnswerValidationError(
                section.field("mapping"), "expected a table of MAC addresses to interface names"
            )

        mapping: dict[str, str] = {}
        owners: dict[str, str] = {}
        for mac, name in raw.items():
            path = f"{section.field('mapping')}.{mac}"
            if not isinstance(name, str):
                raise AnswerValidationError(path, "expected a string")
            mac = mac.lower()
            if mac in mapping:
                raise AnswerValidationError(path, f"address '{mac}' is mapped twice")
            try:
                check_interface_name(name)
            except ValueError as error:
                raise AnswerValidationError(path, str(error)) from error
            if name in owners:
                raise AnswerValidationError(
                    path, f"duplicate interface name mapping '{name}' for: {mac}, {owners[name]}"
                )
            owners[name] = mac
            mapping[mac] = name

        if mapping and not enabled:
            log.warning(
                f"Ignoring '{section.field('mapping')}', interface name pinning is not enabled"
            )
        return cls(enabled=enabled, mapping=MappingProxyType(dict(sorted(mapping.items()))))


@dataclass(frozen=True)
class Network:
    settings: NetworkSettings = field(default_factory=DhcpNetwork)
    interface_name_pinning: InterfacePinning | None = None

    @property
    def use_dhcp(self) -> bool:
        return isinstance(self.settings, DhcpNetwork)

    @classmethod
    def from_section(cls, section: _Section) -> Network:
        pinning_section = section.section("interface-name-pinning", PINNING_FIELDS)
        pinning = (
            InterfacePinning.from_section(pinning_section) if pinning_section is not None else None
        )

        use_dhcp = section.boolean("use-dhcp", True)
        source = section.parsed("source", NetworkSource)
        if source is not None:
            if "use-dhcp" in section and use_dhcp != (source is NetworkSource.FROM_DHCP):
                raise AnswerValidationError(
                    section.field("source"),
                    f"'{source.value}' contradicts 'use-dhcp = {str(use_dhcp).lower()}'",
                )
            use_dhcp = source is NetworkSource.FROM_DHCP

        if use_dhcp:
            for key in MANUAL_NETWORK_FIELDS:
                if key in section:
                    log.warning(
                        f"Ignoring '{section.field(key)}', the network is configured by DHCP"
                    )
            return cls(DhcpNetwork(), pinning)

        cidr = section.parsed("cidr", CidrAddress.parse, required=True)
        dns = section.parsed("dns", parse_ip_address, required=True)
        gateway = section.parsed("gateway", parse_ip_address, required=True)
        if "filter" not in section:
            raise AnswerValidationError(section.field("filter"), "Field 'filter' must be set.")
        settings = ManualNetwork(cidr=cidr, dns=dns, gateway=gateway, filter=section.filter("filter"))
        return cls(settings, pinning)


# ==============================================================================
# Disk setup
# ==============================================================================


@dataclass(frozen=True)
class ExplicitDisks:
    """Disks named explicitly; each name is matched as a suffix of the disk path."""

    names: tuple[str, ...]


@dataclass(frozen=True)
class FilteredDisks:
    filters: Mapping[str, str]


DiskSelection = Union[ExplicitDisks, FilteredDisks]


@dataclass(frozen=True)
class LvmOptions:
    hdsize: float | None = None
    swapsize: float | None = None
    maxroot: float | None = None
    maxvz: float | None = None
    minfree: float | None = None

    FIELDS = ("hdsize", "swapsize", "maxroot", "maxvz", "minfree")

    @classmethod
    def from_section(cls, section: _Section | None) -> LvmOptions:
        if section is None:
            return cls()
        opts = cls(**{key: section.number(key) for key in cls.FIELDS})
        if opts.swapsize is not None and opts.hdsize is not None:
            try:
                check_swapsize(opts.swapsize, opts.hdsize)
            except ValueError as error:
                raise AnswerValidationError(section.field("swapsize"), str(error)) from error
        return opts


@dataclass(frozen=True)
class ZfsOptions:
    raid: ZfsRaidLevel
    ashift: int | None = None
    arc_max: int | None = None
    checksum: ZfsChecksumOption | None = None
    compress: ZfsCompressOption | None = None
    copies: int | None = None
    hdsize: float | None = None

    FIELDS = ("raid", "ashift", "arc-max", "checksum", "compress", "copies", "hdsize")

    @classmethod
    def from_section(cls, section: _Section) -> ZfsOptions:
        return cls(
            raid=section.parsed("raid", ZfsRaidLevel.from_value),
            ashift=section.integer("ashift"),
            arc_max=section.integer("arc-max"),
            checksum=section.parsed("checksum", ZfsChecksumOption.from_value),
            compress=section.parsed("compress", ZfsCompressOption.from_value),
            copies=section.integer("copies"),
            hdsize=section.number("hdsize"),
        )


@dataclass(frozen=True)
class BtrfsOptions:
    raid: BtrfsRaidLevel
    compress: BtrfsCompressOption | None = None
    hdsize: float | None = None

    FIELDS = ("raid", "compress", "hdsize")

    @classmethod
    def from_section(cls, section: _Section) -> BtrfsOptions:
        return cls(
            raid=section.parsed("raid", BtrfsRaidLevel.from_value),
            compress=section.parsed("compress", BtrfsCompressOption.from_value),
            hdsize=section.number("hdsize"),
        )


FsOptions = Union[LvmOptions, ZfsOptions, BtrfsOptions]


@dataclass(frozen=True)
class DiskSetup:
    fs_type: FsType
    selection: DiskSelection
    filter_match: FilterMatch | None
    options: FsOptions

    @classmethod
    def from_section(cls, section: _Section) -> DiskSetup:
        filesystem = section.parsed("filesystem", Filesystem.from_value, required=True)
        disk_list = section.string_list("disk-list")
        filters = section.filter("filter")

        if not disk_list and filters is None:
            raise AnswerValidationError(
                section.field("disk-list"), "Need either 'disk-list' or 'filter' set"
            )
        if disk_list and filters is not None:
            raise AnswerValidationError(
                section.field("filter"), "Cannot use both, 'disk-list' and 'filter'"
            )
        selection: DiskSelection = (
            ExplicitDisks(disk_list) if disk_list else FilteredDisks(filters)
        )
        filter_match = section.parsed("filter-match", FilterMatch.from_value)

        present = {name for name in ("lvm", "zfs", "btrfs") if name in section}

        if filesystem in (Filesystem.EXT4, Filesystem.XFS):
            _forbid_foreign_options(section, present, "lvm")
            if len(disk_list) > 1:
                raise AnswerValidationError(
                    section.field("disk-list"),
                    "make sure to define only one disk for ext4 and xfs",
                )
            fs_type = FsType(filesystem)
            options: FsOptions = LvmOptions.from_section(
                section.section("lvm", LvmOptions.FIELDS)
            )
        elif filesystem is Filesystem.ZFS:
            _forbid_foreign_options(section, present, "zfs")
            zfs = section.section("zfs", ZfsOptions.FIELDS)
            if zfs is None or "raid" not in zfs:
                raise AnswerValidationError(
                    section.field("zfs.raid"), "ZFS raid level 'zfs.raid' must be set"
                )
            options = ZfsOptions.from_section(zfs)
            fs_type = FsType(filesystem, options.raid)
        else:
            _forbid_foreign_options(section, present, "btrfs")
            btrfs = section.section("btrfs", BtrfsOptions.FIELDS)
            if btrfs is None or "raid" not in btrfs:
                raise AnswerValidationError(
                    section.field("btrfs.raid"), "BTRFS raid level 'btrfs.raid' must be set"
                )
            options = BtrfsOptions.from_section(btrfs)
            fs_type = FsType(filesystem, options.raid)

        if isinstance(selection, ExplicitDisks):
            _check_disk_list(section, fs_type, selection.names)

        return cls(
            fs_type=fs_type, selection=selection, filter_match=filter_match, options=options
        )


def _forbid_foreign_options(section: _Section, present: set[str], allowed: str) -> None:
    foreign = sorted(present - {allowed})
    if foreign:
        raise AnswerValidationError(
            section.field(foreign[0]), f"make sure only '{allowed}' options are set"
        )


def _check_disk_list(section: _Section, fs_type: FsType, names: tuple[str, ...]) -> None:
    if len(names) < fs_type.min_disks:
        raise AnswerValidationError(
            section.field("disk-list"), f"{fs_type}: need at least {fs_type.min_disks} disks"
        )
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise AnswerValidationError(
                section.field("disk-list"), f"List of disks contains duplicate device {name}"
            )
        seen.add(name)


# ==============================================================================
# First boot hook and webhook
# ==============================================================================


class FirstBootSource(Enum):
    FROM_URL = "from-url"
    FROM_ISO = "from-iso"


class FirstBootOrdering(Enum):
    BEFORE_NETWORK = "before-network"
    NETWORK_ONLINE = "network-online"
    FULLY_UP = "fully-up"

    @property
    def systemd_target(self) -> str:
        """systemd target the hook service is ordered against, without ``.target``."""
        return {
            FirstBootOrdering.BEFORE_NETWORK: "network-pre",
            FirstBootOrdering.NETWORK_ONLINE: "network-online",
            FirstBootOrdering.FULLY_UP: "multi-user",
        }[self]


@dataclass(frozen=True)
class FirstBootHook:
    source: FirstBootSource
    ordering: FirstBootOrdering = FirstBootOrdering.FULLY_UP
    url: str | None = None
    cert_fingerprint: str | None = None

    @classmethod
    def from_section(cls, section: _Section) -> FirstBootHook:
        hook = cls(
            source=section.parsed("source", FirstBootSource, required=True),
            ordering=section.parsed("ordering", FirstBootOrdering)
            or FirstBootOrdering.FULLY_UP,
            url=section.string("url"),
            cert_fingerprint=section.string("cert-fingerprint"),
        )
        if hook.source is FirstBootSource.FROM_URL and hook.url is None:
            raise AnswerValidationError(
                section.field("url"),
                "first-boot executable source set to URL, but none specified!",
            )
        return hook


@dataclass(frozen=True)
class PostInstallationWebhook:
    url: str
    cert_fingerprint: str | None = None

    @classmethod
    def from_section(cls, section: _Section) -> PostInstallationWebhook:
        return cls(
            url=section.string("url", required=True),
            cert_fingerprint=section.string("cert-fingerprint"),
        )


# ==============================================================================
# Answer
# ==============================================================================

GLOBAL_FIELDS = (
    "country",
    "fqdn",
    "keyboard",
    "mailto",
    "timezone",
    "root-password",
    "root-password-hashed",
    "reboot-on-error",
    "reboot-mode",
    "root-ssh-keys",
    "pre-commands",
    "post-commands",
)
NETWORK_FIELDS = ("use-dhcp", "source", "interface-name-pinning") + MANUAL_NETWORK_FIELDS
DISK_SETUP_FIELDS = ("filesystem", "disk-list", "filter", "filter-match", "lvm", "zfs", "btrfs")
HOOK_FIELDS = ("source", "ordering", "url", "cert-fingerprint")
WEBHOOK_FIELDS = ("url", "cert-fingerprint")
TOP_LEVEL_FIELDS = ("global", "network", "disk-setup", "first-boot", "post-installation-webhook")


@dataclass(frozen=True)
class Answer:
    """A parsed and validated answer file."""

    global_: GlobalSettings
    network: Network
    disks: DiskSetup
    first_boot: FirstBootHook | None = None
    post_installation_webhook: PostInstallationWebhook | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Answer:
        root = _Section(data, "", TOP_LEVEL_FIELDS)
        for required in ("global", "network", "disk-setup"):
            if required not in root:
                raise AnswerValidationError(required, f"Section '[{required}]' must be set.")

        global_ = GlobalSettings.from_section(
            root.section("global", GLOBAL_FIELDS, aliases={"password": "root-password"})
        )
        network = Network.from_section(root.section("network", NETWORK_FIELDS))
        disks = DiskSetup.from_section(root.section("disk-setup", DISK_SETUP_FIELDS))

        first_boot = root.section("first-boot", HOOK_FIELDS)
        webhook = root.section("post-installation-webhook", WEBHOOK_FIELDS)

        return cls(
            global_=global_,
            network=network,
            disks=disks,
            first_boot=FirstBootHook.from_section(first_boot) if first_boot is not None else None,
            post_installation_webhook=(
                PostInstallationWebhook.from_section(webhook) if webhook is not None else None
            ),
        )

    @classmethod
    def parse(cls, data: bytes | str, source: str | None = None) -> Answer:
        """Parse and validate answer file contents.

        Raises:
            AnswerParseError: If the contents are not valid UTF-8 TOML
            AnswerValidationError: If a field is missing, unknown or inconsistent
        """
        return cls.from_dict(load_toml(data, source))

    @classmethod
    def load(cls, path: Path) -> Answer:
        path = Path(path)
        try:
            contents = path.read_bytes()
        except OSError as error:
            raise AnswerParseError(f"opening answer file failed: {error}", str(path)) from error
        return cls.parse(contents, str(path))


def load_toml(data: bytes | str, source: str | None = None) -> dict[str, Any]:
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as error:
            raise AnswerParseError(f"not valid UTF-8: {error}", source) from error
    try:
        return tomllib.loads(data)
    except tomllib.TOMLDecodeError as error:
        raise AnswerParseError(str(error), source) from error


def parse_answer(data: bytes | str) -> Answer:
    return Answer.parse(data)


def load_answer(path: Path) -> Answer:
    return Answer.load(path)


def find_deprecated_keys(data: Mapping[str, Any], prefix: str = "") -> list[str]:
    """Dotted paths of snake_case keys, which are accepted only as aliases.

    Keys inside filter tables are udev property names and are skipped.
    """
    found = []
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else key
        if "_" in key:
            found.append(path)
        if isinstance(value, dict) and key not in FILTER_TABLES:
            found.extend(find_deprecated_keys(value, path))
    return found

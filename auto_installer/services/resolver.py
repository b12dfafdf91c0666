"""Resolve a parsed answer against the running system into an InstallConfig.

Resolution runs in a fixed order and stops at the first problem:

1. the filesystem must be supported by the product on this ISO
2. country, keyboard and timezone must exist in the locale catalog
3. network settings start from what DHCP provided and are overridden by the
   answer (FQDN, manual address, NIC filter, interface name pinning)
4. target disks are picked by name or by udev filter
5. sizing and ZFS/Btrfs tuning get their defaults

Either a complete :class:`InstallConfig` is returned or a
:class:`ResolveError` (or a device selection error) is raised.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Mapping

from auto_installer.devices.inventory import DeviceInventory
from auto_installer.devices.selector import FilterMatch, select_many, select_one
from auto_installer.domain.answer import (
    Answer,
    BtrfsOptions,
    ExplicitDisks,
    FqdnFromDhcp,
    InterfacePinning,
    LvmOptions,
    ManualNetwork,
    ZfsOptions,
)
from auto_installer.domain.install_config import (
    InstallBtrfsOption,
    InstallConfig,
    InstallFirstBootSetup,
    InstallRootPassword,
    InstallZfsOption,
)
from auto_installer.domain.options import (
    BtrfsCompressOption,
    CidrAddress,
    Fqdn,
    IpAddress,
    ZfsChecksumOption,
    ZfsCompressOption,
)
from auto_installer.domain.setup import LocaleInfo, NetworkInfo, RuntimeInfo, SetupInfo
from auto_installer.exceptions import (
    DiskNotFoundError,
    FilesystemNotSupportedError,
    InvalidLocaleError,
    NoDisksSelectedError,
    ResolveError,
)
from auto_installer.logging import get_logger

log = get_logger(source="resolver", tags=["answer", "resolve"])

DEFAULT_DOMAIN = "example.invalid"
DEFAULT_CIDR = CidrAddress(ipaddress.ip_address("192.168.100.2"), 24)
DEFAULT_GATEWAY = ipaddress.ip_address("192.168.100.1")
DEFAULT_DNS = ipaddress.ip_address("192.168.100.1")

ZFS_DEFAULT_ASHIFT = 12
ZFS_DEFAULT_COPIES = 1


@dataclass(frozen=True)
class NetworkOptions:
    ifname: str
    hostname: str
    domain: str
    cidr: CidrAddress
    gateway: IpAddress
    dns: IpAddress
    pin_map: Mapping[str, str] | None = None

    @classmethod
    def defaults_from(
        cls,
        setup: SetupInfo,
        network: NetworkInfo,
        default_domain: str | None = None,
    ) -> NetworkOptions:
        """Network settings as negotiated via DHCP, with static fallbacks.

        Prefers the interface carrying the IPv4 default route, then IPv6,
        then the interface with the lowest index.
        """
        ifname = ""
        cidr = DEFAULT_CIDR
        gateway = DEFAULT_GATEWAY
        dns = network.dns_servers[0] if network.dns_servers else DEFAULT_DNS

        gw4 = network.gateway4
        iface = network.interfaces.get(gw4.dev) if gw4 else None
        if gw4 and iface:
            ifname = iface.name
            ipv4 = next((addr for addr in iface.addresses if addr.is_ipv4), None)
            if ipv4 is not None:
                gateway = gw4.gateway
                cidr = ipv4
            else:
                gw6 = network.gateway6
                iface6 = network.interfaces.get(gw6.dev) if gw6 else None
                ipv6 = (
                    next((addr for addr in iface6.addresses if addr.is_ipv6), None)
                    if iface6
                    else None
                )
                if ipv6 is not None:
                    ifname = iface6.name
                    gateway = gw6.gateway
                    cidr = ipv6

        if not ifname and network.interfaces:
            ifname = min(network.interfaces.values(), key=lambda i: i.index).name

        hostname = network.hostname or setup.config.product.default_hostname
        domain = default_domain or network.dns_domain or DEFAULT_DOMAIN

        return cls(
            ifname=ifname,
            hostname=hostname,
            domain=domain,
            cidr=cidr,
            gateway=gateway,
            dns=dns,
        )


def verify_filesystem_settings(answer: Answer, setup: SetupInfo) -> None:
    log.info("Verifying filesystem settings")
    if answer.disks.fs_type.is_btrfs and not setup.config.enable_btrfs:
        raise FilesystemNotSupportedError("BTRFS", setup.config.fullname)


def verify_locale_settings(answer: Answer, locales: LocaleInfo) -> None:
    log.info("Verifying locale settings")
    settings = answer.global_
    if not locales.has_country(settings.country):
        raise InvalidLocaleError("country", settings.country)
    if not locales.has_keymap(settings.keyboard.value):
        raise InvalidLocaleError("keyboard", settings.keyboard.value)
    if not locales.has_timezone(settings.timezone):
        raise InvalidLocaleError("timezone", settings.timezone)


def verify_network_settings(answer: Answer, runtime: RuntimeInfo) -> None:
    log.info("Verifying network settings")
    pinning = answer.network.interface_name_pinning
    if pinning is None:
        return
    known = {iface.mac.lower() for iface in runtime.network.interfaces.values()}
    for mac, name in pinning.mapping.items():
        if mac not in known:
            log.warning(
                f"found unknown address '{mac}' (mapped to '{name}') "
                "in network interface pinning options"
            )


def get_network_settings(
    answer: Answer,
    inventory: DeviceInventory,
    runtime: RuntimeInfo,
    setup: SetupInfo,
) -> NetworkOptions:
    log.info("Setting up network configuration")
    fqdn = answer.global_.fqdn

    if isinstance(fqdn, FqdnFromDhcp):
        if runtime.network.hostname is None:
            raise ResolveError(
                '`global.fqdn.source` set to "from-dhcp", but DHCP server did not provide a hostname!'
            )
        if runtime.network.dns_domain is None and fqdn.domain is None:
            raise ResolveError(
                "no domain received from DHCP server and `global.fqdn.domain` is unset!"
            )
        options = NetworkOptions.defaults_from(setup, runtime.network, fqdn.domain)
    else:
        options = _with_fqdn(NetworkOptions.defaults_from(setup, runtime.network), fqdn)

    settings = answer.network.settings
    if isinstance(settings, ManualNetwork):
        options = NetworkOptions(
            ifname=select_one(settings.filter, inventory.nics),
            hostname=options.hostname,
            domain=options.domain,
            cidr=settings.cidr,
            gateway=settings.gateway,
            dns=settings.dns,
        )

    pinning = answer.network.interface_name_pinning
    if pinning is not None and pinning.enabled:
        log.info("Network interface name pinning is enabled")
        options = _with_pinning(options, pinning, runtime.network)

    log.info(f"Network interface used is '{options.ifname}'")
    return options


def _with_pinning(
    options: NetworkOptions, pinning: InterfacePinning, network: NetworkInfo
) -> NetworkOptions:
    """Rename the management NIC and complete the MAC to name map.

    The low-level installer expects an entry for every interface it numbered,
    so interfaces missing from the answer get their default ``nic<N>`` name.
    """
    pin_map = dict(pinning.mapping)
    for iface in network.interfaces.values():
        name = pinning.pinned_name(iface.mac, iface.pinned_id)
        if name is not None:
            pin_map.setdefault(iface.mac.lower(), name)

    ifname = options.ifname
    iface = network.interfaces.get(ifname)
    if iface is not None:
        ifname = pinning.pinned_name(iface.mac, iface.pinned_id) or ifname
    return replace(options, ifname=ifname, pin_map=MappingProxyType(dict(sorted(pin_map.items()))))


def _with_fqdn(options: NetworkOptions, fqdn: Fqdn) -> NetworkOptions:
    return NetworkOptions(
        ifname=options.ifname,
        hostname=fqdn.host,
        domain=fqdn.domain,
        cidr=options.cidr,
        gateway=options.gateway,
        dns=options.dns,
    )


def select_single_disk(answer: Answer, inventory: DeviceInventory, runtime: RuntimeInfo) -> str:
    """Path of the target disk for ext4 and xfs installations."""
    selection = answer.disks.selection
    if isinstance(selection, ExplicitDisks):
        name = selection.names[0]
        disk = runtime.disk_by_suffix(name)
        if disk is None:
            raise DiskNotFoundError(name)
    else:
        index = select_one(selection.filters, inventory.disks)
        disk = runtime.disk_by_index(index)
        if disk is None:
            raise DiskNotFoundError(index)
    log.info(f"Selected disk: {disk.path}")
    return disk.path


def select_disks(
    answer: Answer, inventory: DeviceInventory, runtime: RuntimeInfo
) -> dict[str, str]:
    """Disk indices for ZFS and Btrfs installations, keyed and valued by index."""
    selection = answer.disks.selection
    indices: list[str] = []
    if isinstance(selection, ExplicitDisks):
        log.info("Disk selection found")
        for name in selection.names:
            disk = runtime.disk_by_suffix(name)
            if disk is None:
                log.warning(f"Disk '{name}' from 'disk-list' not found, skipping it")
                continue
            indices.append(disk.index)
    else:
        log.info("No disk list found, looking for disk filters")
        policy = answer.disks.filter_match or FilterMatch.ANY
        for index in select_many(selection.filters, inventory.disks, policy):
            if runtime.disk_by_index(index) is None:
                log.warning(f"Disk with index {index} matched but is not usable, skipping it")
                continue
            indices.append(index)

    if not indices:
        raise NoDisksSelectedError()

    selected = {index: index for index in sorted(indices)}
    paths = " ".join(runtime.disk_by_index(index).path for index in selected)
    log.info(f"Selected disks: {paths}")
    return selected


def resolve(
    answer: Answer,
    inventory: DeviceInventory,
    runtime: RuntimeInfo,
    locales: LocaleInfo,
    setup: SetupInfo,
) -> InstallConfig:
    """Turn an answer into the concrete configuration for the low-level installer.

    Raises:
        ResolveError: If the answer cannot be satisfied on this system
        DeviceSelectionError: If a device filter is empty, invalid or matches nothing
    """
    log.info("Parsing answer file")
    verify_filesystem_settings(answer, setup)
    fs_type = answer.disks.fs_type
    log.info(f"File system selected: {fs_type}")

    verify_locale_settings(answer, locales)
    verify_network_settings(answer, runtime)
    network = get_network_settings(answer, inventory, runtime, setup)

    settings = answer.global_
    if settings.root_password is not None:
        root_password = InstallRootPassword(plain=settings.root_password)
    else:
        root_password = InstallRootPassword(hashed=settings.root_password_hashed)

    sizing: dict = {}
    options = answer.disks.options
    if isinstance(options, LvmOptions):
        target_hd = select_single_disk(answer, inventory, runtime)
        disk = next(d for d in runtime.disks if d.path == target_hd)
        sizing.update(
            target_hd=target_hd,
            hdsize=options.hdsize if options.hdsize is not None else disk.size,
            swapsize=options.swapsize,
            maxroot=options.maxroot,
            maxvz=options.maxvz,
            minfree=options.minfree,
        )
    else:
        disk_selection = select_disks(answer, inventory, runtime)
        first_disk = runtime.disk_by_index(next(iter(disk_selection)))
        sizing.update(
            disk_selection=disk_selection,
            hdsize=options.hdsize if options.hdsize is not None else first_disk.size,
        )
        if isinstance(options, ZfsOptions):
            sizing["zfs_opts"] = InstallZfsOption(
                ashift=_default(options.ashift, ZFS_DEFAULT_ASHIFT),
                arc_max=_default(options.arc_max, runtime.default_zfs_arc_max),
                compress=options.compress or ZfsCompressOption.ON,
                checksum=options.checksum or ZfsChecksumOption.ON,
                copies=_default(options.copies, ZFS_DEFAULT_COPIES),
            )
        elif isinstance(options, BtrfsOptions):
            sizing["btrfs_opts"] = InstallBtrfsOption(
                compress=options.compress or BtrfsCompressOption.OFF
            )

    first_boot = InstallFirstBootSetup()
    if answer.first_boot is not None:
        first_boot = InstallFirstBootSetup(
            enabled=True, ordering_target=answer.first_boot.ordering.systemd_target
        )

    return InstallConfig(
        autoreboot=0,
        filesys=fs_type,
        country=settings.country,
        timezone=settings.timezone,
        keymap=settings.keyboard.value,
        root_password=root_password,
        mailto=settings.mailto,
        root_ssh_keys=settings.root_ssh_keys,
        mngmt_nic=network.ifname,
        hostname=network.hostname,
        domain=network.domain,
        cidr=network.cidr,
        gateway=network.gateway,
        dns=network.dns,
        network_interface_pin_map=network.pin_map,
        first_boot=first_boot,
        **sizing,
    )


def _default(value, fallback):
    return fallback if value is None else value

"""Select devices from an inventory with glob filters over udev properties.

A filter set maps a udev property key to a glob pattern, e.g.
``{"ID_SERIAL_SHORT": "*2222*", "ID_MODEL": "Samsung*"}``.

Selection is deterministic: devices are examined in lexical order of their
id, ``select_one`` returns the smallest matching id and ``select_many``
returns its ids sorted ascending.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Mapping

from auto_installer.devices.glob import GlobPattern, compile_glob
from auto_installer.devices.inventory import DeviceRecord
from auto_installer.exceptions import (
    FilterSyntaxError,
    NoFilterDefinedError,
    NoMatchError,
)
from auto_installer.logging import LoggerFactory

log = LoggerFactory.for_udev()


class FilterMatch(Enum):
    """How the keys of a filter set are combined."""

    ANY = "any"
    ALL = "all"

    @classmethod
    def from_value(cls, value: str) -> FilterMatch:
        return cls(value.lower())


def _compile(filters: Mapping[str, str]) -> list[tuple[str, GlobPattern]]:
    return [(key, compile_glob(filters[key])) for key in sorted(filters)]


def _device_matches(
    device: DeviceRecord, patterns: list[tuple[str, GlobPattern]]
) -> tuple[bool, bool]:
    """Return (did_match_once, did_match_all) for one device.

    A filter key the device has no property for neither matches nor fails.
    """
    did_match_once = False
    did_match_all = True
    for key, pattern in patterns:
        value = device.properties.get(key)
        if value is None:
            continue
        if pattern.matches(value):
            did_match_once = True
        else:
            did_match_all = False
    return did_match_once, did_match_all


def select_one(filters: Mapping[str, str], devices: Mapping[str, DeviceRecord]) -> str:
    """Return the smallest device id for which any filter key matches.

    Raises:
        NoFilterDefinedError: If ``filters`` is empty
        NoMatchError: If no device matches
        InvalidGlobError: If a pattern cannot be compiled
    """
    if not filters:
        raise NoFilterDefinedError()
    patterns = _compile(filters)

    for device_id in sorted(devices):
        did_match_once, _ = _device_matches(devices[device_id], patterns)
        if did_match_once:
            log.debug(f"Filter {dict(filters)} selected device {device_id}")
            return device_id

    raise NoMatchError(filters)


def select_many(
    filters: Mapping[str, str],
    devices: Mapping[str, DeviceRecord],
    policy: FilterMatch = FilterMatch.ANY,
) -> list[str]:
    """Return the ids of all devices matching ``filters`` under ``policy``.

    With ``FilterMatch.ALL`` a device needs at least one matching key and is
    excluded if any filter key it does expose fails to match; keys it lacks
    are not held against it.

    Raises:
        NoMatchError: If no device matches
        InvalidGlobError: If a pattern cannot be compiled
    """
    patterns = _compile(filters)

    selected = []
    for device_id in sorted(devices):
        did_match_once, did_match_all = _device_matches(devices[device_id], patterns)
        if policy is FilterMatch.ALL and did_match_all and did_match_once:
            selected.append(device_id)
        elif policy is FilterMatch.ANY and did_match_once:
            selected.append(device_id)

    if not selected:
        raise NoMatchError(filters)

    log.debug(f"Filter {dict(filters)} ({policy.value}) selected devices {selected}")
    return sorted(selected)


def parse_filter_args(arguments: Iterable[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` command line arguments into a filter set.

    Raises:
        FilterSyntaxError: If an argument lacks ``=`` or has an empty side
    """
    filters: dict[str, str] = {}
    for argument in arguments:
        key, sep, value = argument.partition("=")
        if not sep or not key or not value:
            raise FilterSyntaxError(argument)
        filters[key] = value
    return filters

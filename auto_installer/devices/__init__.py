"""Device inventory and glob filter matching.

This package captures udev properties of disks and network interfaces and
selects devices from them with glob filters.
"""

from __future__ import annotations

from .glob import GlobPattern, matches
from .inventory import DeviceInventory, DeviceMap, DeviceRecord
from .selector import FilterMatch, parse_filter_args, select_many, select_one


__all__ = [
    "DeviceInventory",
    "DeviceMap",
    "DeviceRecord",
    "FilterMatch",
    "GlobPattern",
    "matches",
    "parse_filter_args",
    "select_many",
    "select_one",
]

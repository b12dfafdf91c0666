"""Domain models for answer files, runtime information and install configs.

This package contains the validated, immutable objects that flow from the
answer file through resolution to the low-level installer.
"""

from __future__ import annotations

from .answer import Answer, DiskSetup, GlobalSettings, Network
from .install_config import InstallConfig
from .options import CidrAddress, Fqdn, FsType
from .setup import LocaleInfo, RuntimeInfo, SetupInfo


__all__ = [
    "Answer",
    "CidrAddress",
    "DiskSetup",
    "Fqdn",
    "FsType",
    "GlobalSettings",
    "InstallConfig",
    "LocaleInfo",
    "Network",
    "RuntimeInfo",
    "SetupInfo",
]

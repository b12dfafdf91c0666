"""System identification data sent along with HTTP answer requests.

Answer servers use it to pick the right answer for a machine, e.g. by DMI
serial number or by one of the MAC addresses.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import psutil

from auto_installer.config import settings
from auto_installer.exceptions import SysInfoError
from auto_installer.logging import get_logger

log = get_logger(source=__name__)

SYSTEM_FILES = ("product_serial", "product_sku", "product_uuid", "product_name")
BASEBOARD_FILES = ("board_asset_tag", "board_serial", "board_name")
CHASSIS_FILES = ("chassis_serial", "chassis_sku", "chassis_asset_tag")

PRODUCT_NOT_AVAILABLE = "Not available. Would be one of the following: pve, pmg, pbs"


def get_dmi_infos(files: tuple[str, ...], dmi_dir: Path = settings.DMI_DIR) -> dict[str, str]:
    """Read DMI attributes; ``product_serial`` is reported as ``serial``.

    Missing attributes are skipped.

    Raises:
        SysInfoError: If an attribute exists but cannot be read
    """
    infos: dict[str, str] = {}
    for name in files:
        path = Path(dmi_dir) / name
        try:
            content = path.read_text(encoding="utf-8", errors="replace").strip()
        except FileNotFoundError:
            continue
        except PermissionError as error:
            raise SysInfoError(
                "Could not read data. Are you running as root or with sudo?"
            ) from error
        except OSError as error:
            raise SysInfoError(f"Error: '{error}' on '{path}'") from error
        infos[name.split("_", 1)[1]] = content
    return infos


def get_mac_addresses() -> list[str]:
    """Hardware addresses of all non-loopback network interfaces."""
    addresses = []
    for ifname, entries in sorted(psutil.net_if_addrs().items()):
        if ifname == "lo":
            continue
        for entry in entries:
            if entry.family == psutil.AF_LINK and entry.address:
                addresses.append(entry.address.lower())
                break
    return addresses


def get_product(iso_info: Path | None = None) -> str:
    iso_info = iso_info or settings.run_dir(False) / settings.ISO_INFO_FILE
    if not iso_info.exists():
        return PRODUCT_NOT_AVAILABLE
    try:
        data = json.loads(iso_info.read_text(encoding="utf-8"))
        return data["product-cfg"]["product"]
    except (OSError, json.JSONDecodeError, KeyError, TypeError) as error:
        raise SysInfoError(f"Could not read product from {iso_info}: {error}") from error


def get_sysinfo(dmi_dir: Path = settings.DMI_DIR, iso_info: Path | None = None) -> dict[str, Any]:
    log.debug("Gathering system information")
    return {
        "product": get_product(iso_info),
        "system": get_dmi_infos(SYSTEM_FILES, dmi_dir),
        "baseboard": get_dmi_infos(BASEBOARD_FILES, dmi_dir),
        "chassis": get_dmi_infos(CHASSIS_FILES, dmi_dir),
        "mac_addresses": get_mac_addresses(),
    }


def sysinfo_json(pretty: bool = False, **kwargs) -> str:
    return json.dumps(get_sysinfo(**kwargs), indent=2 if pretty else None)

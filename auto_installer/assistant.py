"""Assistant for preparing automated installations.

Validates answer files, shows the udev properties filters can match
against, tests filters against the current hardware, prints the system
information sent to answer servers and prepares installation ISOs.
"""

import argparse
import json
import sys
from pathlib import Path

from auto_installer.__version__ import __version__
from auto_installer.config.mode import FetchMode
from auto_installer.config.settings import DEFAULT_PARTITION_LABEL
from auto_installer.devices.inventory import DeviceInventory, collect_disks, collect_nics
from auto_installer.devices.selector import FilterMatch, parse_filter_args, select_many, select_one
from auto_installer.domain.answer import Answer, find_deprecated_keys, load_toml
from auto_installer.domain.setup import LocaleInfo, read_json
from auto_installer.exceptions import AutoInstallerError
from auto_installer.logging import get_logger, setup_logging, shutdown_logging
from auto_installer.services.resolver import verify_locale_settings
from auto_installer.services.sysinfo import sysinfo_json
from auto_installer.storage.iso import PrepareIsoOptions, prepare_iso

log = get_logger(source="assistant")

FILTER_HELP = """\
Filters support the following syntax:
  ?         Match a single character
  *         Match any number of characters
  [a], [0-9]  Specific character or range of characters
  [!a]      Negate a specific character or range

Use single quotes to keep the shell from expanding glob characters, e.g.:
  device-match --filter-match all disk 'ID_SERIAL_SHORT=*2222*' 'DEVNAME=*nvme*'
"""


def print_json(data) -> None:
    json.dump(data, sys.stdout, indent=2)
    sys.stdout.write("\n")


def validate_answer_file(path: Path, locales: Path | None = None, debug: bool = False) -> bool:
    """Parse and validate ``path``; return False if issues were found.

    Deprecated snake_case keys are reported and make the result False,
    the answer is still parsed and checked.
    """
    valid = True
    try:
        contents = Path(path).read_bytes()
    except OSError as error:
        raise AutoInstallerError(f"Opening answer file {path} failed: {error}") from error

    deprecated = find_deprecated_keys(load_toml(contents, str(path)))
    for key in deprecated:
        section, _, name = key.rpartition(".")
        log.warning(
            f"Section [{section}] contains deprecated key `{name}`, "
            f"use `{name.replace('_', '-')}` instead."
        )
    if deprecated:
        log.warning("Answer file is using deprecated underscore keys, kebab-case keys are preferred.")
        valid = False

    try:
        answer = Answer.parse(contents, str(path))
        if locales is not None:
            verify_locale_settings(answer, LocaleInfo.from_dict(read_json(locales, "locale information")))
    except AutoInstallerError as error:
        log.error(str(error))
        return False

    if debug:
        print(f"Parsed data from answer file:\n{answer}")
    return valid


def cmd_validate_answer(args) -> int:
    if validate_answer_file(args.path, args.locales, args.show_parsed):
        print("The answer file was parsed successfully, no errors found!")
        return 0
    log.error("Found issues in the answer file.")
    return 1


def cmd_device_info(args) -> int:
    disks = collect_disks() if args.type in ("all", "disk") else None
    nics = collect_nics() if args.type in ("all", "network") else None
    print_json(
        {
            "disks": disks.to_dict() if disks is not None else None,
            "nics": nics.to_dict() if nics is not None else None,
        }
    )
    return 0


def cmd_device_match(args) -> int:
    filters = parse_filter_args(args.filter)
    if args.device_type == "disk":
        inventory = DeviceInventory(disks=collect_disks())
        result = select_many(filters, inventory.disks, FilterMatch.from_value(args.filter_match))
    else:
        inventory = DeviceInventory(nics=collect_nics())
        result = [select_one(filters, inventory.nics)]
    print_json(result)
    return 0


def cmd_system_info(args) -> int:
    print(sysinfo_json(pretty=True))
    return 0


def cmd_prepare_iso(args) -> int:
    options = PrepareIsoOptions(
        input=args.input,
        fetch_from=FetchMode.from_value(args.fetch_from),
        output=args.output,
        answer_file=args.answer_file,
        url=args.url,
        cert_fingerprint=args.cert_fingerprint,
        tmp=args.tmp,
        partition_label=args.partition_label,
        on_first_boot=args.on_first_boot,
    )
    if options.answer_file is not None:
        log.info("Checking provided answer file...")
        Answer.load(options.answer_file)
    prepare_iso(options)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auto-install-assistant",
        description="Prepare installation ISOs for automated installations and test answer files.",
    )
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    commands = parser.add_subparsers(dest="command", required=True)

    prepare = commands.add_parser("prepare-iso", help="Prepare an ISO for automated installation")
    prepare.add_argument("input", type=Path, help="Path to the source ISO")
    prepare.add_argument(
        "--fetch-from",
        required=True,
        choices=[mode.value for mode in FetchMode],
        help="Where the automated installer fetches the answer file from",
    )
    prepare.add_argument("--output", type=Path, help="Path of the prepared ISO")
    prepare.add_argument("--answer-file", type=Path, help="Answer file to include (iso mode)")
    prepare.add_argument("--url", help="URL to fetch the answer file from (http mode)")
    prepare.add_argument("--cert-fingerprint", help="Pinned SHA256 TLS certificate fingerprint (http mode)")
    prepare.add_argument("--tmp", type=Path, help="Staging directory, defaults to the output directory")
    prepare.add_argument(
        "--partition-label",
        default=DEFAULT_PARTITION_LABEL,
        help=f"Label of the answer partition (partition mode, default: {DEFAULT_PARTITION_LABEL})",
    )
    prepare.add_argument("--on-first-boot", type=Path, help="Executable to run on first boot")
    prepare.set_defaults(func=cmd_prepare_iso)

    validate = commands.add_parser("validate-answer", help="Validate an answer file")
    validate.add_argument("path", type=Path, help="Path to the answer file")
    validate.add_argument("-d", "--debug", action="store_true", dest="show_parsed", help="Also show the parsed answer")
    validate.add_argument("--locales", type=Path, help="locales.json to validate country, keyboard and timezone against")
    validate.set_defaults(func=cmd_validate_answer)

    match = commands.add_parser(
        "device-match",
        help="Test which devices the given filter matches",
        epilog=FILTER_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    match.add_argument("--filter-match", choices=[m.value for m in FilterMatch], default="any")
    match.add_argument("device_type", choices=["network", "disk"])
    match.add_argument("filter", nargs="*", help="KEY=VALUE udev property filter")
    match.set_defaults(func=cmd_device_match)

    info = commands.add_parser("device-info", help="Show device properties usable in filters")
    info.add_argument("-t", "--type", choices=["all", "network", "disk"], default="all")
    info.set_defaults(func=cmd_device_info)

    sysinfo = commands.add_parser("system-info", help="Show the system information sent to answer servers")
    sysinfo.set_defaults(func=cmd_system_info)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, enqueue=False)
    try:
        return args.func(args)
    except AutoInstallerError as error:
        log.error(str(error))
        return 1
    except (OSError, RuntimeError) as error:
        log.error(f"{args.command} failed: {error}")
        return 1
    finally:
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())

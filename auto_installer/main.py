"""Entry point of the automated installer.

Reads the answer file (stdin by default), resolves it against the
installer's runtime information and hands the resulting configuration to
the low-level installer.
"""

import argparse
import sys
from pathlib import Path

from auto_installer.config import settings
from auto_installer.devices.inventory import DeviceInventory
from auto_installer.domain.answer import Answer
from auto_installer.domain.setup import installer_setup
from auto_installer.exceptions import AutoInstallerError
from auto_installer.logging import get_logger, operation_context, setup_logging, shutdown_logging
from auto_installer.services.lowlevel import LowLevelInstaller
from auto_installer.services.resolver import resolve
from auto_installer.storage.commands import run_command

log = get_logger(source="auto-installer")


def read_answer(path: Path | None = None) -> Answer:
    if path is None:
        return Answer.parse(sys.stdin.buffer.read(), source="stdin")
    return Answer.load(path)


def run_commands(stage: str, commands) -> None:
    """Run ``pre-commands``/``post-commands`` from the answer file.

    Failing commands are logged and do not stop the installation.
    """
    for command in commands:
        log.info(f"Running {stage}-command: {command}")
        try:
            result = run_command(["sh", "-c", command], check=False)
        except OSError as error:
            log.error(f"{stage}-command '{command}' could not be started: {error}")
            continue
        if result.returncode != 0:
            log.error(f"{stage}-command '{command}' exited with code {result.returncode}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Proxmox automated installer")
    parser.add_argument("-t", "--test-mode", action="store_true", help="Use ./testdir as base directory")
    parser.add_argument("-a", "--answer", type=Path, help="Read the answer file from PATH instead of stdin")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    args = parser.parse_args(argv)

    setup_logging(settings.AUTO_INSTALLER_LOG, debug=args.debug)
    try:
        return run(args)
    finally:
        shutdown_logging()


def run(args) -> int:
    test_mode = args.test_mode or settings.is_test_mode()
    log.info("Starting auto installer")

    try:
        setup_info, locales, runtime = installer_setup(test_mode)
    except AutoInstallerError as error:
        log.error(f"Installer setup error: {error}")
        return 1

    try:
        answer = read_answer(args.answer)
        inventory = DeviceInventory.load(settings.run_dir(test_mode) / settings.RUN_ENV_UDEV_FILE)
    except (AutoInstallerError, OSError) as error:
        log.error(f"Autoinstaller setup error: {error}")
        return 1

    run_commands("pre", answer.global_.pre_commands)

    try:
        with operation_context("install", filesystem=answer.disks.fs_type.serialize()) as op_log:
            config = resolve(answer, inventory, runtime, locales, setup_info)
            op_log.info("Calling low-level installer")
            LowLevelInstaller(test_mode=test_mode).run(config)
    except AutoInstallerError as error:
        log.error(f"Installation failed: {error}")
        # a zero exit lets the installer environment reboot the machine
        return 0 if answer.global_.reboot_on_error else 1

    run_commands("post", answer.global_.post_commands)
    log.success("Installation done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())

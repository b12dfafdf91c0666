"""Fetch the answer file and start the automated installer with it.

Runs first in the installation environment: reads the fetch mode from the
ISO, retrieves the answer file and pipes it into ``auto-installer``. The
exit code of the installer is passed through.
"""

import argparse
import subprocess
import sys
from pathlib import Path

from auto_installer.config import settings
from auto_installer.exceptions import AutoInstallerError
from auto_installer.logging import LoggerFactory, setup_logging, shutdown_logging
from auto_installer.services.fetch import fetch_answer, load_mode_settings
from auto_installer.services.lowlevel import PipeWriter

log = LoggerFactory.for_fetch()


def run_installer(answer: str, test_mode: bool = False, popen=subprocess.Popen) -> int:
    """Feed ``answer`` to the installer and wait for it to exit."""
    command = [settings.AUTO_INSTALLER_BINARY]
    if test_mode:
        command.append("-t")
    log.info(f"Starting {settings.AUTO_INSTALLER_BINARY}")
    try:
        process = popen(command, stdin=subprocess.PIPE, stderr=subprocess.DEVNULL)
    except OSError as error:
        log.error(f"Failed to start {settings.AUTO_INSTALLER_BINARY}: {error}")
        return 1

    writer = PipeWriter(process.stdin, answer.encode("utf-8"), name="answer-writer").start()
    writer.join()
    if writer.error is not None:
        log.error(f"Failed to pass answer file to the installer: {writer.error}")
    returncode = process.wait()
    log.info(f"{settings.AUTO_INSTALLER_BINARY} exited with code {returncode}")
    return returncode


def main(argv=None):
    parser = argparse.ArgumentParser(description="Fetch the answer file and start the automated installation")
    parser.add_argument(
        "--mode-file",
        type=Path,
        default=settings.ISO_MOUNT_POINT / settings.AUTOINST_MODE_FILE,
        help="Fetch mode settings (default: %(default)s)",
    )
    parser.add_argument("-t", "--test-mode", action="store_true", help="Start the installer in test mode")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    args = parser.parse_args(argv)

    setup_logging(settings.FETCH_ANSWER_LOG, debug=args.debug)
    try:
        log.info("Fetching answer file")
        try:
            mode_settings = load_mode_settings(args.mode_file)
        except (AutoInstallerError, OSError) as error:
            log.error(f"Failed to read fetch mode settings from {args.mode_file}: {error}")
            return 1
        log.info(f"Fetch mode: {mode_settings.mode.value}")

        try:
            answer = fetch_answer(mode_settings)
        except AutoInstallerError as error:
            log.error(str(error))
            return 1
        log.success("Answer file fetched.")

        return run_installer(answer, test_mode=args.test_mode or settings.is_test_mode())
    finally:
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())

"""Line based JSON protocol spoken with the low-level installer.

The resolved configuration is written to the installer's stdin as a single
JSON object followed by a newline. The installer then reports on stdout, one
JSON object per line, tagged by ``type``::

    {"type": "message", "message": "Installing packages"}
    {"type": "error", "message": "..."}
    {"type": "prompt", "query": "Overwrite existing pool?"}
    {"type": "progress", "ratio": 0.42, "text": "extracting"}
    {"type": "finished", "state": "ok", "message": "Installation done"}

Anything else on stdout (shell noise, partial lines) is ignored.
"""

from __future__ import annotations

import json
import math
import os
import subprocess
import threading
from dataclasses import dataclass
from typing import IO, Callable, Iterable, Union

from auto_installer.config import settings
from auto_installer.domain.install_config import InstallConfig
from auto_installer.exceptions import (
    InstallerFailedError,
    InstallerPromptError,
    SubordinateProtocolError,
)
from auto_installer.logging import LoggerFactory, new_job_id


@dataclass(frozen=True)
class InfoMessage:
    message: str


@dataclass(frozen=True)
class ErrorMessage:
    message: str


@dataclass(frozen=True)
class PromptMessage:
    query: str


@dataclass(frozen=True)
class ProgressMessage:
    ratio: float
    text: str | None = None


@dataclass(frozen=True)
class FinishedMessage:
    state: str
    message: str

    @property
    def ok(self) -> bool:
        return self.state == "ok"


LowLevelMessage = Union[InfoMessage, ErrorMessage, PromptMessage, ProgressMessage, FinishedMessage]


def emit(config: InstallConfig) -> bytes:
    """Serialize ``config`` for the installer's stdin."""
    return (config.to_json() + "\n").encode("utf-8")


def read_message(line: str | bytes) -> LowLevelMessage | None:
    """Decode one line of installer output, or None if it is not a message."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not (line.startswith("{") and line.endswith("}")):
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    kind = data.get("type")
    try:
        if kind == "message":
            return InfoMessage(str(data["message"]))
        if kind == "error":
            return ErrorMessage(str(data["message"]))
        if kind == "prompt":
            return PromptMessage(str(data["query"]))
        if kind == "progress":
            ratio = min(max(float(data["ratio"]), 0.0), 1.0)
            text = data.get("text")
            return ProgressMessage(ratio, str(text) if text is not None else None)
        if kind == "finished":
            return FinishedMessage(str(data["state"]), str(data.get("message", "")))
    except (KeyError, TypeError, ValueError):
        return None
    return None


def low_level_installer_command(test_mode: bool = False) -> tuple[list[str], dict[str, str]]:
    if test_mode:
        return (
            [f"./{settings.LOW_LEVEL_INSTALLER}", "-t", "start-session-test"],
            {"PERL5LIB": "."},
        )
    return [settings.LOW_LEVEL_INSTALLER, "start-session"], {}


class PipeWriter:
    """Feeds a payload into a child's stdin from a background thread.

    The main thread keeps reading the child's stdout meanwhile, so neither
    side can block on a full pipe. Access to the stdin handle is serialized
    through a lock.
    """

    def __init__(self, stream: IO[bytes], payload: bytes, name: str = "stdin-writer"):
        self.stream = stream
        self.payload = payload
        self.error: BaseException | None = None
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> PipeWriter:
        self._thread.start()
        return self

    def _run(self) -> None:
        with self._lock:
            try:
                self.stream.write(self.payload)
                self.stream.flush()
            except (BrokenPipeError, OSError, ValueError) as error:
                self.error = error
            finally:
                try:
                    self.stream.close()
                except OSError as error:
                    self.error = self.error or error

    def close(self) -> None:
        """Close the stream once the writer is done with it."""
        with self._lock:
            try:
                self.stream.close()
            except OSError as error:
                self.error = self.error or error

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)


class LowLevelInstaller:
    """Runs one session of the low-level installer and follows its output."""

    def __init__(
        self,
        test_mode: bool = False,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.test_mode = test_mode
        self._popen = popen
        self.job_id = new_job_id("install")
        self.log = LoggerFactory.for_installer(self.job_id)
        self.progress_log = LoggerFactory.for_progress(self.job_id)

    def spawn(self) -> subprocess.Popen:
        command, extra_env = low_level_installer_command(self.test_mode)
        env = dict(os.environ, **extra_env) if extra_env else None
        self.log.debug(f"Spawning {' '.join(command)}")
        return self._popen(command, stdin=subprocess.PIPE, stdout=subprocess.PIPE, env=env)

    def run(
        self,
        config: InstallConfig,
        on_message: Callable[[LowLevelMessage], None] | None = None,
    ) -> FinishedMessage:
        """Feed ``config`` to the installer and follow it until it exits.

        Raises:
            InstallerPromptError: If the installer asks an interactive question
            InstallerFailedError: If the installer finishes with a non-ok state
            SubordinateProtocolError: If it cannot be started or exits without
                reporting a result
        """
        try:
            process = self.spawn()
        except OSError as error:
            raise SubordinateProtocolError(f"Error spawning low-level installer: {error}") from error

        writer = PipeWriter(process.stdin, emit(config)).start()
        try:
            finished = self.follow(process.stdout, on_message)
        except BaseException:
            process.kill()
            writer.close()
            raise
        finally:
            writer.join()
            returncode = process.wait()

        if finished is None:
            raise SubordinateProtocolError(
                f"low-level installer exited with code {returncode} without reporting a result"
            )
        return finished

    def follow(
        self,
        lines: Iterable[bytes | str],
        on_message: Callable[[LowLevelMessage], None] | None = None,
    ) -> FinishedMessage | None:
        """Log installer messages until EOF; return the finished message, if any."""
        last_percentage = -1
        finished = None
        for line in lines:
            message = read_message(line)
            if message is None:
                continue
            if on_message is not None:
                on_message(message)

            if isinstance(message, InfoMessage):
                self.log.info(message.message)
            elif isinstance(message, ErrorMessage):
                self.log.error(message.message)
            elif isinstance(message, PromptMessage):
                raise InstallerPromptError(message.query)
            elif isinstance(message, ProgressMessage):
                percentage = math.floor(message.ratio * 100)
                if percentage != last_percentage:
                    last_percentage = percentage
                    text = f" {message.text}" if message.text else ""
                    self.progress_log.info(f"Progress: {percentage:>3}%{text}")
            elif isinstance(message, FinishedMessage):
                if not message.ok:
                    raise InstallerFailedError(message.state, message.message)
                self.log.success(f"Finished: '{message.state}' {message.message}")
                finished = message
        return finished

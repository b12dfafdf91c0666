"""Custom exceptions for the auto-installer.

This module defines a hierarchy of exceptions covering answer parsing, device
selection, resolution against the live system and the hand-off to the
low-level installer, so callers can react to each failure class separately.

Exception Hierarchy:
    AutoInstallerError (base)
        ├── AnswerError
        │   ├── AnswerParseError
        │   └── AnswerValidationError
        ├── DeviceSelectionError
        │   ├── InvalidGlobError
        │   ├── FilterSyntaxError
        │   ├── NoFilterDefinedError
        │   └── NoMatchError
        ├── ResolveError
        │   ├── InvalidLocaleError
        │   ├── DiskNotFoundError
        │   ├── NoDisksSelectedError
        │   └── FilesystemNotSupportedError
        ├── SubordinateProtocolError
        │   ├── InstallerPromptError
        │   └── InstallerFailedError
        ├── FetchError
        │   ├── AnswerSourceError
        │   └── AnswerNotFoundError
        ├── SetupError
        ├── IsoPrepareError
        └── SysInfoError

Usage:
    from auto_installer.exceptions import NoMatchError

    if not matches:
        raise NoMatchError(filters)
"""

from __future__ import annotations

from typing import Mapping


class AutoInstallerError(Exception):
    """Base exception for all auto-installer errors."""


class AnswerError(AutoInstallerError):
    """Base exception for answer file errors."""


class AnswerParseError(AnswerError):
    """Answer file is not syntactically valid TOML."""

    def __init__(self, reason: str, source: str | None = None):
        self.reason = reason
        self.source = source
        msg = "Error parsing answer file"
        if source:
            msg += f" {source}"
        super().__init__(f"{msg}: {reason}")


class AnswerValidationError(AnswerError):
    """Answer file violates a structural or cross-field rule."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class DeviceSelectionError(AutoInstallerError):
    """Base exception for device filter and selection errors."""


class InvalidGlobError(DeviceSelectionError):
    """Filter pattern could not be compiled."""

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"invalid glob '{pattern}' in device filter: {reason}")


class FilterSyntaxError(DeviceSelectionError):
    """Command line filter is not of the form KEY=VALUE."""

    def __init__(self, argument: str):
        self.argument = argument
        super().__init__(
            f"invalid filter '{argument}', expected KEY=VALUE with non-empty key and value"
        )


class NoFilterDefinedError(DeviceSelectionError):
    """Selection was requested with an empty filter set."""

    def __init__(self):
        super().__init__("no filter defined")


class NoMatchError(DeviceSelectionError):
    """No device satisfied the filter set."""

    def __init__(self, filters: Mapping[str, str]):
        self.filters = dict(filters)
        rendered = ", ".join(f"{key}={value}" for key, value in sorted(self.filters.items()))
        super().__init__(f"filter did not match any device: {rendered}")


class ResolveError(AutoInstallerError):
    """Answer could not be resolved against the running system."""


class InvalidLocaleError(ResolveError):
    """Locale field is not present in the locale catalog."""

    _LABELS = {
        "country": "country code",
        "keyboard": "keyboard layout",
        "timezone": "timezone",
    }

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        label = self._LABELS.get(field, field)
        super().__init__(f"{label} '{value}' is not valid")


class DiskNotFoundError(ResolveError):
    """Requested disk is not present on the system."""

    def __init__(self, disk: str):
        self.disk = disk
        super().__init__(f"disk '{disk}' not found")


class NoDisksSelectedError(ResolveError):
    """Disk selection resolved to an empty set."""

    def __init__(self):
        super().__init__("No disks found matching selection.")


class FilesystemNotSupportedError(ResolveError):
    """Filesystem is not available for the product of this ISO."""

    def __init__(self, filesystem: str, product: str):
        self.filesystem = filesystem
        self.product = product
        super().__init__(
            f"{filesystem} is not supported as a root filesystem for the product "
            f"'{product}' or the release of this ISO."
        )


class SubordinateProtocolError(AutoInstallerError):
    """Communication with the low-level installer failed."""


class InstallerPromptError(SubordinateProtocolError):
    """Low-level installer asked an interactive question."""

    def __init__(self, query: str):
        self.query = query
        super().__init__(f"Got interactive prompt I cannot answer: {query}")


class InstallerFailedError(SubordinateProtocolError):
    """Low-level installer finished with a non-ok state."""

    def __init__(self, state: str, message: str):
        self.state = state
        self.message = message
        super().__init__(f"Installation failed ({state}): {message}")


class FetchError(AutoInstallerError):
    """Base exception for answer fetching errors."""


class AnswerSourceError(FetchError):
    """A single answer source failed to deliver an answer file."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Fetching answer file from {source} failed: {reason}")


class AnswerNotFoundError(FetchError):
    """Every configured answer source failed."""

    def __init__(self, tried: list[str] | None = None):
        self.tried = list(tried or [])
        super().__init__("Could not find any answer file!")


class SetupError(AutoInstallerError):
    """Installer runtime information is missing or malformed."""

    def __init__(self, what: str, reason: str):
        self.what = what
        self.reason = reason
        super().__init__(f"Failed to retrieve {what}: {reason}")


class SysInfoError(AutoInstallerError):
    """System identification data could not be collected."""


class IsoPrepareError(AutoInstallerError):
    """An installation ISO could not be prepared for automated installation."""

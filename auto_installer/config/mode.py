"""Answer fetch mode settings stored as ``auto-installer-mode.toml`` on the ISO."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import tomli_w

from auto_installer.config.settings import DEFAULT_PARTITION_LABEL
from auto_installer.exceptions import AnswerParseError, AnswerValidationError


class FetchMode(Enum):
    ISO = "iso"
    HTTP = "http"
    PARTITION = "partition"

    @classmethod
    def from_value(cls, value: str) -> FetchMode:
        try:
            return cls(value.lower())
        except ValueError:
            choices = ", ".join(mode.value for mode in cls)
            raise AnswerValidationError(
                "mode", f"unknown fetch mode '{value}', expected one of: {choices}"
            ) from None


@dataclass(frozen=True)
class HttpOptions:
    url: str | None = None
    cert_fingerprint: str | None = None

    def to_dict(self) -> dict[str, str]:
        data = {}
        if self.url is not None:
            data["url"] = self.url
        if self.cert_fingerprint is not None:
            data["cert-fingerprint"] = self.cert_fingerprint
        return data


@dataclass(frozen=True)
class AutoInstSettings:
    """Where the fetch stage should look for the answer file."""

    mode: FetchMode
    partition_label: str = DEFAULT_PARTITION_LABEL
    http: HttpOptions = field(default_factory=HttpOptions)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutoInstSettings:
        unknown = set(data) - {"mode", "partition-label", "partition_label", "http"}
        if unknown:
            raise AnswerValidationError(
                sorted(unknown)[0], "unknown field in auto-installer mode file"
            )
        if "mode" not in data:
            raise AnswerValidationError("mode", "Field 'mode' must be set.")

        http = data.get("http", {})
        unknown = set(http) - {"url", "cert-fingerprint", "cert_fingerprint"}
        if unknown:
            raise AnswerValidationError(
                f"http.{sorted(unknown)[0]}", "unknown field in auto-installer mode file"
            )

        return cls(
            mode=FetchMode.from_value(data["mode"]),
            partition_label=data.get(
                "partition-label", data.get("partition_label", DEFAULT_PARTITION_LABEL)
            ),
            http=HttpOptions(
                url=http.get("url"),
                cert_fingerprint=http.get("cert-fingerprint", http.get("cert_fingerprint")),
            ),
        )

    @classmethod
    def loads(cls, text: str) -> AutoInstSettings:
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as error:
            raise AnswerParseError(str(error), source="auto-installer-mode.toml") from error
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: Path) -> AutoInstSettings:
        return cls.loads(Path(path).read_text(encoding="utf-8"))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "mode": self.mode.value,
            "partition-label": self.partition_label,
        }
        http = self.http.to_dict()
        if http:
            data["http"] = http
        return data

    def dumps(self) -> str:
        return tomli_w.dumps(self.to_dict())

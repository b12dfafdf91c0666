"""Answer file retrieval for the fetch stage.

Each source yields the raw answer file text or raises
:class:`AnswerSourceError`. :func:`fetch_answer` probes the sources in
order, logs every failure and gives up with :class:`AnswerNotFoundError`
only after all of them failed.

Sources:
    IsoSource:       ``answer.toml`` placed on the ISO itself
    PartitionSource: ``answer.toml`` on a partition with a well-known label
    HttpSource:      POST of the system information to an answer server

The HTTP answer URL comes from the mode file, or from the DHCP lease
option ``proxmox-auto-installer-manifest-url``, or from a DNS TXT record on
``proxmox-auto-installer.<search domain>``, in that order. The TLS
certificate fingerprint is looked up the same way.
"""

from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path
from typing import Callable, Protocol, Sequence

import aiohttp

from auto_installer.config import settings
from auto_installer.config.mode import AutoInstSettings, FetchMode, HttpOptions
from auto_installer.exceptions import AnswerNotFoundError, AnswerSourceError, SysInfoError
from auto_installer.logging import LoggerFactory
from auto_installer.services.sysinfo import get_sysinfo
from auto_installer.storage.commands import run_command

log = LoggerFactory.for_fetch()

ANSWER_URL_SUBDOMAIN = "proxmox-auto-installer"
ANSWER_CERT_FP_SUBDOMAIN = "proxmox-auto-installer-cert-fingerprint"
DHCP_URL_OPTION = "proxmox-auto-installer-manifest-url"
DHCP_CERT_FP_OPTION = "proxmox-auto-installer-cert-fingerprint"
DHCP_LEASE_FILE = settings.DHCP_LEASE_DIR / "dhclient.leases"
RESOLV_CONF = Path("/etc/resolv.conf")
CERT_FINGERPRINT_FILE = Path("/tmp/cert_fingerprint")
PAYLOAD_SCHEMA_VERSION = "1.0"


class AnswerSource(Protocol):
    name: str

    def get_answer(self) -> str: ...


def read_answer_file(path: Path, source: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as error:
        raise AnswerSourceError(source, f"could not read {path}: {error}") from error


class IsoSource:
    name = "ISO"

    def __init__(self, mount_point: Path = settings.ISO_MOUNT_POINT):
        self.path = Path(mount_point) / settings.ANSWER_FILE_NAME

    def get_answer(self) -> str:
        log.info(f"Checking for answer file at {self.path}")
        return read_answer_file(self.path, self.name)


class PartitionSource:
    name = "partition"

    def __init__(
        self,
        label: str = settings.DEFAULT_PARTITION_LABEL,
        by_label_dir: Path = settings.DISK_BY_LABEL_DIR,
        mount_point: Path = settings.PARTITION_MOUNT_POINT,
        runner: Callable[..., subprocess.CompletedProcess] = run_command,
    ):
        self.label = label
        self.by_label_dir = Path(by_label_dir)
        self.mount_point = Path(mount_point)
        self._run = runner

    def find_partition(self) -> Path:
        """Device path of the labelled partition, trying lower and upper case."""
        for label in (self.label.lower(), self.label.upper()):
            candidate = self.by_label_dir / label
            if candidate.exists():
                log.info(f"Found partition with label '{label}'")
                return candidate
        raise AnswerSourceError(
            self.name, f"no partition with label '{self.label}' (any case) found"
        )

    def mount(self, device: Path) -> Path:
        self.mount_point.mkdir(parents=True, exist_ok=True)
        result = self._run(
            ["mount", "-o", "ro", str(device), str(self.mount_point)], check=False
        )
        if result.returncode != 0:
            raise AnswerSourceError(
                self.name, f"mounting {device} failed: {(result.stderr or '').strip()}"
            )
        return self.mount_point

    def get_answer(self) -> str:
        log.info("Checking for answer file on partition.")
        mount_path = self.mount(self.find_partition())
        answer = read_answer_file(mount_path / settings.ANSWER_FILE_NAME, self.name)
        log.info("Found answer file on partition.")
        return answer


def _strip_dhcp_option(value: str) -> str:
    """``"https://x/answer";`` -> ``https://x/answer``"""
    return value.strip().rstrip(";").strip('"')


class HttpSource:
    name = "HTTP"

    def __init__(
        self,
        options: HttpOptions | None = None,
        lease_file: Path = DHCP_LEASE_FILE,
        resolv_conf: Path = RESOLV_CONF,
        runner: Callable[..., subprocess.CompletedProcess] = run_command,
        timeout_seconds: int = settings.HTTP_TIMEOUT_SECONDS,
    ):
        self.options = options or HttpOptions()
        self.lease_file = Path(lease_file)
        self.resolv_conf = Path(resolv_conf)
        self._run = runner
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    # URL and fingerprint discovery ------------------------------------------

    def from_dhcp(self, fingerprint: str | None) -> tuple[str, str | None]:
        log.info("Checking DHCP options.")
        try:
            leases = self.lease_file.read_text(encoding="utf-8")
        except OSError as error:
            raise AnswerSourceError(self.name, f"could not read DHCP leases: {error}") from error

        url = None
        for line in leases.splitlines():
            line = line.strip()
            if url is None and line.startswith(f"option {DHCP_URL_OPTION}"):
                url = _strip_dhcp_option(line.split(" ")[-1])
            if fingerprint is None and line.startswith(f"option {DHCP_CERT_FP_OPTION}"):
                fingerprint = _strip_dhcp_option(line.split(" ")[-1])

        if not url:
            raise AnswerSourceError(self.name, "No DHCP option found for fetch URL.")
        log.info(f"Found URL for answer in DHCP option: '{url}'")
        if fingerprint:
            log.info(f"Found SSL Fingerprint via DHCP: '{fingerprint}'")
        return url, fingerprint

    def search_domain(self) -> str:
        log.info("Retrieving default search domain.")
        try:
            lines = self.resolv_conf.read_text(encoding="utf-8").splitlines()
        except OSError as error:
            raise AnswerSourceError(self.name, f"could not read {self.resolv_conf}: {error}") from error
        for line in lines:
            key, _, value = line.partition(" ")
            if key == "search" and value.strip():
                return value.strip().split()[0]
        raise AnswerSourceError(self.name, "Could not find search domain in resolv.conf.")

    def query_txt_record(self, query: str) -> str:
        log.info(f"Querying TXT record for '{query}'")
        try:
            result = self._run(["dig", "txt", "+short", query], check=False)
        except OSError as error:
            raise AnswerSourceError(self.name, f"Error querying DNS record '{query}': {error}") from error
        if result.returncode != 0:
            raise AnswerSourceError(
                self.name, f"Error querying DNS record '{query}': {(result.stderr or '').strip()}"
            )
        value = result.stdout.replace('"', "").strip()
        if not value:
            raise AnswerSourceError(self.name, f"Got empty response for '{query}'.")
        log.info(f"Found: '{value}'")
        return value

    def from_dns(self, fingerprint: str | None) -> tuple[str, str | None]:
        domain = self.search_domain()
        url = self.query_txt_record(f"{ANSWER_URL_SUBDOMAIN}.{domain}")
        if fingerprint is None:
            try:
                fingerprint = self.query_txt_record(f"{ANSWER_CERT_FP_SUBDOMAIN}.{domain}")
            except AnswerSourceError as error:
                log.info(str(error))
        return url, fingerprint

    def discover(self) -> tuple[str, str | None]:
        fingerprint = self.options.cert_fingerprint
        if fingerprint:
            log.info("SSL fingerprint provided through ISO.")
        if self.options.url:
            log.info("URL specified in ISO")
            return self.options.url, fingerprint
        try:
            return self.from_dhcp(fingerprint)
        except AnswerSourceError as error:
            log.info(str(error))
        return self.from_dns(fingerprint)

    # Request ------------------------------------------------------------------

    @staticmethod
    def payload() -> str:
        try:
            sysinfo = get_sysinfo()
        except SysInfoError as error:
            raise AnswerSourceError("HTTP", f"gathering system information failed: {error}") from error
        return json.dumps({"$schema": {"version": PAYLOAD_SCHEMA_VERSION}, **sysinfo})

    async def post(self, url: str, fingerprint: str | None, payload: str) -> str:
        ssl: aiohttp.Fingerprint | bool = True
        if fingerprint:
            try:
                ssl = aiohttp.Fingerprint(bytes.fromhex(fingerprint.replace(":", "")))
            except ValueError as error:
                raise AnswerSourceError(self.name, f"invalid certificate fingerprint: {error}") from error

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(
                    url,
                    data=payload,
                    headers={"Content-Type": "application/json; charset=utf-8"},
                    ssl=ssl,
                ) as resp:
                    if resp.status != 200:
                        raise AnswerSourceError(
                            self.name, f"answer server returned status {resp.status}"
                        )
                    return await resp.text()
            except aiohttp.ClientError as e:
                log.error(f"Network error while fetching answer: {e}")
                raise AnswerSourceError(self.name, f"Network error: {e}") from e

    def get_answer(self) -> str:
        url, fingerprint = self.discover()
        if fingerprint:
            try:
                CERT_FINGERPRINT_FILE.write_text(fingerprint, encoding="utf-8")
            except OSError as error:
                log.warning(f"Could not store certificate fingerprint: {error}")

        log.info("Gathering system information.")
        payload = self.payload()
        log.info(f"Sending POST request to '{url}'.")
        return asyncio.run(self.post(url, fingerprint, payload))


def sources_for(install_settings: AutoInstSettings) -> list[AnswerSource]:
    if install_settings.mode is FetchMode.ISO:
        return [IsoSource()]
    if install_settings.mode is FetchMode.PARTITION:
        return [PartitionSource(label=install_settings.partition_label)]
    return [HttpSource(install_settings.http)]


def fetch_answer(
    install_settings: AutoInstSettings,
    sources: Sequence[AnswerSource] | None = None,
) -> str:
    """Return the answer from the first source that delivers one.

    ``sources`` defaults to the sources configured for the fetch mode.

    Raises:
        AnswerNotFoundError: If every source failed
    """
    if sources is None:
        sources = sources_for(install_settings)
    tried = []
    for source in sources:
        tried.append(source.name)
        try:
            return source.get_answer()
        except AnswerSourceError as error:
            log.info(f"Fetching answer file from {source.name} failed: {error.reason}")
    raise AnswerNotFoundError(tried)


def load_mode_settings(path: Path | None = None) -> AutoInstSettings:
    path = path or settings.ISO_MOUNT_POINT / settings.AUTOINST_MODE_FILE
    return AutoInstSettings.load(path)

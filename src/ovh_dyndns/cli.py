#!/usr/bin/env python3
"""ovh-dyndns - Dynamic DNS for OVH hosted zones

Keeps the A record of one or more hostnames pointing at the caller's current
public IP. The OVH API is only contacted when the authoritative DNS answer no
longer matches the external IP.

Environment variables:

    Runtime:
        CONFIG_PATH            Path to the YAML config file (default: config.yaml)
        RUN_MODE               One of (default: watch):
                                 watch  - check now, then every check_interval
                                 once   - single check, exit status reflects failures
                                 server - echo the caller's IP over HTTP
                                 clean  - delete the managed A records and exit
                                 setup  - request an OVH consumer key and store it
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

    OVH credentials (used by the ovh client when absent from the config file):
        OVH_ENDPOINT, OVH_APPLICATION_KEY, OVH_APPLICATION_SECRET, OVH_CONSUMER_KEY

Config file:

    check_interval: 5m               # seconds or duration ("90s", "5m", "1h30m")
    dns_server: dns200.anycast.me:53 # queried directly, bypassing local caches
    ip_provider: https://ifconfig.me/ip
    server_address: ":8080"          # listen address in server mode
    ttl: 5m                          # default ttl for domains without one
    domains:
      - domain: example.com
        sub_domain: home
        ttl: 60
    ovh:
      endpoint: ovh-eu
      application_key: ...
      application_secret: ...
      consumer_key: ...

    The check interval is never shorter than the smallest domain ttl; lower
    values are raised to it at startup.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import re
import signal
import socket
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

import dns.exception
import dns.resolver
import ovh
import requests
import yaml
from ovh.exceptions import APIError

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
RUN_MODE = os.getenv("RUN_MODE", "watch").lower().strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

RUN_MODES = ("watch", "once", "server", "clean", "setup")

DEFAULT_DNS_SERVER = "dns200.anycast.me:53"
DEFAULT_IP_PROVIDER = "https://ifconfig.me/ip"
DEFAULT_SERVER_ADDRESS = ":8080"
DEFAULT_TTL_SECONDS = 300
DEFAULT_CHECK_INTERVAL_SECONDS = 300.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_DNS_TIMEOUT_SECONDS = 5.0

# The IP echo endpoint answers with a bare address; anything longer is garbage.
MAX_IP_BODY_BYTES = 64

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class DynDNSError(Exception):
    """Base class for all ovh-dyndns errors."""


class ConfigError(DynDNSError):
    """Invalid or missing configuration. Fatal at startup."""


class ExternalIPUnavailable(DynDNSError):
    """The external IP could not be obtained. The whole pass is skipped."""


class DNSLookupError(DynDNSError):
    """The authoritative DNS server could not answer for a hostname."""


class DNSTimeout(DNSLookupError):
    """The authoritative DNS server did not answer in time."""


class DNSAmbiguous(DNSLookupError):
    """The DNS answer did not contain exactly one address."""


class DuplicateRecordConflict(DynDNSError):
    """More than one remote A record matches a domain.

    Never resolved automatically: the extra records must be removed by hand.
    """


class ProviderAPIFailure(DynDNSError):
    """A call to the DNS hosting API failed."""


class ZoneRefreshFailure(ProviderAPIFailure):
    """The zone refresh failed. The record itself may already be correct."""


# =============================================================================
# Enums
# =============================================================================


class SyncOutcome(Enum):
    """Result of reconciling one domain during a pass.

    IN_SYNC:   DNS already answers with the external IP, nothing written.
    CREATED:   No remote record existed, one was created and the zone refreshed.
    UPDATED:   The remote record pointed elsewhere and was rewritten.
    UNCHANGED: DNS was stale but the remote record already had the right
               target (usually a pending propagation), nothing written.
    FAILED:    An error was reported for this domain.
    SKIPPED:   The domain was not checked (no external IP, or stop requested).
    """

    IN_SYNC = "in_sync"
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"


# =============================================================================
# Data Classes
# =============================================================================

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class Domain:
    """A managed hostname: subdomain of an OVH hosted zone."""

    zone: str
    subdomain: str
    ttl: int = DEFAULT_TTL_SECONDS

    @property
    def hostname(self) -> str:
        if not self.subdomain:
            return self.zone
        return f"{self.subdomain}.{self.zone}"


@dataclass
class ZoneRecord:
    """An A record as stored by the OVH API."""

    subdomain: str
    target: str
    ttl: int
    field_type: str = "A"
    id: int = 0

    @classmethod
    def for_domain(cls, domain: Domain, ip: IPAddress) -> ZoneRecord:
        return cls(subdomain=domain.subdomain, target=str(ip), ttl=domain.ttl)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> ZoneRecord:
        return cls(
            subdomain=str(data.get("subDomain") or ""),
            target=str(data.get("target") or ""),
            ttl=int(data.get("ttl") or 0),
            field_type=str(data.get("fieldType") or "A"),
            id=int(data.get("id") or 0),
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "fieldType": self.field_type,
            "subDomain": self.subdomain,
            "ttl": self.ttl,
            "target": self.target,
        }


@dataclass(frozen=True)
class OVHCredentials:
    """OVH API credentials. Unset values are looked up by the ovh client itself."""

    endpoint: Optional[str] = None
    application_key: Optional[str] = None
    application_secret: Optional[str] = None
    consumer_key: Optional[str] = None


@dataclass(frozen=True)
class Config:
    domains: Tuple[Domain, ...]
    check_interval: float = DEFAULT_CHECK_INTERVAL_SECONDS
    dns_server: str = DEFAULT_DNS_SERVER
    ip_provider: str = DEFAULT_IP_PROVIDER
    server_address: str = DEFAULT_SERVER_ADDRESS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    dns_timeout: float = DEFAULT_DNS_TIMEOUT_SECONDS
    ovh: OVHCredentials = field(default_factory=OVHCredentials)


# =============================================================================
# Utility Functions
# =============================================================================

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def _parse_duration(value: Any, *, default: float) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go-style strings such as "90s", "5m"
    or "1h30m".

    Raises:
        ValueError: if the value is not a recognizable duration.
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        if re.fullmatch(r"\d+(?:\.\d+)?", text):
            seconds = float(text)
        else:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART_RE.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos == 0 or pos != len(text):
                raise ValueError(f"invalid duration: {value!r}")
    if seconds < 0:
        raise ValueError(f"negative duration: {value!r}")
    return seconds


def _split_host_port(address: str, *, default_port: int) -> Tuple[str, int]:
    """Split "host:port", "[v6]:port", "host" or a bare IPv6 literal."""
    address = address.strip()
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif address.count(":") == 1:
        host, _, port = address.partition(":")
    else:
        host, port = address, ""

    if not port:
        return host, default_port
    if not port.isdigit() or not 0 <= int(port) <= 65535:
        raise ValueError(f"invalid port in address {address!r}")
    return host, int(port)


def _same_address(target: str, ip: IPAddress) -> bool:
    try:
        return ipaddress.ip_address(target.strip()) == ip
    except ValueError:
        return False


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# =============================================================================
# Config Loading
# =============================================================================


def _clamp_check_interval(interval: float, domains: Sequence[Domain]) -> float:
    """Raise the check interval to the smallest domain ttl when it is below it."""
    if not domains:
        return interval
    min_ttl = min(d.ttl for d in domains)
    if interval < min_ttl:
        logger.info(f"Using the TTL as the check interval: {min_ttl}s")
        return float(min_ttl)
    return interval


def _parse_domains(data: Dict[str, Any], default_ttl: int, errors: List[str]) -> List[Domain]:
    raw = data.get("domains")
    if raw is None and data.get("domain"):
        # Single domain form: domain/sub_domain/ttl at the top level.
        raw = [
            {
                "domain": data.get("domain"),
                "sub_domain": data.get("sub_domain"),
                "ttl": data.get("ttl"),
            }
        ]
    if raw is None:
        return []
    if not isinstance(raw, list):
        errors.append("'domains' must be a list")
        return []

    domains: List[Domain] = []
    seen = set()
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            errors.append(f"domains[{index}]: expected a mapping, got {type(item).__name__}")
            continue
        zone = str(item.get("domain") or item.get("zone") or "").strip().rstrip(".")
        subdomain = str(item.get("sub_domain") or item.get("subdomain") or "").strip()
        if not zone:
            errors.append(f"domains[{index}]: 'domain' is required")
            continue
        try:
            ttl = int(_parse_duration(item.get("ttl"), default=default_ttl))
        except ValueError as e:
            errors.append(f"domains[{index}]: {e}")
            continue
        if ttl <= 0:
            errors.append(f"domains[{index}]: ttl must be at least 1s, got {item.get('ttl')!r}")
            continue

        domain = Domain(zone=zone, subdomain=subdomain, ttl=ttl)
        if domain.hostname in seen:
            errors.append(f"domains[{index}]: {domain.hostname} is listed more than once")
            continue
        seen.add(domain.hostname)
        domains.append(domain)
    return domains


def load_config(path: str, *, require_domains: bool = True) -> Config:
    """Load and validate the YAML config file.

    All validation problems are collected and reported in a single ConfigError.
    """
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file {path} not found") from e
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    errors: List[str] = []

    def duration(key: str, default: float) -> float:
        try:
            value = _parse_duration(data.get(key), default=default)
        except ValueError as e:
            errors.append(f"{key}: {e}")
            return default
        if value <= 0:
            errors.append(f"{key}: must be positive, got {data.get(key)!r}")
            return default
        return value

    default_ttl = int(duration("ttl", DEFAULT_TTL_SECONDS))
    check_interval = duration("check_interval", DEFAULT_CHECK_INTERVAL_SECONDS)
    http_timeout = duration("http_timeout", DEFAULT_HTTP_TIMEOUT_SECONDS)
    dns_timeout = duration("dns_timeout", DEFAULT_DNS_TIMEOUT_SECONDS)
    domains = _parse_domains(data, default_ttl, errors)

    if require_domains and not domains and not errors:
        errors.append("At least one domain is required")

    dns_server = str(data.get("dns_server") or data.get("dns_provider") or DEFAULT_DNS_SERVER)
    server_address = str(data.get("server_address") or DEFAULT_SERVER_ADDRESS)
    for key, value, port in (
        ("dns_server", dns_server, 53),
        ("server_address", server_address, 8080),
    ):
        try:
            _split_host_port(value, default_port=port)
        except ValueError as e:
            errors.append(f"{key}: {e}")

    ip_provider = str(data.get("ip_provider") or DEFAULT_IP_PROVIDER).strip()
    if not ip_provider.startswith(("http://", "https://")):
        errors.append(f"ip_provider: expected an http(s) URL, got {ip_provider!r}")

    ovh_data = data.get("ovh") or {}
    if not isinstance(ovh_data, dict):
        errors.append("'ovh' must be a mapping")
        ovh_data = {}

    if errors:
        raise ConfigError("; ".join(errors))

    return Config(
        domains=tuple(domains),
        check_interval=_clamp_check_interval(check_interval, domains),
        dns_server=dns_server,
        ip_provider=ip_provider,
        server_address=server_address,
        http_timeout=http_timeout,
        dns_timeout=dns_timeout,
        ovh=OVHCredentials(
            endpoint=_optional_str(ovh_data.get("endpoint")),
            application_key=_optional_str(ovh_data.get("application_key")),
            application_secret=_optional_str(ovh_data.get("application_secret")),
            consumer_key=_optional_str(ovh_data.get("consumer_key")),
        ),
    )


def store_consumer_key(path: str, consumer_key: str) -> None:
    """Write the consumer key into the config file, keeping the other settings."""
    config_path = Path(path)
    data: Dict[str, Any] = {}
    if config_path.exists():
        data = yaml.safe_load(config_path.read_text("utf-8")) or {}
    ovh_data = data.get("ovh") or {}
    ovh_data["consumer_key"] = consumer_key
    data["ovh"] = ovh_data

    config_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = config_path.with_suffix(config_path.suffix + ".tmp")
    tmp_path.write_text(yaml.safe_dump(data, sort_keys=False), "utf-8")
    tmp_path.replace(config_path)


# =============================================================================
# External IP Source
# =============================================================================


class IPSource(ABC):
    """Abstract source of the caller's public IP."""

    @abstractmethod
    def get(self, url: str) -> Optional[IPAddress]:
        """Return the current public IP, or None when the source had nothing."""
        pass


class ExternalIPSource(IPSource):
    """Fetches the public IP from an HTTP endpoint answering with a bare IP."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._session = session or requests.Session()
        self._timeout = timeout

    def get(self, url: str) -> Optional[IPAddress]:
        try:
            response = self._session.get(url, timeout=self._timeout, stream=True)
        except requests.exceptions.RequestException as e:
            raise ExternalIPUnavailable(f"failed to query {url}: {e}") from e

        try:
            if response.status_code != 200:
                raise ExternalIPUnavailable(
                    f"invalid response from server: {response.status_code} {response.reason}"
                )
            body = b""
            for chunk in response.iter_content(chunk_size=MAX_IP_BODY_BYTES):
                body += chunk
                if len(body) >= MAX_IP_BODY_BYTES:
                    break
        except requests.exceptions.RequestException as e:
            raise ExternalIPUnavailable(f"failed to read response from {url}: {e}") from e
        finally:
            response.close()

        text = body[:MAX_IP_BODY_BYTES].rstrip(b"\r\n")
        if not text:
            return None
        try:
            return ipaddress.ip_address(text.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ExternalIPUnavailable(f"invalid IP from provider: {text!r}") from e


# =============================================================================
# Authoritative Resolver
# =============================================================================


class HostResolver(ABC):
    """Abstract A-record lookup."""

    @abstractmethod
    def lookup(self, hostname: str) -> Optional[IPAddress]:
        """Return the single A-record address, or None when no record exists."""
        pass


def _resolve_nameserver(host: str) -> str:
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    try:
        answer = dns.resolver.resolve(host, "A")
    except dns.exception.DNSException as e:
        raise ConfigError(f"Cannot resolve DNS server {host}: {e}") from e
    return sorted(rdata.address for rdata in answer)[0]


class AuthoritativeResolver(HostResolver):
    """Resolves hostnames against a single DNS server over UDP.

    The system resolver is bypassed entirely so the answer reflects the
    provider's zone, not an intermediate cache.
    """

    def __init__(self, server: str, timeout: float = DEFAULT_DNS_TIMEOUT_SECONDS):
        host, port = _split_host_port(server, default_port=53)
        self.server = server
        self._resolver = dns.resolver.Resolver(configure=False)
        # The port must be set before the nameservers, which capture it.
        self._resolver.port = port
        self._resolver.nameservers = [_resolve_nameserver(host)]
        self._resolver.timeout = timeout
        self._resolver.lifetime = timeout

    def lookup(self, hostname: str) -> Optional[IPAddress]:
        try:
            answer = self._resolver.resolve(hostname, "A", tcp=False, search=False)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return None
        except dns.exception.Timeout as e:
            raise DNSTimeout(f"dns timeout: {e}") from e
        except dns.exception.DNSException as e:
            raise DNSLookupError(f"dns lookup failed: {e}") from e

        addresses = sorted(rdata.address for rdata in answer)
        if len(addresses) != 1:
            raise DNSAmbiguous(f"expected 1 dns address found: {addresses}")
        return ipaddress.ip_address(addresses[0])


# =============================================================================
# Zone Record Store
# =============================================================================


class ZoneAPIClient(Protocol):
    """The subset of ovh.Client used to manage zone records."""

    def get(self, _target: str, **kwargs: Any) -> Any: ...

    def post(self, _target: str, **kwargs: Any) -> Any: ...

    def put(self, _target: str, **kwargs: Any) -> Any: ...

    def delete(self, _target: str, **kwargs: Any) -> Any: ...


class ZoneRecordStore:
    """Create, update and delete the A record of a domain through the OVH API."""

    def __init__(self, client: ZoneAPIClient):
        self._client = client

    @staticmethod
    def _records_url(domain: Domain) -> str:
        return f"/domain/zone/{domain.zone}/record"

    def fetch_record_id(self, domain: Domain) -> int:
        """Return the id of the domain's A record, 0 when there is none."""
        try:
            ids = self._client.get(
                self._records_url(domain), fieldType="A", subDomain=domain.subdomain
            )
        except APIError as e:
            raise ProviderAPIFailure(f"failed to list the zone records: {e}") from e

        if not isinstance(ids, list):
            raise ProviderAPIFailure(f"unexpected record list from the API: {ids!r}")
        if len(ids) == 0:
            return 0
        if len(ids) == 1:
            return int(ids[0])
        raise DuplicateRecordConflict(
            f"multiple A records {sorted(ids)} for {domain.hostname}, something's wrong"
        )

    def update_if_needed(self, domain: Domain, ip: IPAddress) -> Tuple[ZoneRecord, SyncOutcome]:
        """Point the domain's A record at ip, creating the record if needed.

        Returns the resulting record and CREATED, UPDATED or UNCHANGED. The
        zone is not refreshed here.
        """
        base_url = self._records_url(domain)
        record_id = self.fetch_record_id(domain)

        if record_id == 0:
            logger.info(f"{domain.hostname}: creating a new zone record...")
            record = ZoneRecord.for_domain(domain, ip)
            try:
                created = self._client.post(base_url, **record.to_api())
            except APIError as e:
                raise ProviderAPIFailure(f"failed to create the zone record: {e}") from e
            if isinstance(created, dict) and created.get("id"):
                record.id = int(created["id"])
            return record, SyncOutcome.CREATED

        url = f"{base_url}/{record_id}"
        try:
            current = ZoneRecord.from_api(self._client.get(url))
        except APIError as e:
            raise ProviderAPIFailure(f"failed to get the zone record: {e}") from e
        current.id = record_id

        if _same_address(current.target, ip):
            logger.info(f"{domain.hostname}: DNS target is already good")
            return current, SyncOutcome.UNCHANGED

        logger.info(
            f"{domain.hostname}: IP {ip} does not match the current DNS target "
            f"{current.target}, updating..."
        )
        record = ZoneRecord.for_domain(domain, ip)
        record.id = record_id
        try:
            self._client.put(url, subDomain=record.subdomain, ttl=record.ttl, target=record.target)
        except APIError as e:
            raise ProviderAPIFailure(f"failed to update the zone record: {e}") from e
        return record, SyncOutcome.UPDATED

    def refresh_zone(self, domain: Domain) -> None:
        try:
            self._client.post(f"/domain/zone/{domain.zone}/refresh")
        except APIError as e:
            raise ZoneRefreshFailure(f"failed to refresh the zone: {e}") from e
        logger.info(f"{domain.hostname}: DNS zone refreshed")

    def sync_record(self, domain: Domain, ip: IPAddress) -> Tuple[ZoneRecord, SyncOutcome]:
        """update_if_needed, then refresh the zone only if something was written."""
        record, outcome = self.update_if_needed(domain, ip)
        if outcome in (SyncOutcome.CREATED, SyncOutcome.UPDATED):
            self.refresh_zone(domain)
        return record, outcome

    def delete_record(self, domain: Domain) -> bool:
        """Delete the domain's A record. Returns False when there was none."""
        record_id = self.fetch_record_id(domain)
        if record_id == 0:
            logger.info(f"{domain.hostname}: no zone record to delete")
            return False

        try:
            self._client.delete(f"{self._records_url(domain)}/{record_id}")
        except APIError as e:
            raise ProviderAPIFailure(f"failed to delete the zone record: {e}") from e
        logger.info(f"{domain.hostname}: zone record {record_id} deleted")
        self.refresh_zone(domain)
        return True


# =============================================================================
# Core Syncer
# =============================================================================


class DynDNSSyncer:
    """Reconciles every managed domain with the current external IP."""

    def __init__(
        self,
        *,
        ip_source: IPSource,
        resolver: HostResolver,
        record_store: ZoneRecordStore,
        domains: Sequence[Domain],
        ip_provider_url: str,
        stop_event: Optional[threading.Event] = None,
    ):
        self.ip_source = ip_source
        self.resolver = resolver
        self.record_store = record_store
        self.domains = list(domains)
        self.ip_provider_url = ip_provider_url
        self.stop_event = stop_event

    def sync_once(self) -> Dict[str, SyncOutcome]:
        outcomes = {d.hostname: SyncOutcome.SKIPPED for d in self.domains}

        try:
            ip = self.ip_source.get(self.ip_provider_url)
        except ExternalIPUnavailable as e:
            logger.error(f"Failed to get the external IP: {e}")
            return outcomes
        if ip is None:
            logger.warning("External IP provider returned no address, skipping this check")
            return outcomes

        logger.debug(f"External IP: {ip}")
        for domain in self.domains:
            if self.stop_event is not None and self.stop_event.is_set():
                logger.info("Stop requested, ending check early")
                break
            outcomes[domain.hostname] = self.sync_domain(domain, ip)
        return outcomes

    def sync_domain(self, domain: Domain, ip: IPAddress) -> SyncOutcome:
        hostname = domain.hostname
        try:
            dns_ip = self.resolver.lookup(hostname)
        except DNSTimeout as e:
            logger.warning(f"{hostname}: {e}")
            return SyncOutcome.FAILED
        except DNSAmbiguous as e:
            logger.error(f"{hostname}: {e} (check the zone for extra records)")
            return SyncOutcome.FAILED
        except DNSLookupError as e:
            logger.error(f"{hostname}: {e}")
            return SyncOutcome.FAILED

        if dns_ip == ip:
            logger.info(f"{hostname}: all good ({ip})")
            return SyncOutcome.IN_SYNC

        logger.info(f"{hostname}: local IP {ip}, DNS IP {dns_ip or 'not configured'}")
        try:
            _, outcome = self.record_store.sync_record(domain, ip)
        except DuplicateRecordConflict as e:
            logger.error(f"{hostname}: {e}; remove the extra records manually")
            return SyncOutcome.FAILED
        except ProviderAPIFailure as e:
            logger.error(f"{hostname}: {e}")
            return SyncOutcome.FAILED
        return outcome


# =============================================================================
# Scheduler
# =============================================================================


class Scheduler:
    """Runs a pass immediately, then at a fixed rate until stopped.

    Ticks stay on the grid start + k * interval. A pass that overruns its
    interval is followed immediately by a single catch-up pass; any further
    missed ticks are dropped.
    """

    def __init__(
        self,
        syncer: DynDNSSyncer,
        interval: float,
        stop_event: threading.Event,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.syncer = syncer
        self.interval = interval
        self.stop_event = stop_event
        self._clock = clock

    def _run_pass(self) -> None:
        try:
            self.syncer.sync_once()
        except Exception as e:
            logger.error(f"Unexpected error during check: {e}", exc_info=True)

    def run(self) -> int:
        """Loop until the stop event is set. Returns the number of passes run."""
        passes = 0
        next_tick = self._clock() + self.interval
        while not self.stop_event.is_set():
            self._run_pass()
            passes += 1
            if self.stop_event.is_set():
                break

            now = self._clock()
            if now >= next_tick:
                missed = int((now - next_tick) // self.interval) + 1
                if missed > 1:
                    logger.warning(
                        f"Check took longer than {self.interval:g}s, skipped {missed - 1} tick(s)"
                    )
                next_tick += missed * self.interval
                continue

            if self.stop_event.wait(next_tick - now):
                break
            next_tick += self.interval
        return passes


# =============================================================================
# IP Echo Server
# =============================================================================


class EchoRequestHandler(BaseHTTPRequestHandler):
    """Answers with the client IP forwarded by the fronting reverse proxy."""

    IP_HEADERS = ("X-Real-IP", "X-Forwarded-For")

    def do_GET(self) -> None:
        for header in self.IP_HEADERS:
            value = (self.headers.get(header) or "").strip()
            if value:
                body = value.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/plain")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
                return

        self.send_response(404)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f"{self.address_string()} - {format % args}")


class EchoHTTPServerV6(ThreadingHTTPServer):
    address_family = socket.AF_INET6


def create_echo_server(address: str) -> ThreadingHTTPServer:
    host, port = _split_host_port(address, default_port=8080)
    if ":" in host:
        return EchoHTTPServerV6((host, port), EchoRequestHandler)
    return ThreadingHTTPServer((host, port), EchoRequestHandler)


def serve_echo(address: str, stop_event: threading.Event) -> None:
    """Serve until the stop event is set."""
    server = create_echo_server(address)
    thread = threading.Thread(target=server.serve_forever, name="echo-server", daemon=True)
    thread.start()
    logger.info(f"Server running on {address}")
    try:
        stop_event.wait()
    finally:
        logger.info("Server is shutting down...")
        server.shutdown()
        server.server_close()
        thread.join()


# =============================================================================
# OVH Client, Setup and Cleanup
# =============================================================================


def create_ovh_client(config: Config, *, with_consumer_key: bool = True) -> ovh.Client:
    creds = config.ovh
    try:
        return ovh.Client(
            endpoint=creds.endpoint,
            application_key=creds.application_key,
            application_secret=creds.application_secret,
            consumer_key=creds.consumer_key if with_consumer_key else None,
            timeout=config.http_timeout,
        )
    except APIError as e:
        raise ConfigError(f"Failed to create the OVH client: {e}") from e


def check_credentials(client: ZoneAPIClient) -> bool:
    """Check that the consumer key is known and validated."""
    try:
        credential = client.get("/auth/currentCredential")
    except APIError as e:
        logger.error(f"Failed to authenticate against the OVH API: {e}")
        return False

    status = credential.get("status") if isinstance(credential, dict) else None
    if status != "validated":
        logger.error(f"OVH consumer key is not usable (status: {status}), run the setup mode")
        return False
    logger.info("OVH API connection successful")
    return True


def request_consumer_key(client: ovh.Client, domains: Sequence[Domain]) -> Dict[str, Any]:
    """Request a consumer key limited to the records of the configured zones."""
    request = client.new_consumer_key_request()
    for zone in sorted({d.zone for d in domains}):
        base = f"/domain/zone/{zone}"
        request.add_rules(ovh.API_READ_WRITE, f"{base}/record")
        request.add_rules(ovh.API_READ_WRITE, f"{base}/record/*")
        request.add_rule("POST", f"{base}/refresh")
    return request.request()


def run_setup(config: Config, config_path: str) -> int:
    client = create_ovh_client(config, with_consumer_key=False)
    try:
        validation = request_consumer_key(client, config.domains)
    except APIError as e:
        logger.error(f"Failed to request a consumer key: {e}")
        return 1

    store_consumer_key(config_path, validation["consumerKey"])
    logger.info(f"Consumer key stored in {config_path}")
    print(f"Please visit {validation['validationUrl']} to authenticate the consumer key")
    return 0


def clean_records(store: ZoneRecordStore, domains: Sequence[Domain]) -> bool:
    """Delete the A record of every domain. Returns False if any deletion failed."""
    ok = True
    for domain in domains:
        try:
            store.delete_record(domain)
        except DynDNSError as e:
            logger.error(f"{domain.hostname}: {e}")
            ok = False
    return ok


# =============================================================================
# Main
# =============================================================================


def install_signal_handlers(stop_event: threading.Event) -> None:
    def handler(signum: int, frame: Any) -> None:
        logger.info("Shutting down gracefully...")
        stop_event.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def main():
    """Main entry point."""
    logger.info(f"ovh-dyndns: mode={RUN_MODE}, config={CONFIG_PATH}")

    if RUN_MODE not in RUN_MODES:
        logger.error(f"Invalid RUN_MODE: {RUN_MODE}. Use one of: {', '.join(RUN_MODES)}")
        sys.exit(1)

    try:
        config = load_config(CONFIG_PATH, require_domains=RUN_MODE != "server")
    except ConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    try:
        if RUN_MODE == "server":
            serve_echo(config.server_address, stop_event)
            return

        if RUN_MODE == "setup":
            sys.exit(run_setup(config, CONFIG_PATH))

        client = create_ovh_client(config)
        if not check_credentials(client):
            logger.error("Cannot use the OVH API. Exiting.")
            sys.exit(1)
        store = ZoneRecordStore(client)

        if RUN_MODE == "clean":
            sys.exit(0 if clean_records(store, config.domains) else 1)

        logger.info(f"Domains: {', '.join(d.hostname for d in config.domains)}")
        logger.info(f"DNS server: {config.dns_server}")
        logger.info(f"IP provider: {config.ip_provider}")

        syncer = DynDNSSyncer(
            ip_source=ExternalIPSource(timeout=config.http_timeout),
            resolver=AuthoritativeResolver(config.dns_server, timeout=config.dns_timeout),
            record_store=store,
            domains=config.domains,
            ip_provider_url=config.ip_provider,
            stop_event=stop_event,
        )

        if RUN_MODE == "once":
            outcomes = syncer.sync_once()
            failed = [
                h for h, o in outcomes.items() if o in (SyncOutcome.FAILED, SyncOutcome.SKIPPED)
            ]
            sys.exit(1 if failed else 0)

        logger.info(f"Check interval: {config.check_interval:g}s")
        Scheduler(syncer, config.check_interval, stop_event).run()

    except ConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

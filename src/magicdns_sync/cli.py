#!/usr/bin/env python3
"""magicdns-sync - Publish Tailscale peers into a Cloudflare zone

Reads the tailnet roster from `tailscale status --json` and reconciles it
against the A records of a Cloudflare zone whose names end with the managed
domain suffix. Records are created, updated or deleted so that the managed part
of the zone mirrors the tailnet. Records outside the managed suffix are never
touched, and orphaned managed records are only deleted when their comment
carries the ownership marker.

Each invocation is a single reconciliation pass. Any error aborts the run with
exit status 1; re-running converges the zone.

Environment variables:

    Required:
        MAGIC_DOMAIN_SUFFIX    Public suffix records are published under,
                               e.g. ".ts.example.com"
        CF_ZONE_DOMAIN         Cloudflare zone holding the suffix, e.g. "example.com"
        CF_API_TOKEN           Cloudflare API token with DNS edit permission

    Optional:
        OWNERSHIP_MARKER       Substring written into record comments to mark
                               records created by this tool (default: magicmagicdns)
        EXCLUDE_HOSTS          Comma-separated patterns for public names that are
                               never published:
                                 - Exact name: "nas.ts.example.com"
                                 - Wildcard (fnmatch-style): "*-ci.ts.example.com"
                                 - Regex (prefix with ~): "~^tmp-\\d+\\."
                               Owned records matching an exclusion are removed.
        TAILSCALE_BIN          tailscale executable (default: tailscale)
        INCLUDE_SELF           Also publish the local node (default: false)
        DRY_RUN                Log the planned changes without applying them
                               (default: false)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        MAGICDNS_SYNC_CONFIG   Optional YAML file with the same options, using
                               lower-case keys (managed_suffix, zone, api_token,
                               ownership_marker, exclude_hosts, tailscale_bin,
                               include_self, dry_run, log_level)

    Values are read from a `.env` file in the working directory, then the YAML
    file, then the process environment; later sources win.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import requests
import yaml
from dotenv import dotenv_values

logger = logging.getLogger(__name__)

DEFAULT_OWNERSHIP_MARKER = "magicmagicdns"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# =============================================================================
# Errors
# =============================================================================


class MagicDNSSyncError(Exception):
    """Base class for every error that aborts a sync run."""


class ConfigError(MagicDNSSyncError):
    """Configuration is missing or invalid."""


class RosterUnavailable(MagicDNSSyncError):
    """The tailnet status could not be retrieved or parsed."""


class ZoneReadFailure(MagicDNSSyncError):
    """The zone or its records could not be read."""


class InvalidHostname(MagicDNSSyncError):
    """A peer hostname is not a fully-qualified name ending with a dot."""


class NoAddressForPeer(MagicDNSSyncError):
    """A peer has no address to publish."""


class ActionFailure(MagicDNSSyncError):
    """A create, update or delete call against the DNS provider failed."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Peer:
    """A tailnet member as reported by the roster."""

    id: str
    hostname: str
    addresses: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Roster:
    """Snapshot of the tailnet: its MagicDNS suffix and peers keyed by id."""

    mesh_suffix: str
    peers: Dict[str, Peer] = field(default_factory=dict)


@dataclass(frozen=True)
class DNSRecord:
    """An A record in the target zone."""

    id: str
    name: str
    content: str
    comment: str = ""


@dataclass(frozen=True)
class DesiredRecord:
    """The record a peer should have in the zone."""

    name: str
    address: str
    peer_id: str


class ActionType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class SyncAction:
    """A single change to apply to the zone."""

    kind: ActionType
    name: str
    content: str
    record_id: str = ""
    comment: str = ""
    previous_content: str = ""

    def describe(self) -> str:
        if self.kind is ActionType.CREATE:
            return f"create {self.name} -> {self.content}"
        if self.kind is ActionType.UPDATE:
            return f"update {self.name}: {self.previous_content} -> {self.content}"
        return f"delete {self.name} -> {self.content}"


@dataclass
class SyncPlan:
    """Outcome of a reconciliation: ordered actions plus what was left alone."""

    actions: List[SyncAction] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    skipped: List[DNSRecord] = field(default_factory=list)

    def count(self, kind: ActionType) -> int:
        return sum(1 for action in self.actions if action.kind is kind)

    def summary(self) -> str:
        return (
            f"{self.count(ActionType.CREATE)} created, "
            f"{self.count(ActionType.UPDATE)} updated, "
            f"{self.count(ActionType.DELETE)} deleted, "
            f"{len(self.unchanged)} unchanged, "
            f"{len(self.skipped)} skipped"
        )


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_exclude_patterns(value: str) -> List[re.Pattern]:
    """Parse public name exclusion patterns.

    Supports exact names, fnmatch-style wildcards and `~`-prefixed regexes.
    An invalid regex raises ConfigError.
    """
    patterns: List[re.Pattern] = []
    if not value:
        return patterns

    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue

        try:
            if item.startswith("~"):
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                regex_str = re.escape(item)
                regex_str = regex_str.replace(r"\*", ".*").replace(r"\?", ".")
                patterns.append(re.compile(f"^{regex_str}$", re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
        except re.error as e:
            raise ConfigError(f"Invalid exclusion pattern '{item}': {e}") from e

    return patterns


def _is_domain_excluded(domain: str, patterns: Iterable[re.Pattern]) -> bool:
    """Check if a domain matches any exclusion pattern."""
    return any(pattern.search(domain) for pattern in patterns)


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """Format a moment as `YYYY-MM-DDTHH:MM:SSZ` in UTC."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime(TIMESTAMP_FORMAT)


def normalize_hostname(hostname: str, mesh_suffix: str, managed_suffix: str) -> str:
    """Map a MagicDNS hostname onto the managed public suffix.

    `host1.tail1234.ts.net.` with mesh suffix `tail1234.ts.net` and managed
    suffix `.example.com` becomes `host1.example.com`. Hostnames that do not
    sit under the mesh suffix (nodes shared in from another tailnet) keep all
    of their labels.
    """
    if not hostname.endswith("."):
        raise InvalidHostname(f"Hostname must end with a dot: '{hostname}'")

    mesh_suffix = mesh_suffix.strip(".")
    local = hostname
    if mesh_suffix and hostname.endswith(f".{mesh_suffix}."):
        local = hostname[: -(len(mesh_suffix) + 1)]

    if local.startswith(".") or ".." in local:
        raise InvalidHostname(f"Hostname has an empty label: '{hostname}'")

    return local + managed_suffix.lstrip(".")


# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH_ENV = "MAGICDNS_SYNC_CONFIG"

# Environment variable -> YAML key
CONFIG_KEYS = {
    "MAGIC_DOMAIN_SUFFIX": "managed_suffix",
    "CF_ZONE_DOMAIN": "zone",
    "CF_API_TOKEN": "api_token",
    "OWNERSHIP_MARKER": "ownership_marker",
    "EXCLUDE_HOSTS": "exclude_hosts",
    "TAILSCALE_BIN": "tailscale_bin",
    "INCLUDE_SELF": "include_self",
    "DRY_RUN": "dry_run",
    "LOG_LEVEL": "log_level",
}


def _load_yaml_options(path: str) -> Dict[str, str]:
    """Read a YAML options file and return its values keyed by env var name."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must be a YAML mapping")

    env_names = {key: env for env, key in CONFIG_KEYS.items()}
    options: Dict[str, str] = {}
    for key, value in data.items():
        env_name = env_names.get(str(key))
        if env_name is None:
            logger.warning(f"Ignoring unknown option '{key}' in {path}")
            continue
        if value is None:
            continue
        if isinstance(value, list):
            value = ",".join(str(v) for v in value)
        options[env_name] = str(value)
    return options


def _merge_sources(*sources: Mapping[str, Optional[str]]) -> Dict[str, str]:
    merged: Dict[str, str] = {}
    for source in sources:
        for key, value in source.items():
            if value is None or not str(value).strip():
                continue
            merged[key] = str(value).strip()
    return merged


@dataclass(frozen=True)
class Config:
    """Settings for one run, built once at startup."""

    managed_suffix: str
    zone: str
    api_token: str = field(repr=False)
    ownership_marker: str = DEFAULT_OWNERSHIP_MARKER
    exclude_patterns: Tuple[re.Pattern, ...] = ()
    tailscale_bin: str = "tailscale"
    include_self: bool = False
    dry_run: bool = False
    log_level: str = "INFO"

    @classmethod
    def load(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = ".env",
    ) -> "Config":
        """Build the configuration from `.env`, the YAML file and the environment."""
        if environ is None:
            environ = os.environ
        dotenv: Mapping[str, Optional[str]] = {}
        if dotenv_path and Path(dotenv_path).is_file():
            dotenv = dotenv_values(dotenv_path)

        base = _merge_sources(dotenv, environ)
        yaml_options: Dict[str, str] = {}
        config_path = base.get(CONFIG_PATH_ENV, "")
        if config_path:
            yaml_options = _load_yaml_options(config_path)

        values = _merge_sources(dotenv, yaml_options, environ)
        return cls.from_mapping(values)

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "Config":
        """Validate raw option values keyed by env var name."""
        errors: List[str] = []

        for env_name in ("MAGIC_DOMAIN_SUFFIX", "CF_ZONE_DOMAIN", "CF_API_TOKEN"):
            if not values.get(env_name, "").strip():
                errors.append(f"{env_name} is required")

        zone = values.get("CF_ZONE_DOMAIN", "").strip().strip(".").lower()
        bare_suffix = values.get("MAGIC_DOMAIN_SUFFIX", "").strip().strip(".").lower()
        if zone and bare_suffix and bare_suffix != zone and not bare_suffix.endswith(f".{zone}"):
            errors.append(
                f"MAGIC_DOMAIN_SUFFIX '{bare_suffix}' is not inside zone CF_ZONE_DOMAIN '{zone}'"
            )

        log_level = values.get("LOG_LEVEL", "INFO").strip().upper()
        if not isinstance(logging.getLevelName(log_level), int):
            errors.append(f"LOG_LEVEL '{log_level}' is not a valid logging level")

        marker = values.get("OWNERSHIP_MARKER", DEFAULT_OWNERSHIP_MARKER).strip()
        if not marker:
            errors.append("OWNERSHIP_MARKER must not be empty")

        try:
            exclude_patterns = _parse_exclude_patterns(values.get("EXCLUDE_HOSTS", ""))
        except ConfigError as e:
            errors.append(str(e))
            exclude_patterns = []

        if errors:
            raise ConfigError("; ".join(errors))

        return cls(
            managed_suffix=f".{bare_suffix}",
            zone=zone,
            api_token=values["CF_API_TOKEN"].strip(),
            ownership_marker=marker,
            exclude_patterns=tuple(exclude_patterns),
            tailscale_bin=values.get("TAILSCALE_BIN", "tailscale").strip() or "tailscale",
            include_self=_parse_bool(values.get("INCLUDE_SELF"), default=False),
            dry_run=_parse_bool(values.get("DRY_RUN"), default=False),
            log_level=log_level,
        )


# =============================================================================
# Roster Provider Interface and Implementations
# =============================================================================


class RosterProvider(ABC):
    """Abstract base class for tailnet roster sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def get_roster(self) -> Roster:
        """Return the current tailnet snapshot or raise RosterUnavailable."""
        pass


class TailscaleRosterProvider(RosterProvider):
    """Reads the roster from the local tailscale CLI."""

    def __init__(self, binary: str = "tailscale", include_self: bool = False):
        self._binary = binary
        self._include_self = include_self

    @property
    def name(self) -> str:
        return "Tailscale"

    def get_roster(self) -> Roster:
        cmd = [self._binary, "status", "--json"]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except OSError as e:
            raise RosterUnavailable(f"Failed to run {self._binary}: {e}") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise RosterUnavailable(
                f"'{' '.join(cmd)}' exited with status {e.returncode}: {stderr}"
            ) from e
        return self.parse_status(result.stdout)

    def parse_status(self, raw: str) -> Roster:
        """Parse the JSON printed by `tailscale status --json`."""
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise RosterUnavailable(f"Invalid JSON from tailscale status: {e}") from e

        if not isinstance(data, dict):
            raise RosterUnavailable(
                f"Unexpected tailscale status format: expected object, got {type(data).__name__}"
            )

        backend_state = data.get("BackendState")
        if backend_state != "Running":
            raise RosterUnavailable(f"tailscale is not running (BackendState: {backend_state})")

        tailnet = data.get("CurrentTailnet")
        mesh_suffix = ""
        if isinstance(tailnet, dict):
            mesh_suffix = str(tailnet.get("MagicDNSSuffix") or "")
        if not mesh_suffix:
            mesh_suffix = str(data.get("MagicDNSSuffix") or "")
        mesh_suffix = mesh_suffix.strip(".")
        if not mesh_suffix:
            raise RosterUnavailable("tailscale status reports no MagicDNS suffix")

        raw_peers = data.get("Peer") or {}
        if not isinstance(raw_peers, dict):
            raise RosterUnavailable("Unexpected tailscale status format: 'Peer' is not an object")

        peers: Dict[str, Peer] = {}
        for key, item in raw_peers.items():
            peer = self._parse_peer(key, item)
            peers[peer.id] = peer

        if self._include_self and isinstance(data.get("Self"), dict):
            peer = self._parse_peer("self", data["Self"])
            peers[peer.id] = peer

        return Roster(mesh_suffix=mesh_suffix, peers=peers)

    @staticmethod
    def _parse_peer(key: str, item: Any) -> Peer:
        if not isinstance(item, dict):
            raise RosterUnavailable(f"Malformed peer entry '{key}': {item!r}")
        addresses = item.get("TailscaleIPs") or []
        if not isinstance(addresses, list):
            raise RosterUnavailable(f"Malformed TailscaleIPs for peer '{key}': {addresses!r}")
        return Peer(
            id=str(item.get("ID") or key),
            hostname=str(item.get("DNSName") or ""),
            addresses=tuple(str(a) for a in addresses),
        )


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers.

    Reads raise ZoneReadFailure and writes raise ActionFailure.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def get_records(self) -> List[DNSRecord]:
        """Get all A records in the zone."""
        pass

    @abstractmethod
    def create_record(self, name: str, content: str, comment: str) -> DNSRecord:
        """Create an A record."""
        pass

    @abstractmethod
    def update_record(self, record_id: str, name: str, content: str, comment: str) -> DNSRecord:
        """Change the address and comment of an existing record."""
        pass

    @abstractmethod
    def delete_record(self, record_id: str) -> None:
        """Delete a record."""
        pass


def _cloudflare_errors(payload: Any, text: str) -> str:
    if isinstance(payload, dict) and payload.get("errors"):
        return "; ".join(
            f"{e.get('code')}: {e.get('message')}" if isinstance(e, dict) else str(e)
            for e in payload["errors"]
        )
    return (text or "No response text")[:200]


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare v4 API DNS provider for a single zone."""

    API_BASE_URL = "https://api.cloudflare.com/client/v4"
    RECORD_TYPE = "A"
    PAGE_SIZE = 100

    def __init__(
        self,
        api_token: str,
        zone_name: str,
        base_url: str = API_BASE_URL,
        timeout_seconds: float = 10.0,
    ):
        self._zone_name = zone_name
        self._url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._zone_id: Optional[str] = None
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = self._session.request(
            method, f"{self._url}{path}", params=params, json=payload, timeout=self._timeout
        )
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.ok and isinstance(data, dict) and data.get("success"):
            return data
        raise requests.exceptions.HTTPError(
            f"{method} {path} failed ({response.status_code}): {_cloudflare_errors(data, response.text)}",
            response=response,
        )

    def get_zone_id(self) -> str:
        if self._zone_id is not None:
            return self._zone_id
        try:
            data = self._request("GET", "/zones", params={"name": self._zone_name})
        except requests.exceptions.RequestException as e:
            raise ZoneReadFailure(f"Failed to look up zone {self._zone_name}: {e}") from e

        zones = data.get("result") or []
        if not zones or not isinstance(zones[0], dict) or not zones[0].get("id"):
            raise ZoneReadFailure(f"No Cloudflare zone found for {self._zone_name}")
        self._zone_id = str(zones[0]["id"])
        logger.info(f"Zone {self._zone_name}: {self._zone_id}")
        return self._zone_id

    @staticmethod
    def _to_record(item: Any) -> Optional[DNSRecord]:
        if not isinstance(item, dict):
            return None
        record_id = item.get("id")
        name = item.get("name")
        content = item.get("content")
        if not isinstance(record_id, str) or not isinstance(name, str) or not isinstance(content, str):
            return None
        return DNSRecord(id=record_id, name=name, content=content, comment=item.get("comment") or "")

    def get_records(self) -> List[DNSRecord]:
        zone_id = self.get_zone_id()
        records: List[DNSRecord] = []
        page = 1
        while True:
            try:
                data = self._request(
                    "GET",
                    f"/zones/{zone_id}/dns_records",
                    params={"type": self.RECORD_TYPE, "page": page, "per_page": self.PAGE_SIZE},
                )
            except requests.exceptions.RequestException as e:
                raise ZoneReadFailure(f"Failed to list records of {self._zone_name}: {e}") from e

            for item in data.get("result") or []:
                record = self._to_record(item)
                if record is None:
                    logger.warning(f"Skipping malformed record: {item}")
                    continue
                records.append(record)

            info = data.get("result_info") or {}
            total_pages = int(info.get("total_pages") or 1)
            if page >= total_pages:
                return records
            page += 1

    def create_record(self, name: str, content: str, comment: str) -> DNSRecord:
        zone_id = self.get_zone_id()
        body = {"type": self.RECORD_TYPE, "name": name, "content": content, "comment": comment}
        try:
            data = self._request("POST", f"/zones/{zone_id}/dns_records", payload=body)
        except requests.exceptions.RequestException as e:
            raise ActionFailure(f"Failed to create record {name}: {e}") from e
        logger.info(f"Created record: {name} -> {content}")
        return self._to_record(data.get("result")) or DNSRecord(
            id="", name=name, content=content, comment=comment
        )

    def update_record(self, record_id: str, name: str, content: str, comment: str) -> DNSRecord:
        zone_id = self.get_zone_id()
        body = {"type": self.RECORD_TYPE, "name": name, "content": content, "comment": comment}
        try:
            data = self._request("PATCH", f"/zones/{zone_id}/dns_records/{record_id}", payload=body)
        except requests.exceptions.RequestException as e:
            raise ActionFailure(f"Failed to update record {name} ({record_id}): {e}") from e
        logger.info(f"Updated record: {name} -> {content}")
        return self._to_record(data.get("result")) or DNSRecord(
            id=record_id, name=name, content=content, comment=comment
        )

    def delete_record(self, record_id: str) -> None:
        zone_id = self.get_zone_id()
        try:
            self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")
        except requests.exceptions.RequestException as e:
            raise ActionFailure(f"Failed to delete record {record_id}: {e}") from e
        logger.info(f"Deleted record: {record_id}")


# =============================================================================
# Reconciliation
# =============================================================================


def build_desired_records(
    roster: Roster,
    managed_suffix: str,
    exclude_patterns: Sequence[re.Pattern] = (),
) -> Dict[str, DesiredRecord]:
    """Derive one desired record per public name from the roster.

    Peers are visited in id order so logs and the winner of a name collision
    are deterministic. On a collision the later peer wins.
    """
    desired: Dict[str, DesiredRecord] = {}
    for peer_id in sorted(roster.peers):
        peer = roster.peers[peer_id]
        name = normalize_hostname(peer.hostname, roster.mesh_suffix, managed_suffix)
        if not peer.addresses:
            raise NoAddressForPeer(f"Peer {peer_id} ({peer.hostname}) has no addresses")
        address = peer.addresses[0]
        logger.debug(
            f"Peer {peer_id}: {peer.hostname} [{'; '.join(peer.addresses)}] -> {name} {address}"
        )

        if _is_domain_excluded(name, exclude_patterns):
            logger.info(f"Excluding {name} (matches exclusion pattern)")
            continue

        previous = desired.get(name)
        if previous is not None:
            logger.warning(
                f"Peers {previous.peer_id} and {peer_id} both map to {name}; using {peer_id}"
            )
        desired[name] = DesiredRecord(name=name, address=address, peer_id=peer_id)
    return desired


def plan_changes(
    roster: Roster,
    zone_records: Sequence[DNSRecord],
    managed_suffix: str,
    *,
    marker: str = DEFAULT_OWNERSHIP_MARKER,
    exclude_patterns: Sequence[re.Pattern] = (),
    now: Optional[datetime] = None,
) -> SyncPlan:
    """Compute the actions that make the managed records mirror the roster.

    Only records whose name ends with `managed_suffix` are considered. Deletion
    decisions are made after every peer has been matched, and only for records
    whose comment contains `marker`.
    """
    candidates = [r for r in zone_records if r.name.endswith(managed_suffix)]
    desired = build_desired_records(roster, managed_suffix, exclude_patterns)
    timestamp = utc_timestamp(now)

    plan = SyncPlan()
    keep: Set[str] = set()

    for name, record in desired.items():
        matches = [c for c in candidates if c.name == name]
        keep.add(name)

        if not matches:
            plan.actions.append(
                SyncAction(
                    kind=ActionType.CREATE,
                    name=name,
                    content=record.address,
                    comment=f"Automatically created by {marker} at {timestamp}",
                )
            )
            continue

        if len(matches) > 1:
            logger.warning(
                f"Found {len(matches)} records named {name}; using {matches[0].id}"
            )
        existing = matches[0]
        if existing.content != record.address:
            plan.actions.append(
                SyncAction(
                    kind=ActionType.UPDATE,
                    name=name,
                    content=record.address,
                    record_id=existing.id,
                    comment=f"Automatically updated by {marker} at {timestamp}",
                    previous_content=existing.content,
                )
            )
        else:
            plan.unchanged.append(name)

    for candidate in candidates:
        if candidate.name in keep:
            continue
        if marker not in candidate.comment:
            logger.warning(
                f"Skip deleting record {candidate.name} -> {candidate.content}: "
                f"not created by {marker}"
            )
            plan.skipped.append(candidate)
            continue
        plan.actions.append(
            SyncAction(
                kind=ActionType.DELETE,
                name=candidate.name,
                content=candidate.content,
                record_id=candidate.id,
                previous_content=candidate.content,
            )
        )

    return plan


def apply_plan(provider: DNSProvider, plan: SyncPlan) -> int:
    """Apply every action in order. The first failure propagates."""
    applied = 0
    for action in plan.actions:
        logger.debug(f"Applying: {action.describe()}")
        if action.kind is ActionType.CREATE:
            provider.create_record(action.name, action.content, action.comment)
        elif action.kind is ActionType.UPDATE:
            provider.update_record(action.record_id, action.name, action.content, action.comment)
        else:
            provider.delete_record(action.record_id)
        applied += 1
    return applied


# =============================================================================
# Core Syncer
# =============================================================================


class MagicDNSSyncer:
    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        roster_provider: RosterProvider,
        config: Config,
    ):
        self.dns_provider = dns_provider
        self.roster_provider = roster_provider
        self.config = config

    def sync_once(self) -> SyncPlan:
        roster = self.roster_provider.get_roster()
        logger.info(f"Tailnet {roster.mesh_suffix}: {len(roster.peers)} peer(s)")

        records = self.dns_provider.get_records()
        managed = [r for r in records if r.name.endswith(self.config.managed_suffix)]
        logger.info(
            f"Zone {self.config.zone}: {len(records)} A record(s), "
            f"{len(managed)} under {self.config.managed_suffix}"
        )
        for record in managed:
            logger.debug(f"Managed record: {record.name} -> {record.content}")

        plan = plan_changes(
            roster,
            records,
            self.config.managed_suffix,
            marker=self.config.ownership_marker,
            exclude_patterns=self.config.exclude_patterns,
        )

        if self.config.dry_run:
            for action in plan.actions:
                logger.info(f"[dry-run] Would {action.describe()}")
        else:
            apply_plan(self.dns_provider, plan)

        logger.info(f"Sync complete: {plan.summary()}")
        return plan


# =============================================================================
# Main
# =============================================================================


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stdout,
        force=True,
    )


def create_dns_provider(config: Config) -> DNSProvider:
    return CloudflareDNSProvider(config.api_token, config.zone)


def create_roster_provider(config: Config) -> RosterProvider:
    return TailscaleRosterProvider(binary=config.tailscale_bin, include_self=config.include_self)


def run(config: Config) -> SyncPlan:
    """Run one reconciliation pass with the configured providers."""
    dns_provider = create_dns_provider(config)
    roster_provider = create_roster_provider(config)

    logger.info(f"magicdns-sync: {roster_provider.name} -> {dns_provider.name}")
    logger.info(f"Managed suffix: {config.managed_suffix} (zone {config.zone})")
    if config.exclude_patterns:
        logger.info(f"Host exclusions: {len(config.exclude_patterns)} pattern(s) configured")
    if config.dry_run:
        logger.info("Dry run: no changes will be applied")

    syncer = MagicDNSSyncer(
        dns_provider=dns_provider,
        roster_provider=roster_provider,
        config=config,
    )
    return syncer.sync_once()


def main() -> None:
    """Main entry point."""
    setup_logging()
    try:
        config = Config.load()
    except ConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    setup_logging(config.log_level)

    try:
        run(config)
    except MagicDNSSyncError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.warning("Interrupted, aborting run")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""tunneldock - Docker to Cloudflare Tunnel Synchronization

Watches the containers on a Docker host and keeps a Cloudflare Tunnel's ingress
rules and the zone's CNAME records in sync with the routes the containers
declare through labels.

Container labels (prefix configurable, default "tunneldock"):

    tunneldock.assign                   "true" to publish the container
    tunneldock.hostname                 Public hostname. The zone's domain is
                                        appended if missing.
                                        (default: <container-name>.<domain>)
    tunneldock.service.protocol         Origin protocol (default: http)
    tunneldock.service.port             Origin port (default: first published
                                        port, else 80)
    tunneldock.service.path             Optional origin path
    tunneldock.originRequest.<option>   Origin request option, e.g.
                                        tunneldock.originRequest.noTLSVerify=true

Environment variables:

    Cloudflare:
        CF_API_TOKEN           API token (required)
        CF_API_EMAIL           Account email sent alongside the token (optional)
        CF_ACCOUNT_ID          Account owning the tunnel (required)
        CF_TUNNEL_ID           Tunnel to manage (required)
        CF_ZONE_ID             Zone receiving the CNAME records (required)
        CF_API_URL             API base URL (default: https://api.cloudflare.com/client/v4)

    Runtime:
        SYNC_MODE                    "once" or "watch" (polling loop) (default: watch)
        TUNNELDOCK_WATCH_INTERVAL    Poll interval in milliseconds (default: 1000)
        TUNNELDOCK_LABEL_PREFIX      Label namespace (default: tunneldock)
        TUNNELDOCK_RETRACT_STOPPED   Remove routes of stopped containers (default: false)
        TUNNELDOCK_REQUEST_TIMEOUT   Cloudflare request timeout in seconds (default: 10)
        TUNNELDOCK_CONFIG_PATH       Optional YAML file with the same settings in
                                     snake_case (default: /config/tunneldock.yaml).
                                     Environment variables take precedence.
        STATE_PATH                   JSON state file path (default: /data/tunneldock.json)
        LOG_LEVEL                    DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Set, Tuple

import docker
import docker.errors
import requests
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

# =============================================================================
# Configuration
# =============================================================================

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
TUNNEL_CNAME_SUFFIX = "cfargotunnel.com"
DEFAULT_LABEL_PREFIX = "tunneldock"
CATCH_ALL_HOSTNAME = "*"
CATCH_ALL_SERVICE = "http_status:404"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
TUNNELDOCK_CONFIG_PATH = os.getenv("TUNNELDOCK_CONFIG_PATH", "/config/tunneldock.yaml")


@dataclass(frozen=True)
class Settings:
    """Process configuration, resolved once at startup."""

    api_token: str = ""
    api_email: str = ""
    account_id: str = ""
    tunnel_id: str = ""
    zone_id: str = ""
    api_url: str = CLOUDFLARE_API_URL
    sync_mode: str = "watch"
    watch_interval_ms: int = 1000
    label_prefix: str = DEFAULT_LABEL_PREFIX
    retract_stopped: bool = False
    request_timeout: float = 10.0
    state_path: str = "/data/tunneldock.json"

    @property
    def watch_interval_seconds(self) -> float:
        return max(0, self.watch_interval_ms) / 1000.0


# Environment variable -> Settings field
ENV_SETTINGS: Dict[str, str] = {
    "CF_API_TOKEN": "api_token",
    "CF_API_EMAIL": "api_email",
    "CF_ACCOUNT_ID": "account_id",
    "CF_TUNNEL_ID": "tunnel_id",
    "CF_ZONE_ID": "zone_id",
    "CF_API_URL": "api_url",
    "SYNC_MODE": "sync_mode",
    "TUNNELDOCK_WATCH_INTERVAL": "watch_interval_ms",
    "TUNNELDOCK_LABEL_PREFIX": "label_prefix",
    "TUNNELDOCK_RETRACT_STOPPED": "retract_stopped",
    "TUNNELDOCK_REQUEST_TIMEOUT": "request_timeout",
    "STATE_PATH": "state_path",
}

REQUIRED_SETTINGS: Dict[str, str] = {
    "api_token": "CF_API_TOKEN",
    "account_id": "CF_ACCOUNT_ID",
    "tunnel_id": "CF_TUNNEL_ID",
    "zone_id": "CF_ZONE_ID",
}

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


class TunnelDockError(Exception):
    """Base class for all tunneldock errors."""


class StartupConfigError(TunnelDockError):
    """Required configuration is missing or invalid."""


class RemoteApiError(TunnelDockError):
    """A call to the tunnel/DNS provider failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ContainerRuntimeError(TunnelDockError):
    """The container runtime could not be queried."""


class PersistenceError(TunnelDockError):
    """The state file could not be read or written."""


class StateValidationError(PersistenceError):
    """State does not match the persisted schema."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class PortMapping:
    """A port exposed by a container."""

    private_port: int
    public_port: Optional[int] = None
    protocol: str = "tcp"
    ip: Optional[str] = None


@dataclass(frozen=True)
class ContainerInfo:
    """Point-in-time observation of a container."""

    name: str
    state: str
    labels: Dict[str, str] = field(default_factory=dict)
    ports: Tuple[PortMapping, ...] = ()
    status: str = ""
    image: str = ""
    created: str = ""

    @property
    def is_running(self) -> bool:
        return self.state == "running"


@dataclass(frozen=True)
class OriginRequest:
    """Cloudflare origin request options. Unset fields are None."""

    connect_timeout: Optional[int] = None
    disable_chunked_encoding: Optional[bool] = None
    http2_origin: Optional[bool] = None
    http_host_header: Optional[str] = None
    keep_alive_connections: Optional[int] = None
    keep_alive_timeout: Optional[int] = None
    no_happy_eyeballs: Optional[bool] = None
    no_tls_verify: Optional[bool] = None
    origin_server_name: Optional[str] = None
    proxy_type: Optional[str] = None
    tcp_keep_alive: Optional[int] = None
    tls_timeout: Optional[int] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def to_api(self) -> Dict[str, Any]:
        """Return the set options keyed by their Cloudflare names."""
        return {
            option.key: getattr(self, option.attr)
            for option in ORIGIN_REQUEST_OPTIONS
            if getattr(self, option.attr) is not None
        }


DEFAULT_ORIGIN_REQUEST = OriginRequest(
    connect_timeout=0,
    disable_chunked_encoding=False,
    http2_origin=False,
    no_tls_verify=False,
    tcp_keep_alive=30,
)


@dataclass(frozen=True)
class OriginRequestOption:
    """Describes one origin request option: its label/API key, attribute and value kind."""

    key: str
    attr: str
    kind: Literal["bool", "int", "str"]


ORIGIN_REQUEST_OPTIONS: Tuple[OriginRequestOption, ...] = (
    OriginRequestOption("http2Origin", "http2_origin", "bool"),
    OriginRequestOption("noTLSVerify", "no_tls_verify", "bool"),
    OriginRequestOption("disableChunkedEncoding", "disable_chunked_encoding", "bool"),
    OriginRequestOption("noHappyEyeballs", "no_happy_eyeballs", "bool"),
    OriginRequestOption("connectTimeout", "connect_timeout", "int"),
    OriginRequestOption("keepAliveConnections", "keep_alive_connections", "int"),
    OriginRequestOption("keepAliveTimeout", "keep_alive_timeout", "int"),
    OriginRequestOption("tcpKeepAlive", "tcp_keep_alive", "int"),
    OriginRequestOption("tlsTimeout", "tls_timeout", "int"),
    OriginRequestOption("httpHostHeader", "http_host_header", "str"),
    OriginRequestOption("originServerName", "origin_server_name", "str"),
    OriginRequestOption("proxyType", "proxy_type", "str"),
)
ORIGIN_REQUEST_OPTIONS_BY_KEY = {option.key: option for option in ORIGIN_REQUEST_OPTIONS}


@dataclass(frozen=True)
class ServiceLabels:
    """Origin service settings declared through labels."""

    protocol: str = "http"
    port: Optional[int] = None
    path: Optional[str] = None


@dataclass(frozen=True)
class LabelConfig:
    """Structured view of a container's tunneldock labels."""

    assign: bool = False
    hostname: Optional[str] = None
    service: Optional[ServiceLabels] = None
    origin_request: OriginRequest = field(default_factory=OriginRequest)


@dataclass(frozen=True)
class RoutingDeclaration:
    """A route a container wants published through the tunnel."""

    container_name: str
    hostname: str
    port: int
    service: str
    origin_request: OriginRequest = field(default_factory=OriginRequest)


@dataclass(frozen=True)
class ManageDecision:
    """Result of deriving a container's desired state for one tick."""

    manage: bool
    declaration: Optional[RoutingDeclaration] = None


@dataclass(frozen=True)
class DNSRecord:
    """Represents a DNS record in the provider's zone."""

    id: str
    name: str
    content: str
    type: str = "CNAME"
    proxied: bool = True


@dataclass(frozen=True)
class UpsertResult:
    config_status: str
    dns_status: str


# =============================================================================
# Persisted State Schema
# =============================================================================


class _StateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, validate_assignment=True, extra="ignore")


class PortSnapshot(_StateModel):
    private_port: int = Field(alias="privatePort")
    public_port: Optional[int] = Field(default=None, alias="publicPort")
    protocol: str = "tcp"
    ip: Optional[str] = None


class ContainerSnapshot(_StateModel):
    name: str
    state: str
    status: str = ""
    image: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    ports: List[PortSnapshot] = Field(default_factory=list)
    created: str = ""

    @classmethod
    def from_container(cls, container: ContainerInfo) -> "ContainerSnapshot":
        return cls(
            name=container.name,
            state=container.state,
            status=container.status,
            image=container.image,
            labels=dict(container.labels),
            ports=[
                PortSnapshot(
                    private_port=p.private_port,
                    public_port=p.public_port,
                    protocol=p.protocol,
                    ip=p.ip,
                )
                for p in container.ports
            ],
            created=container.created,
        )


DnsStatus = Literal["created", "updated", "unchanged"]


class TunnelRecord(_StateModel):
    hostname: str
    tunnel_id: str = Field(alias="tunnelId")
    service: str
    origin_request: Optional[Dict[str, Any]] = Field(default=None, alias="originRequest")
    config_status: Literal["updated"] = Field(alias="configStatus")
    dns_status: Optional[DnsStatus] = Field(default=None, alias="dnsStatus")
    last_sync: datetime = Field(alias="lastSync")


class DomainRecord(_StateModel):
    hostname: str
    target: str
    status: DnsStatus
    last_sync: datetime = Field(alias="lastSync")


class TunnelDockState(_StateModel):
    timestamp: datetime
    containers: List[ContainerSnapshot] = Field(default_factory=list)
    tunnels: Dict[str, TunnelRecord] = Field(default_factory=dict)
    domains: Dict[str, DomainRecord] = Field(default_factory=dict)

    @classmethod
    def empty(cls) -> "TunnelDockState":
        return cls(timestamp=_utcnow())


# =============================================================================
# Utility Functions
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"expected an integer, got {value!r}")
    return int(str(value).strip())


_OPTION_PARSERS: Dict[str, Callable[[str], Any]] = {
    "bool": lambda value: _parse_bool(value, default=False),
    "int": _parse_int,
    "str": str,
}


def dns_target(tunnel_id: str) -> str:
    """CNAME target that routes a hostname into the tunnel."""
    return f"{tunnel_id}.{TUNNEL_CNAME_SUFFIX}"


# =============================================================================
# Configuration Loading
# =============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load settings from a YAML file. Returns {} if the file doesn't exist."""
    path = Path(config_path) if config_path else None
    if path is None or not path.is_file():
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise StartupConfigError(f"Failed to load config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise StartupConfigError(f"Config file {path} must contain a mapping")
    return data


def _coerce_setting(name: str, value: Any) -> Any:
    default = getattr(Settings(), name)
    try:
        if isinstance(default, bool):
            return _parse_bool(value, default=default)
        if isinstance(default, int):
            return _parse_int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise StartupConfigError(f"Invalid value for {name}: {value!r}") from e
    return str(value).strip()


def load_settings(
    environ: Optional[Mapping[str, str]] = None, config_path: Optional[str] = None
) -> Settings:
    """Build Settings from defaults, then the YAML config file, then the environment."""
    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = environ.get("TUNNELDOCK_CONFIG_PATH", TUNNELDOCK_CONFIG_PATH)

    known = {f.name for f in fields(Settings)}
    values: Dict[str, Any] = {}

    for key, value in load_config_file(config_path).items():
        if key not in known:
            logger.warning(f"Ignoring unknown setting '{key}' in {config_path}")
            continue
        if value is not None:
            values[key] = _coerce_setting(key, value)

    for env_name, attr in ENV_SETTINGS.items():
        value = environ.get(env_name)
        if value is not None and value.strip() != "":
            values[attr] = _coerce_setting(attr, value)

    return Settings(**values)


def validate_settings(settings: Settings) -> None:
    """Raise StartupConfigError if the settings cannot run the syncer."""
    errors = []

    missing = [env for attr, env in REQUIRED_SETTINGS.items() if not getattr(settings, attr)]
    if missing:
        errors.append(f"Missing required environment variables: {', '.join(missing)}")

    if settings.sync_mode not in {"once", "watch"}:
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")

    if not settings.label_prefix:
        errors.append("TUNNELDOCK_LABEL_PREFIX must not be empty")

    if settings.request_timeout <= 0:
        errors.append("TUNNELDOCK_REQUEST_TIMEOUT must be positive")

    if errors:
        raise StartupConfigError("; ".join(errors))

    if not settings.api_email:
        logger.warning("CF_API_EMAIL not set. Authenticating with the API token only.")


# =============================================================================
# Label Parsing and Desired State
# =============================================================================


def parse_labels(labels: Mapping[str, str], prefix: str = DEFAULT_LABEL_PREFIX) -> LabelConfig:
    """Parse dot-notation labels under `prefix` into a LabelConfig.

    Unknown keys are ignored. Values that can't be parsed for their kind are
    dropped with a warning.
    """
    namespace = f"{prefix}."
    assign = False
    hostname: Optional[str] = None
    service: Optional[Dict[str, Any]] = None
    options: Dict[str, Any] = {}

    for key, value in labels.items():
        if not key.startswith(namespace):
            continue
        path = key[len(namespace) :].split(".")
        section = path[0]

        if section == "assign" and len(path) == 1:
            assign = _parse_bool(value, default=False)
        elif section == "hostname" and len(path) == 1:
            hostname = value.strip() or None
        elif section == "service":
            if service is None:
                service = {}
            if len(path) != 2:
                continue
            if path[1] == "protocol" and value.strip():
                service["protocol"] = value.strip()
            elif path[1] == "port":
                try:
                    service["port"] = _parse_int(value)
                except ValueError:
                    logger.warning(f"Ignoring invalid label {key}={value!r}")
            elif path[1] == "path" and value.strip():
                service["path"] = value.strip()
        elif section == "originRequest" and len(path) == 2:
            option = ORIGIN_REQUEST_OPTIONS_BY_KEY.get(path[1])
            if option is None:
                logger.debug(f"Ignoring unknown origin request option '{path[1]}'")
                continue
            try:
                options[option.attr] = _OPTION_PARSERS[option.kind](value)
            except ValueError:
                logger.warning(f"Ignoring invalid label {key}={value!r}")

    return LabelConfig(
        assign=assign,
        hostname=hostname,
        service=ServiceLabels(**service) if service is not None else None,
        origin_request=OriginRequest(**options),
    )


def qualify_hostname(hostname: str, domain: str) -> str:
    """Make sure hostname lives under domain, appending the domain if it doesn't."""
    hostname = hostname.rstrip(".")
    folded, domain_folded = hostname.lower(), domain.lower()
    if not domain or folded == domain_folded or folded.endswith(f".{domain_folded}"):
        return hostname
    qualified = f"{hostname}.{domain}"
    logger.warning(
        f"Hostname '{hostname}' is not under '{domain}', using '{qualified}' instead"
    )
    return qualified


def _first_public_port(container: ContainerInfo) -> Optional[int]:
    for port in container.ports:
        if port.public_port:
            return port.public_port
    return None


def resolve_declaration(
    container: ContainerInfo, *, domain: str, prefix: str = DEFAULT_LABEL_PREFIX
) -> Optional[RoutingDeclaration]:
    """Resolve the route a container declares, or None if it isn't assigned.

    Ignores the container's lifecycle state.
    """
    config = parse_labels(container.labels, prefix)
    if not config.assign:
        return None

    if config.hostname:
        hostname = qualify_hostname(config.hostname, domain)
    else:
        hostname = f"{container.name}.{domain}"

    service = config.service or ServiceLabels()
    port = service.port or _first_public_port(container) or 80
    protocol = service.protocol or "http"

    url = f"{protocol}://localhost:{port}"
    if service.path:
        url += service.path if service.path.startswith("/") else f"/{service.path}"

    return RoutingDeclaration(
        container_name=container.name,
        hostname=hostname,
        port=port,
        service=url,
        origin_request=config.origin_request,
    )


def derive(
    container: ContainerInfo,
    previous_state: Optional[str],
    *,
    domain: str,
    prefix: str = DEFAULT_LABEL_PREFIX,
) -> ManageDecision:
    """Decide whether a container's route should be upserted this tick.

    Only fires on the tick a container becomes running, so steady containers
    don't hit the API every poll.
    """
    declaration = resolve_declaration(container, domain=domain, prefix=prefix)
    if declaration is None:
        return ManageDecision(manage=False)

    if container.is_running and previous_state != container.state:
        return ManageDecision(manage=True, declaration=declaration)
    return ManageDecision(manage=False)


# =============================================================================
# Ingress Rule Functions
# =============================================================================


def is_catch_all(rule: Mapping[str, Any]) -> bool:
    """A catch-all matches every request: no hostname (or "*") and no path."""
    if rule.get("path"):
        return False
    hostname = rule.get("hostname")
    return not hostname or hostname == CATCH_ALL_HOSTNAME


def default_catch_all() -> Dict[str, Any]:
    return {"hostname": CATCH_ALL_HOSTNAME, "service": CATCH_ALL_SERVICE}


def ensure_catch_all(rules: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Return rules with exactly one catch-all, placed last.

    Every other rule, hostless path rules included, keeps its relative order.
    """
    routed: List[Dict[str, Any]] = []
    catch_all: Optional[Dict[str, Any]] = None
    for rule in rules:
        if is_catch_all(rule):
            if catch_all is None:
                catch_all = dict(rule)
            continue
        routed.append(dict(rule))
    routed.append(catch_all or default_catch_all())
    return routed


def merge_origin_request(overrides: OriginRequest) -> OriginRequest:
    """Layer declared options over DEFAULT_ORIGIN_REQUEST, field by field."""
    merged = {
        f.name: getattr(overrides, f.name)
        for f in fields(OriginRequest)
        if getattr(overrides, f.name) is not None
    }
    return replace(DEFAULT_ORIGIN_REQUEST, **merged)


def build_ingress_rule(declaration: RoutingDeclaration) -> Dict[str, Any]:
    return {
        "hostname": declaration.hostname,
        "service": declaration.service,
        "originRequest": merge_origin_request(declaration.origin_request).to_api(),
    }


def apply_upsert(
    rules: Iterable[Mapping[str, Any]], new_rule: Mapping[str, Any]
) -> List[Dict[str, Any]]:
    """Replace the rule for new_rule's hostname in place, or add it before the catch-all."""
    hostname = new_rule["hostname"]
    result: List[Dict[str, Any]] = []
    replaced = False
    for rule in ensure_catch_all(rules):
        if not is_catch_all(rule) and rule.get("hostname") == hostname:
            if not replaced:
                result.append(dict(new_rule))
                replaced = True
            continue
        result.append(rule)

    if not replaced:
        result.insert(len(result) - 1, dict(new_rule))
    return result


def apply_retraction(rules: Iterable[Mapping[str, Any]], hostname: str) -> List[Dict[str, Any]]:
    """Drop every rule for hostname, keeping the catch-all last."""
    return ensure_catch_all(
        rule for rule in rules if is_catch_all(rule) or rule.get("hostname") != hostname
    )


# =============================================================================
# Container Runtime Interface and Implementations
# =============================================================================


class ContainerRuntime(ABC):
    """Abstract base class for container runtimes."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the runtime name for logging."""
        pass

    @abstractmethod
    def list_all(self) -> List[ContainerInfo]:
        """Snapshot every container on the host, running or not."""
        pass


def container_from_api(data: Mapping[str, Any]) -> ContainerInfo:
    """Convert a Docker Engine API container summary into a ContainerInfo."""
    names = data.get("Names") or []
    name = names[0].lstrip("/") if names else str(data.get("Id", ""))[:12]

    ports: List[PortMapping] = []
    for p in data.get("Ports") or []:
        if not isinstance(p, dict) or p.get("PrivatePort") is None:
            continue
        ports.append(
            PortMapping(
                private_port=int(p["PrivatePort"]),
                public_port=int(p["PublicPort"]) if p.get("PublicPort") else None,
                protocol=str(p.get("Type") or "tcp"),
                ip=p.get("IP"),
            )
        )

    created = data.get("Created")
    created_iso = (
        datetime.fromtimestamp(created, tz=timezone.utc).isoformat()
        if isinstance(created, (int, float))
        else ""
    )

    return ContainerInfo(
        name=name,
        state=str(data.get("State") or ""),
        labels=dict(data.get("Labels") or {}),
        ports=tuple(ports),
        status=str(data.get("Status") or ""),
        image=str(data.get("Image") or ""),
        created=created_iso,
    )


class DockerRuntime(ContainerRuntime):
    """Docker Engine runtime implementation."""

    def __init__(self, client: Optional[docker.DockerClient] = None):
        self._client = client

    @property
    def name(self) -> str:
        return "Docker"

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker.errors.DockerException as e:
                raise ContainerRuntimeError(f"Failed to connect to Docker: {e}") from e
        return self._client

    def list_all(self) -> List[ContainerInfo]:
        try:
            summaries = self.client.api.containers(all=True)
        except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
            raise ContainerRuntimeError(f"Failed to list containers: {e}") from e

        containers = []
        for summary in summaries:
            if not isinstance(summary, dict):
                logger.debug(f"Skipping malformed container entry: {summary}")
                continue
            containers.append(container_from_api(summary))
        return containers


# =============================================================================
# Tunnel Provider Interface and Implementations
# =============================================================================


class TunnelProvider(ABC):
    """Abstract base class for tunnel/DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def initialize(self) -> str:
        """Verify credentials and resources. Returns the zone's domain."""
        pass

    @abstractmethod
    def get_ingress_config(self, tunnel_id: str) -> List[Dict[str, Any]]:
        """Get the tunnel's ingress rules."""
        pass

    @abstractmethod
    def put_ingress_config(self, tunnel_id: str, rules: List[Dict[str, Any]]) -> None:
        """Replace the tunnel's ingress rules."""
        pass

    @abstractmethod
    def list_dns_records(self, hostname: str) -> List[DNSRecord]:
        """Get the CNAME records named exactly hostname."""
        pass

    @abstractmethod
    def create_dns_record(self, hostname: str, target: str) -> DNSRecord:
        pass

    @abstractmethod
    def update_dns_record(self, record_id: str, target: str) -> None:
        pass

    @abstractmethod
    def delete_dns_record(self, record_id: str) -> None:
        pass


class CloudflareTunnelProvider(TunnelProvider):
    """Cloudflare API v4 implementation."""

    def __init__(
        self,
        *,
        api_token: str,
        account_id: str,
        zone_id: str,
        tunnel_id: str,
        api_email: str = "",
        api_url: str = CLOUDFLARE_API_URL,
        timeout: float = 10.0,
    ):
        self._api_url = api_url.rstrip("/")
        self._account_id = account_id
        self._zone_id = zone_id
        self._tunnel_id = tunnel_id
        self._timeout = timeout
        # Last fetched tunnel config per tunnel; PUT replaces only its ingress
        self._configs: Dict[str, Dict[str, Any]] = {}
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {api_token}", "Content-Type": "application/json"}
        )
        if api_email:
            self._session.headers["X-Auth-Email"] = api_email

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._api_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise RemoteApiError(f"{method} {path} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            raise RemoteApiError(
                f"{method} {path} returned {response.status_code} with a non-JSON body",
                status_code=response.status_code,
            )
        if not response.ok or not payload.get("success", False):
            errors = payload.get("errors") or []
            messages = ", ".join(
                str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors
            )
            raise RemoteApiError(
                f"{method} {path} returned {response.status_code}: {messages or 'unknown error'}",
                status_code=response.status_code,
            )
        return payload.get("result")

    def initialize(self) -> str:
        account = self._request("GET", f"/accounts/{self._account_id}") or {}
        zone = self._request("GET", f"/zones/{self._zone_id}") or {}
        domain = zone.get("name")
        if not domain:
            raise RemoteApiError(f"Zone {self._zone_id} has no name")
        tunnel = (
            self._request("GET", f"/accounts/{self._account_id}/cfd_tunnel/{self._tunnel_id}")
            or {}
        )
        logger.info(
            f"{self.name} initialized: account '{account.get('name', self._account_id)}', "
            f"zone '{domain}', tunnel '{tunnel.get('name', self._tunnel_id)}'"
        )
        return domain

    def _configurations_path(self, tunnel_id: str) -> str:
        return f"/accounts/{self._account_id}/cfd_tunnel/{tunnel_id}/configurations"

    def get_ingress_config(self, tunnel_id: str) -> List[Dict[str, Any]]:
        result = self._request("GET", self._configurations_path(tunnel_id)) or {}
        config = result.get("config") or {}
        self._configs[tunnel_id] = dict(config)
        ingress = config.get("ingress") or []
        return [rule for rule in ingress if isinstance(rule, dict)]

    def put_ingress_config(self, tunnel_id: str, rules: List[Dict[str, Any]]) -> None:
        """Replace the ingress list, keeping the rest of the last fetched config."""
        config = {**self._configs.get(tunnel_id, {}), "ingress": rules}
        logger.debug(f"Sending {len(rules)} ingress rule(s) for tunnel {tunnel_id}")
        self._request("PUT", self._configurations_path(tunnel_id), json={"config": config})
        self._configs[tunnel_id] = config

    def list_dns_records(self, hostname: str) -> List[DNSRecord]:
        result = self._request(
            "GET",
            f"/zones/{self._zone_id}/dns_records",
            params={"type": "CNAME", "name": hostname},
        )
        records = []
        for r in result or []:
            if not isinstance(r, dict) or not r.get("id"):
                logger.warning(f"Skipping malformed record: {r}")
                continue
            records.append(
                DNSRecord(
                    id=str(r["id"]),
                    name=str(r.get("name", "")),
                    content=str(r.get("content", "")),
                    type=str(r.get("type", "CNAME")),
                    proxied=bool(r.get("proxied", False)),
                )
            )
        return records

    def create_dns_record(self, hostname: str, target: str) -> DNSRecord:
        data = {"type": "CNAME", "name": hostname, "content": target, "proxied": True}
        result = self._request("POST", f"/zones/{self._zone_id}/dns_records", json=data) or {}
        logger.info(f"Created DNS record: {hostname} -> {target}")
        return DNSRecord(id=str(result.get("id", "")), name=hostname, content=target)

    def update_dns_record(self, record_id: str, target: str) -> None:
        self._request(
            "PATCH",
            f"/zones/{self._zone_id}/dns_records/{record_id}",
            json={"content": target, "proxied": True},
        )
        logger.info(f"Updated DNS record {record_id} -> {target}")

    def delete_dns_record(self, record_id: str) -> None:
        self._request("DELETE", f"/zones/{self._zone_id}/dns_records/{record_id}")
        logger.info(f"Deleted DNS record {record_id}")


# =============================================================================
# State Management
# =============================================================================


class StateStore:
    """JSON file holding the last container snapshot and per-hostname sync records."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> TunnelDockState:
        if not self.path.exists():
            return TunnelDockState.empty()
        try:
            return TunnelDockState.model_validate(json.loads(self.path.read_text("utf-8")))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Failed to load state file {self.path}: {e}")
            return TunnelDockState.empty()

    def save(self, state: TunnelDockState) -> None:
        try:
            validated = TunnelDockState.model_validate(state.model_dump(by_alias=True))
        except ValidationError as e:
            logger.error(f"Refusing to save invalid state: {e}")
            raise StateValidationError(str(e)) from e

        data = validated.model_dump(mode="json", by_alias=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), "utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            logger.error(f"Failed to save state file {self.path}: {e}")
            raise PersistenceError(f"Failed to save state file {self.path}: {e}") from e
        logger.debug(f"Saved state file {self.path}")

    def save_snapshot(self, containers: Iterable[ContainerInfo]) -> None:
        """Replace the stored container snapshot, keeping tunnel and domain records."""
        state = self.load()
        state.containers = [ContainerSnapshot.from_container(c) for c in containers]
        state.timestamp = _utcnow()
        self.save(state)

    def update_tunnel(
        self,
        hostname: str,
        *,
        tunnel_id: str,
        service: str,
        origin_request: Optional[Dict[str, Any]] = None,
        dns_status: Optional[str] = None,
    ) -> TunnelRecord:
        state = self.load()
        record = TunnelRecord(
            hostname=hostname,
            tunnel_id=tunnel_id,
            service=service,
            origin_request=origin_request or None,
            config_status="updated",
            dns_status=dns_status,
            last_sync=_utcnow(),
        )
        state.tunnels[hostname] = record
        logger.debug(f"Updated tunnel data for {hostname}: {record.model_dump(by_alias=True)}")
        self.save(state)
        return record

    def update_domain(self, hostname: str, *, target: str, status: str) -> DomainRecord:
        state = self.load()
        record = DomainRecord(hostname=hostname, target=target, status=status, last_sync=_utcnow())
        state.domains[hostname] = record
        logger.debug(f"Updated domain data for {hostname}: {record.model_dump(by_alias=True)}")
        self.save(state)
        return record

    def remove_hostnames(self, hostnames: Iterable[str]) -> None:
        state = self.load()
        for hostname in hostnames:
            state.tunnels.pop(hostname, None)
            state.domains.pop(hostname, None)
        state.timestamp = _utcnow()
        self.save(state)


# =============================================================================
# Reconciler
# =============================================================================


class TunnelReconciler:
    """Applies a route to, or removes it from, the tunnel's ingress and the zone's DNS."""

    def __init__(self, *, provider: TunnelProvider, state_store: StateStore, tunnel_id: str):
        self.provider = provider
        self.state_store = state_store
        self.tunnel_id = tunnel_id

    @property
    def target(self) -> str:
        return dns_target(self.tunnel_id)

    def upsert(self, declaration: RoutingDeclaration) -> UpsertResult:
        hostname = declaration.hostname
        options = declaration.origin_request.to_api()

        rules = self.provider.get_ingress_config(self.tunnel_id)
        self.provider.put_ingress_config(
            self.tunnel_id, apply_upsert(rules, build_ingress_rule(declaration))
        )
        logger.info(f"Updated ingress rule {hostname} -> {declaration.service}")
        self.state_store.update_tunnel(
            hostname,
            tunnel_id=self.tunnel_id,
            service=declaration.service,
            origin_request=options,
        )

        dns_status = self._ensure_dns_record(hostname)
        self.state_store.update_tunnel(
            hostname,
            tunnel_id=self.tunnel_id,
            service=declaration.service,
            origin_request=options,
            dns_status=dns_status,
        )
        self.state_store.update_domain(hostname, target=self.target, status=dns_status)
        return UpsertResult(config_status="updated", dns_status=dns_status)

    def _ensure_dns_record(self, hostname: str) -> str:
        records = self.provider.list_dns_records(hostname)

        if not records:
            logger.info(f"Adding record {hostname} -> {self.target}")
            self.provider.create_dns_record(hostname, self.target)
            return "created"

        existing, duplicates = records[0], records[1:]
        if duplicates:
            logger.warning(
                f"Found {len(records)} CNAME records for {hostname}, consolidating"
            )
            for record in duplicates:
                self.provider.delete_dns_record(record.id)

        if existing.content != self.target:
            logger.info(f"Updating record {hostname}: {existing.content} -> {self.target}")
            self.provider.update_dns_record(existing.id, self.target)
            return "updated"

        logger.debug(f"Record {hostname} already points to {self.target}")
        return "unchanged"

    def retract(self, hostname: str) -> None:
        """Delete hostname's CNAME records and ingress rule. Local state is left to the caller."""
        records = self.provider.list_dns_records(hostname)
        if not records:
            logger.debug(f"No DNS record found for {hostname}")
        for record in records:
            self.provider.delete_dns_record(record.id)

        rules = self.provider.get_ingress_config(self.tunnel_id)
        self.provider.put_ingress_config(self.tunnel_id, apply_retraction(rules, hostname))
        logger.info(f"Removed ingress rule and DNS record for {hostname}")


# =============================================================================
# Core Syncer
# =============================================================================


class TunnelDockSyncer:
    def __init__(
        self,
        *,
        runtime: ContainerRuntime,
        provider: TunnelProvider,
        state_store: StateStore,
        tunnel_id: str,
        domain: str,
        label_prefix: str = DEFAULT_LABEL_PREFIX,
        retract_stopped: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runtime = runtime
        self.provider = provider
        self.state_store = state_store
        self.tunnel_id = tunnel_id
        self.domain = domain
        self.label_prefix = label_prefix
        self.retract_stopped = retract_stopped
        self.reconciler = TunnelReconciler(
            provider=provider, state_store=state_store, tunnel_id=tunnel_id
        )
        self._sleep = sleep

    def desired_hostnames(self, containers: Iterable[ContainerInfo]) -> Set[str]:
        desired: Set[str] = set()
        for container in containers:
            if self.retract_stopped and not container.is_running:
                continue
            declaration = resolve_declaration(
                container, domain=self.domain, prefix=self.label_prefix
            )
            if declaration is not None:
                desired.add(declaration.hostname)
        return desired

    def sweep(self, containers: Iterable[ContainerInfo]) -> List[str]:
        """Retract every persisted hostname that no container declares anymore."""
        state = self.state_store.load()
        desired = self.desired_hostnames(containers)
        stale = sorted((set(state.tunnels) | set(state.domains)) - desired)

        retracted: List[str] = []
        for hostname in stale:
            logger.info(f"Cleaning up stale route {hostname}")
            try:
                self.reconciler.retract(hostname)
            except RemoteApiError as e:
                logger.error(f"Failed to clean up {hostname}: {e}")
                continue
            retracted.append(hostname)

        if retracted:
            self.state_store.remove_hostnames(retracted)
            logger.info(f"Cleaned up stale records: {', '.join(retracted)}")
        return retracted

    def sync_once(self, previous_states: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Run one tick.

        Returns the container states observed this tick, to be passed back as
        previous_states on the next one. Containers whose upsert failed are
        left out so the next tick tries them again.
        """
        previous_states = previous_states or {}
        containers = self.runtime.list_all()

        try:
            self.state_store.save_snapshot(containers)
        except PersistenceError as e:
            logger.error(f"Failed to save container snapshot: {e}")

        observed: Dict[str, str] = {}
        for container in containers:
            observed[container.name] = container.state
            decision = derive(
                container,
                previous_states.get(container.name),
                domain=self.domain,
                prefix=self.label_prefix,
            )
            if not decision.manage or decision.declaration is None:
                continue

            declaration = decision.declaration
            logger.info(
                f"Container '{container.name}' is {container.state}, syncing {declaration.hostname}"
            )
            try:
                result = self.reconciler.upsert(declaration)
            except (RemoteApiError, PersistenceError) as e:
                logger.error(f"Error configuring tunnel for {declaration.hostname}: {e}")
                observed.pop(container.name, None)
                continue
            logger.info(
                f"Configuration completed for {declaration.hostname} (dns: {result.dns_status})"
            )

        try:
            self.sweep(containers)
        except PersistenceError as e:
            logger.error(f"Failed to save state after cleanup: {e}")

        return observed

    def watch(self, interval_seconds: float, *, max_ticks: Optional[int] = None) -> None:
        """Poll until interrupted, or for max_ticks ticks."""
        logger.info(f"Starting container and tunnel monitoring (interval: {interval_seconds}s)")
        previous: Dict[str, str] = {}
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            try:
                previous = self.sync_once(previous)
            except ContainerRuntimeError as e:
                logger.error(f"{self.runtime.name} unavailable, skipping tick: {e}")
            ticks += 1
            self._sleep(interval_seconds)


# =============================================================================
# Main
# =============================================================================


def create_provider(settings: Settings) -> TunnelProvider:
    return CloudflareTunnelProvider(
        api_token=settings.api_token,
        api_email=settings.api_email,
        account_id=settings.account_id,
        zone_id=settings.zone_id,
        tunnel_id=settings.tunnel_id,
        api_url=settings.api_url,
        timeout=settings.request_timeout,
    )


def main():
    """Main entry point."""
    logger.info("tunneldock: docker -> cloudflare tunnel")

    try:
        settings = load_settings()
        validate_settings(settings)
    except StartupConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    provider = create_provider(settings)
    try:
        domain = provider.initialize()
    except RemoteApiError as e:
        logger.error(f"Cannot initialize {provider.name}: {e}. Exiting.")
        sys.exit(1)

    runtime = DockerRuntime()
    logger.info(f"Tunnel: {settings.tunnel_id}")
    logger.info(f"Domain: {domain}")
    logger.info(f"Label prefix: {settings.label_prefix}")
    logger.info(f"Sync mode: {settings.sync_mode}")
    if settings.retract_stopped:
        logger.info("Routes of stopped containers will be removed")

    syncer = TunnelDockSyncer(
        runtime=runtime,
        provider=provider,
        state_store=StateStore(settings.state_path),
        tunnel_id=settings.tunnel_id,
        domain=domain,
        label_prefix=settings.label_prefix,
        retract_stopped=settings.retract_stopped,
    )

    try:
        if settings.sync_mode == "once":
            syncer.sync_once()
            return
        syncer.watch(settings.watch_interval_seconds)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error in monitoring loop: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

"""Proxy-specific data models."""

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..shared.utils import format_host_port, split_host_port


class RouteState(str, Enum):
    """Lifecycle of a single Route's listener."""
    UNCONFIGURED = "unconfigured"
    RESOLVING_PORT = "resolving_port"
    LISTENING = "listening"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class StartOptions(BaseModel):
    """Dev server command to launch before proxying."""
    model_config = ConfigDict(frozen=True)

    command: str
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator('command')
    @classmethod
    def validate_command(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('start command cannot be empty')
        return v


class CleanupSettings(BaseModel):
    """Which host-system changes to undo on shutdown."""
    model_config = ConfigDict(frozen=True)

    hosts: bool = False
    certs: bool = False


class TlsPaths(BaseModel):
    """Explicit certificate files; generated material is used when unset."""
    model_config = ConfigDict(frozen=True)

    key_path: Optional[str] = None
    cert_path: Optional[str] = None
    ca_path: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.key_path and self.cert_path)


# Options a RouteSet shares with its routes unless a route sets them itself
SHARED_ROUTE_OPTIONS = ('https', 'clean_urls', 'change_origin')


class Route(BaseModel):
    """One upstream dev server exposed under one hostname."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: str = Field(..., alias='from', description="Upstream host:port or URL")
    to: str = Field(..., description="Public hostname")
    https: bool = False
    clean_urls: bool = False
    change_origin: bool = False
    start: Optional[StartOptions] = None
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)
    tls: Optional[TlsPaths] = None
    verbose: bool = False
    embedded: bool = False

    @field_validator('from_')
    @classmethod
    def validate_from(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('from cannot be empty')
        scheme, _, _ = split_host_port(v)
        if scheme not in ('http', 'https'):
            raise ValueError('from must use http or https')
        return v

    @field_validator('to')
    @classmethod
    def validate_to(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('to cannot be empty')
        _, host, _ = split_host_port(v)
        if host.startswith('.') or host.endswith('.'):
            raise ValueError('to cannot start or end with a dot')
        return host

    @property
    def upstream(self) -> Tuple[str, str, int]:
        """(scheme, host, port) of the dev server."""
        return split_host_port(self.from_)

    @property
    def upstream_url(self) -> str:
        scheme, host, port = self.upstream
        return f"{scheme}://{format_host_port(host, port)}"

    @property
    def upstream_host_header(self) -> str:
        _, host, port = self.upstream
        return format_host_port(host, port)


class RouteSet(BaseModel):
    """Several routes started together with shared options."""
    model_config = ConfigDict(frozen=True)

    proxies: List[Route] = Field(..., min_length=1)
    https: bool = False
    clean_urls: bool = False
    change_origin: bool = False
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)
    tls: Optional[TlsPaths] = None
    verbose: bool = False
    embedded: bool = False

    def routes(self) -> List[Route]:
        """Routes with shared options filled in where a route left them unset."""
        resolved = []
        for route in self.proxies:
            update: Dict[str, Any] = {
                name: getattr(self, name)
                for name in SHARED_ROUTE_OPTIONS
                if name not in route.model_fields_set
            }
            update.update(cleanup=self.cleanup, verbose=self.verbose, embedded=self.embedded)
            if route.tls is None:
                update['tls'] = self.tls
            resolved.append(route.model_copy(update=update))
        return resolved

    @property
    def domains(self) -> List[str]:
        return [route.to for route in self.proxies]


ProxyConfig = Union[Route, RouteSet]


def parse_proxy_config(data: Union[ProxyConfig, Mapping[str, Any]]) -> ProxyConfig:
    """Decide once whether ``data`` describes one route or a set of routes.

    The presence of a ``proxies`` list selects a RouteSet.
    """
    if isinstance(data, (Route, RouteSet)):
        return data
    if 'proxies' in data:
        return RouteSet.model_validate(data)
    return Route.model_validate(data)


class CleanupOptions(BaseModel):
    """What a teardown should undo beyond closing listeners."""
    domains: List[str] = Field(default_factory=list)
    hosts: bool = False
    certs: bool = False
    verbose: bool = False
    embedded: bool = False

    @classmethod
    def for_config(cls, config: ProxyConfig, **overrides: Any) -> 'CleanupOptions':
        domains = config.domains if isinstance(config, RouteSet) else [config.to]
        values: Dict[str, Any] = dict(
            domains=domains,
            hosts=config.cleanup.hosts,
            certs=config.cleanup.certs,
            verbose=config.verbose,
            embedded=config.embedded,
        )
        values.update(overrides)
        return cls(**values)

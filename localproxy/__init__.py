"""localproxy - custom hostnames, HTTPS and clean URLs for local dev servers."""

from .errors import (
    CleanupPartialFailure,
    ConnectivityTimeout,
    DNSBindFailure,
    ForwardingFailure,
    LocalProxyError,
    PortExhaustion,
    ProxyStartupError,
    TLSMaterialMissing,
)
from .lifecycle import CleanupReport
from .proxy.models import CleanupOptions, Route, RouteSet, StartOptions, TlsPaths
from .runtime import ProxyRuntime, cleanup, get_runtime, start_proxies, start_proxy

__version__ = "0.1.0"

__all__ = [
    'CleanupOptions',
    'CleanupPartialFailure',
    'CleanupReport',
    'ConnectivityTimeout',
    'DNSBindFailure',
    'ForwardingFailure',
    'LocalProxyError',
    'PortExhaustion',
    'ProxyRuntime',
    'ProxyStartupError',
    'Route',
    'RouteSet',
    'StartOptions',
    'TLSMaterialMissing',
    'TlsPaths',
    'cleanup',
    'get_runtime',
    'start_proxies',
    'start_proxy',
]

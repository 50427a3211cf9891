"""Request forwarding for proxied routes."""

from .app import create_proxy_app, create_redirect_app
from .handler import ForwardingHandler
from .instance import RouteProxy
from .models import (
    CleanupOptions,
    Route,
    RouteSet,
    RouteState,
    StartOptions,
    parse_proxy_config,
)
from .server import ProxyListener

__all__ = [
    'CleanupOptions',
    'ForwardingHandler',
    'ProxyListener',
    'Route',
    'RouteProxy',
    'RouteSet',
    'RouteState',
    'StartOptions',
    'create_proxy_app',
    'create_redirect_app',
    'parse_proxy_config',
]

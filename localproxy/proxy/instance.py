"""A single Route's proxy: port resolution, listener and state."""

import logging
from typing import Optional

import httpx

from ..certmanager.models import SSLMaterial
from ..ports.manager import PortAllocator, is_port_in_use
from ..shared.config import Config, get_config
from ..shared.utils import format_host_port
from .app import create_proxy_app
from .handler import ForwardingHandler
from .models import Route, RouteState
from .server import ProxyListener

logger = logging.getLogger(__name__)


class RouteProxy:
    """Serves one Route on one port.

    ``state`` moves UNCONFIGURED -> RESOLVING_PORT -> LISTENING -> SERVING
    and ends in CLOSED via SHUTTING_DOWN.
    """

    def __init__(self, route: Route, allocator: PortAllocator, config: Optional[Config] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.route = route
        self.allocator = allocator
        self.config = config or get_config()
        self.client = client
        self.state = RouteState.UNCONFIGURED
        self.port: Optional[int] = None
        self.handler: Optional[ForwardingHandler] = None
        self.listener: Optional[ProxyListener] = None

    @property
    def name(self) -> str:
        return f"proxy:{self.route.to}"

    @property
    def public_url(self) -> str:
        scheme = "https" if self.route.https else "http"
        standard = 443 if self.route.https else 80
        if self.port in (None, standard):
            return f"{scheme}://{self.route.to}"
        return f"{scheme}://{format_host_port(self.route.to, self.port)}"

    async def resolve_port(self) -> int:
        """Pick the standard port if free, otherwise scan from the fallback start."""
        self.state = RouteState.RESOLVING_PORT
        target = self.config.HTTPS_PORT if self.route.https else self.config.HTTP_PORT

        if self.allocator.is_reserved(target) or await is_port_in_use(
                target, self.allocator.host, self.allocator.probe_timeout):
            if self.route.https:
                start = self.config.HTTPS_FALLBACK_PORT
            else:
                start = target + self.config.HTTP_FALLBACK_OFFSET
            logger.debug(f"Port {target} is already in use, scanning from {start}")
            self.port = await self.allocator.reserve(start, test_connectivity=True, purpose=self.name)
            logger.info(f"Using port {self.port} instead of {target} for {self.route.to}")
        else:
            self.allocator.claim(target, purpose=self.name)
            self.port = target
            logger.debug(f"Using standard port {target} for {self.route.to}")
        return self.port

    async def listen(self, ssl_material: Optional[SSLMaterial] = None):
        """Bind the resolved port and start forwarding."""
        if self.port is None:
            await self.resolve_port()

        self.handler = ForwardingHandler(self.route, client=self.client, config=self.config)
        self.listener = ProxyListener(
            create_proxy_app(self.handler),
            self.allocator.host,
            self.port,
            ssl_material=ssl_material if self.route.https else None,
            name=self.name
        )
        await self.listener.start()
        self.state = RouteState.LISTENING

    def mark_serving(self):
        self.state = RouteState.SERVING
        logger.info(f"Proxy started: {self.route.upstream_url} -> {self.public_url}")

    async def close(self):
        if self.state == RouteState.CLOSED:
            return
        self.state = RouteState.SHUTTING_DOWN
        try:
            if self.listener is not None:
                await self.listener.close()
            if self.handler is not None:
                await self.handler.close()
        finally:
            if self.port is not None:
                self.allocator.release(self.port)
            self.state = RouteState.CLOSED

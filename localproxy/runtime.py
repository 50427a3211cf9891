"""Composition root wiring ports, DNS, certificates, hosts and listeners together.

``ProxyRuntime`` owns one instance of every subsystem. The module-level
``start_proxy``, ``start_proxies`` and ``cleanup`` functions use a lazily
created default runtime; tests and embedding applications construct their
own.
"""

import logging
import sys
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from .certmanager.manager import CertificateManager
from .certmanager.models import SSLMaterial
from .dns.resolver import PlatformResolver
from .dns.server import DNSResponder
from .errors import ConnectivityTimeout, LocalProxyError, ProxyStartupError, TLSMaterialMissing
from .hosts.manager import HostsManager
from .lifecycle.coordinator import CleanupReport, LifecycleCoordinator
from .ports.manager import PortAllocator, is_port_in_use
from .processes.manager import ProcessSupervisor
from .proxy.app import create_redirect_app
from .proxy.instance import RouteProxy
from .proxy.models import CleanupOptions, ProxyConfig, Route, RouteSet, TlsPaths, parse_proxy_config
from .proxy.readiness import wait_for_upstream
from .proxy.server import ProxyListener
from .shared.config import Config, get_config
from .shared.python_logger_config import set_verbose
from .shared.utils import RESERVED_TLDS, custom_domains, problematic_tlds, tld_of

logger = logging.getLogger(__name__)


class ProxyRuntime:
    """Everything one proxy process needs, created once and shared by its routes."""

    def __init__(
        self,
        config: Optional[Config] = None,
        allocator: Optional[PortAllocator] = None,
        dns_responder: Optional[DNSResponder] = None,
        hosts=None,
        certs=None,
        processes=None,
        resolver=None,
        exit_func: Callable[[int], Any] = sys.exit,
        client_factory: Optional[Callable[[Route], Any]] = None
    ):
        self.config = config or get_config()
        self.allocator = allocator or PortAllocator(config=self.config)
        self.dns_responder = dns_responder or DNSResponder(config=self.config)
        self.hosts = hosts or HostsManager(config=self.config)
        self.certs = certs or CertificateManager(config=self.config)
        self.processes = processes or ProcessSupervisor(
            on_unexpected_exit=self._on_process_exit, config=self.config
        )
        self.resolver = resolver or PlatformResolver(config=self.config)
        self.coordinator = LifecycleCoordinator(
            allocator=self.allocator,
            dns_responder=self.dns_responder,
            hosts=self.hosts,
            certs=self.certs,
            processes=self.processes,
            resolver=self.resolver,
            exit_func=exit_func
        )
        self.client_factory = client_factory
        self.proxies: Dict[str, RouteProxy] = {}
        self.redirect_listener: Optional[ProxyListener] = None
        self._dns_domains: List[str] = []
        self._signals_installed = False

    def _on_process_exit(self, id: str, returncode: int):
        logger.error(f"Dev server {id} exited unexpectedly ({returncode}), shutting down")
        self.coordinator.trigger_cleanup()

    def _install_signal_handlers(self, embedded: bool):
        if embedded or self._signals_installed:
            return
        self.coordinator.install_signal_handlers()
        self._signals_installed = True

    def _warn_about_tlds(self, domains: Sequence[str]):
        for tld in problematic_tlds(domains):
            logger.warning(f"The .{tld} TLD may not work reliably for local development")
            logger.info(f"  .{tld} is HSTS preloaded, which can bypass local DNS")
            logger.info("  Consider using a reserved TLD: .test, .localhost, or .local")

    async def _start_process(self, route: Route):
        if route.start is None:
            return
        id = f"{route.from_}-{route.to}"
        logger.info(f"Starting command for {id}...")
        started = await self.processes.start(id, route.start.command, route.start.cwd, route.start.env)
        if not started:
            raise LocalProxyError(f"Failed to start command for {id}: {route.start.command}")

    async def _wait_for_upstream(self, route: Route):
        if self.config.BYPASS_CONNECTION_TEST:
            logger.debug("Skipping upstream connection test")
            return
        scheme, host, port = route.upstream
        try:
            await wait_for_upstream(scheme, host, port, config=self.config)
        except ConnectivityTimeout as e:
            logger.warning(f"{e}. Continuing with proxy setup anyway...")
            logger.info("Set BYPASS_CONNECTION_TEST=true to skip the connection test")

    async def _ensure_hosts(self, domains: Sequence[str]):
        domains = custom_domains(domains)
        if not domains:
            return
        present = await self.hosts.check_hosts(domains)
        missing = [d for d, ok in zip(domains, present) if not ok]
        if missing:
            logger.info(f"Adding {', '.join(missing)} to hosts file (may require sudo)")
            await self.hosts.add_hosts(missing)

    async def _ensure_dns(self, domains: Sequence[str], verbose: bool):
        if not self.config.DNS_ENABLED:
            return
        new = [d for d in custom_domains(domains) if d not in self._dns_domains]
        if not new:
            return
        self._dns_domains.extend(new)

        if not await self.dns_responder.start(self._dns_domains, verbose):
            logger.debug("Could not start DNS responder, custom domains rely on the hosts file")
            return

        tlds = sorted({tld_of(d) for d in self._dns_domains})
        port = self.dns_responder.bound_port or self.dns_responder.port
        await self.resolver.setup(tlds, port, host=self.dns_responder.host)
        if all(t in RESERVED_TLDS for t in tlds):
            logger.info(f"DNS responder serving {', '.join('.' + t for t in tlds)} domains")
        else:
            logger.info(f"DNS responder serving {', '.join('.' + t for t in tlds)} domains (hosts file entries also added)")

    async def _ssl_material(self, domains: Sequence[str], tls: Optional[TlsPaths]) -> SSLMaterial:
        try:
            return await self.certs.get_ssl_material(list(domains), tls)
        except TLSMaterialMissing:
            raise
        except (OSError, ValueError) as e:
            raise TLSMaterialMissing(f"Failed to load SSL material for {domains[0]}: {e}") from e

    async def _start_redirect(self, https_port: int):
        http_port = self.config.HTTP_PORT
        if self.redirect_listener is not None or self.allocator.is_reserved(http_port):
            return
        if await is_port_in_use(http_port, self.allocator.host, self.allocator.probe_timeout):
            logger.debug(f"Port {http_port} is in use, HTTP to HTTPS redirect will not be available")
            return

        self.allocator.claim(http_port, purpose="redirect")
        listener = ProxyListener(
            create_redirect_app(https_port), self.allocator.host, http_port, name="http-redirect"
        )
        try:
            await listener.start()
        except (OSError, RuntimeError, TimeoutError) as e:
            logger.warning(f"Could not start HTTP redirect listener on port {http_port}: {e}")
            self.allocator.release(http_port)
            return
        self.redirect_listener = listener
        self.coordinator.register(listener, http_port)

    async def _start_route(self, route: Route, ssl_material: Optional[SSLMaterial] = None) -> RouteProxy:
        set_verbose(route.verbose)
        logger.debug(f"Starting proxy {route.from_} -> {route.to}")

        await self._start_process(route)
        await self._wait_for_upstream(route)
        await self._ensure_hosts([route.to])
        await self._ensure_dns([route.to], route.verbose)

        if route.https and ssl_material is None:
            ssl_material = await self._ssl_material([route.to], route.tls)

        client = self.client_factory(route) if self.client_factory else None
        proxy = RouteProxy(route, self.allocator, config=self.config, client=client)
        try:
            await proxy.resolve_port()
            if route.https:
                await self._start_redirect(proxy.port)
            await proxy.listen(ssl_material)
        except BaseException:
            await proxy.close()
            raise

        self.coordinator.register(proxy, proxy.port)
        self.proxies[route.to] = proxy
        proxy.mark_serving()
        return proxy

    def _track(self, config: ProxyConfig, domains: List[str]):
        self.coordinator.add_domains(
            domains,
            hosts=config.cleanup.hosts,
            certs=config.cleanup.certs,
            verbose=config.verbose,
            embedded=config.embedded
        )

    async def start_proxy(self, route: Union[Route, Mapping[str, Any]]) -> RouteProxy:
        """Start one Route.

        Raises:
            ProxyStartupError: After tearing down what was set up for the route
        """
        route = parse_proxy_config(route)
        if isinstance(route, RouteSet):
            raise TypeError("start_proxy takes a single route; use start_proxies for a RouteSet")

        self._install_signal_handlers(route.embedded)
        self._track(route, [route.to])
        self._warn_about_tlds(custom_domains([route.to]))

        try:
            return await self._start_route(route)
        except (LocalProxyError, OSError, RuntimeError, TimeoutError) as e:
            logger.error(f"Failed to start proxy for {route.to}: {e}")
            # The caller gets the error and decides how the process ends
            await self.coordinator.trigger_cleanup(CleanupOptions.for_config(route, embedded=True))
            raise ProxyStartupError(route.to, e) from e

    async def start_proxies(self, config: Union[ProxyConfig, Mapping[str, Any]]) -> List[RouteProxy]:
        """Start every route in ``config``.

        A failing route is logged and skipped; a full teardown only happens
        when no route could be started.
        """
        config = parse_proxy_config(config)
        routes = config.routes() if isinstance(config, RouteSet) else [config]
        domains = [r.to for r in routes]

        self._install_signal_handlers(config.embedded)
        self._track(config, domains)
        self._warn_about_tlds(custom_domains(domains))

        ssl_material = None
        https_domains = [r.to for r in routes if r.https]
        if https_domains:
            try:
                ssl_material = await self._ssl_material(https_domains, config.tls)
            except TLSMaterialMissing as e:
                logger.error(f"{e}; HTTPS routes will fail to start")

        started: List[RouteProxy] = []
        failures: List[ProxyStartupError] = []
        for route in routes:
            if route.https and ssl_material is None:
                failures.append(ProxyStartupError(route.to, TLSMaterialMissing("No SSL material available")))
                continue
            try:
                started.append(await self._start_route(route, ssl_material))
            except (LocalProxyError, OSError, RuntimeError, TimeoutError) as e:
                logger.error(f"Failed to start proxy for {route.to}: {e}")
                failures.append(ProxyStartupError(route.to, e))
                if route.start is not None:
                    await self.processes.stop(f"{route.from_}-{route.to}")

        if not started:
            await self.coordinator.trigger_cleanup(CleanupOptions.for_config(config, embedded=True))
            raise failures[0]

        if failures:
            logger.warning(f"{len(started)} of {len(routes)} proxies started")
        return started

    async def cleanup(self, options: Union[CleanupOptions, Mapping[str, Any], None] = None) -> CleanupReport:
        """Tear down everything this runtime started."""
        if options is not None and not isinstance(options, CleanupOptions):
            options = CleanupOptions.model_validate(options)
        report = await self.coordinator.trigger_cleanup(options)
        self.proxies.clear()
        self.redirect_listener = None
        self._dns_domains.clear()
        return report


@lru_cache()
def get_runtime() -> ProxyRuntime:
    """Get the process-wide default runtime."""
    return ProxyRuntime()


async def start_proxy(route: Union[Route, Mapping[str, Any]]) -> RouteProxy:
    return await get_runtime().start_proxy(route)


async def start_proxies(config: Union[ProxyConfig, Mapping[str, Any]]) -> List[RouteProxy]:
    return await get_runtime().start_proxies(config)


async def cleanup(options: Union[CleanupOptions, Mapping[str, Any], None] = None) -> CleanupReport:
    return await get_runtime().cleanup(options)

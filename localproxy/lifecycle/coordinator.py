"""Single-flight teardown of every subsystem a proxy run touched.

Teardown can be requested from three places: OS signals, uncaught faults
in event loop tasks, and explicit API calls. Whichever comes first starts
it; later callers share the same ``asyncio.Task`` until it finishes.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..errors import CleanupPartialFailure, LocalProxyError
from ..proxy.models import CleanupOptions
from ..shared.python_logger_config import set_verbose
from ..shared.utils import custom_domains

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass
class CleanupReport:
    """Outcome of one teardown."""
    steps: List[str] = field(default_factory=list)
    failures: List[Tuple[str, BaseException]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise CleanupPartialFailure(self.failures)


class LifecycleCoordinator:
    """Owns the active listeners and tears everything down exactly once at a time.

    Collaborators are optional and duck-typed: any of them may be None when
    a caller only uses part of the system.
    """

    def __init__(
        self,
        allocator=None,
        dns_responder=None,
        hosts=None,
        certs=None,
        processes=None,
        resolver=None,
        exit_func: Callable[[int], Any] = sys.exit
    ):
        self.allocator = allocator
        self.dns_responder = dns_responder
        self.hosts = hosts
        self.certs = certs
        self.processes = processes
        self.resolver = resolver
        self._exit = exit_func

        # listener -> port it owns (None when the allocator does not track it)
        self._listeners: Dict[Any, Optional[int]] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed_signals: List[int] = []
        self._previous_exception_handler = None

        # Used for teardown triggered by signals and faults
        self.default_options = CleanupOptions()

    @property
    def active_listeners(self) -> List[Any]:
        return list(self._listeners)

    @property
    def cleanup_in_progress(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def register(self, listener, port: Optional[int] = None) -> None:
        self._listeners[listener] = port

    def unregister(self, listener) -> None:
        self._listeners.pop(listener, None)

    def add_domains(self, domains: List[str], hosts: bool = False, certs: bool = False,
                    verbose: bool = False, embedded: Optional[bool] = None) -> None:
        """Fold a started route's cleanup needs into the default options."""
        current = self.default_options
        merged = list(current.domains)
        merged.extend(d for d in domains if d not in merged)
        self.default_options = CleanupOptions(
            domains=merged,
            hosts=current.hosts or hosts,
            certs=current.certs or certs,
            verbose=current.verbose or verbose,
            embedded=current.embedded if embedded is None else embedded,
        )

    def trigger_cleanup(self, options: Optional[CleanupOptions] = None) -> 'asyncio.Task[CleanupReport]':
        """Start a teardown, or join the one already in flight."""
        if self.cleanup_in_progress:
            logger.debug("Cleanup already in progress, joining it")
            return self._cleanup_task

        options = options or self.default_options
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run_cleanup(options))
        if not options.embedded:
            task.add_done_callback(lambda _: loop.call_soon(self._exit, 0))
        self._cleanup_task = task
        return task

    async def cleanup(self, options: Optional[CleanupOptions] = None) -> CleanupReport:
        return await self.trigger_cleanup(options)

    async def _run_step(self, report: CleanupReport, name: str, awaitable: Awaitable) -> None:
        report.steps.append(name)
        try:
            result = await awaitable
        except Exception as e:
            logger.error(f"Cleanup step {name} failed: {e}")
            report.failures.append((name, e))
            return
        if result is False:
            logger.warning(f"Cleanup step {name} reported failure")
            report.failures.append((name, LocalProxyError(f"{name} reported failure")))

    async def _close_listener(self, listener, port: Optional[int]):
        try:
            await listener.close()
        finally:
            self.unregister(listener)
            if port is not None and self.allocator is not None:
                self.allocator.release(port)

    async def _run_cleanup(self, options: CleanupOptions) -> CleanupReport:
        set_verbose(options.verbose)
        report = CleanupReport()
        logger.info("Shutting down proxy servers...")

        if self.processes is not None:
            await self._run_step(report, 'processes', self.processes.stop_all())

        steps = []
        for listener, port in list(self._listeners.items()):
            name = getattr(listener, 'name', None) or f"listener:{port}"
            steps.append((name, self._close_listener(listener, port)))

        if options.hosts and self.hosts is not None:
            domains = custom_domains(options.domains)
            if domains:
                logger.info("Cleaning up hosts file entries...")
                steps.append(('hosts', self.hosts.remove_hosts(domains)))

        if options.certs and self.certs is not None:
            logger.info("Cleaning up SSL certificates...")
            for domain in options.domains:
                steps.append((f"certs:{domain}", self.certs.cleanup_certificates(domain)))

        if self.dns_responder is not None:
            steps.append(('dns', self.dns_responder.stop()))
        if self.resolver is not None:
            steps.append(('resolver', self.resolver.remove()))

        await asyncio.gather(*(self._run_step(report, name, coro) for name, coro in steps))

        if report.failures:
            logger.warning(f"Cleanup completed with {len(report.failures)} failure(s)")
        else:
            logger.info("All cleanup tasks completed successfully")
        return report

    def _handle_signal(self, sig: int):
        name = signal.Signals(sig).name
        if self.cleanup_in_progress:
            logger.warning(f"Received second {name} signal, forcing exit")
            self._exit(1)
            return
        logger.info(f"Received {name} signal, initiating cleanup")
        self.trigger_cleanup()

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]):
        loop.default_exception_handler(context)
        exc = context.get('exception')
        # Socket-level errors of single connections are not process faults
        if exc is None or isinstance(exc, OSError):
            return
        if not self.cleanup_in_progress:
            logger.error(f"Uncaught exception: {exc!r}, initiating cleanup")
            self.trigger_cleanup()

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM and uncaught task faults into a teardown."""
        loop = asyncio.get_running_loop()
        self._loop = loop
        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
                self._installed_signals.append(sig)
            except (NotImplementedError, RuntimeError) as e:
                # Windows event loops have no signal handler support
                logger.debug(f"Cannot install handler for {sig}: {e}")
        self._previous_exception_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)

    def remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in self._installed_signals:
            self._loop.remove_signal_handler(sig)
        self._installed_signals.clear()
        self._loop.set_exception_handler(self._previous_exception_handler)
        self._previous_exception_handler = None
        self._loop = None

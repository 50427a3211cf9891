"""Port allocation with conflict detection and connectivity verification."""

import asyncio
import logging
from typing import Dict, FrozenSet, List, Optional

from ..errors import PortExhaustion
from ..shared.config import Config, get_config
from ..shared.utils import connect_host
from .models import PortAllocation

logger = logging.getLogger(__name__)

MAX_PORT = 65535


async def _close_immediately(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    writer.close()


async def is_port_in_use(port: int, host: str = "0.0.0.0", timeout: float = 3.0) -> bool:
    """Check whether a port is busy by binding a throwaway listener.

    Any bind error is treated as "in use", not only EADDRINUSE, and so is
    a probe that does not finish within ``timeout``.

    Args:
        port: Port number to probe
        host: Address to bind
        timeout: Seconds before the probe is abandoned

    Returns:
        True if the port cannot be used right now
    """
    try:
        server = await asyncio.wait_for(
            asyncio.start_server(_close_immediately, host, port),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.debug(f"Checking port {port} timed out, assuming it's in use")
        return True
    except OSError as e:
        logger.debug(f"Port {port} is in use on {host}: {e}")
        return True

    server.close()
    await server.wait_closed()
    logger.trace(f"Port {port} is available on {host}")
    return False


async def check_port_connectivity(port: int, host: str = "0.0.0.0", timeout: float = 3.0) -> bool:
    """Prove a port is usable end to end.

    Binds a temporary listener on ``port`` and requires a real outbound
    connection to it to be accepted within ``timeout``.

    Returns:
        True if a client connection was accepted
    """
    accepted = asyncio.Event()

    async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        accepted.set()
        writer.close()

    try:
        server = await asyncio.wait_for(asyncio.start_server(on_connect, host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug(f"Could not bind {host}:{port} for connectivity test: {e!r}")
        return False

    target = connect_host(host)
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(target, port), timeout=timeout)
        writer.close()
        await asyncio.wait_for(accepted.wait(), timeout=timeout)
        logger.debug(f"Successfully connected to {target}:{port}")
        return True
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug(f"Failed to connect to {target}:{port}: {e!r}")
        return False
    finally:
        server.close()
        await server.wait_closed()


class PortAllocator:
    """Tracks the ports this process owns and finds free ones on demand.

    Reservations are linearized by an ``asyncio.Lock`` so two concurrent
    ``reserve`` calls never hand out the same port.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        max_attempts: Optional[int] = None,
        probe_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        config: Optional[Config] = None
    ):
        config = config or get_config()
        self.host = host if host is not None else config.SERVER_HOST
        self.max_attempts = max_attempts or config.PORT_MAX_ATTEMPTS
        self.probe_timeout = probe_timeout or config.PORT_PROBE_TIMEOUT
        self.connect_timeout = connect_timeout or config.PORT_CONNECT_TIMEOUT
        self._allocations: Dict[int, PortAllocation] = {}
        self._allocation_lock = asyncio.Lock()

    @property
    def reserved_ports(self) -> FrozenSet[int]:
        return frozenset(self._allocations)

    def is_reserved(self, port: int) -> bool:
        return port in self._allocations

    def allocations(self) -> List[PortAllocation]:
        return sorted(self._allocations.values(), key=lambda a: a.port)

    async def is_available(self, port: int) -> bool:
        """True if the port is neither reserved here nor bound elsewhere."""
        if port in self._allocations:
            return False
        return not await is_port_in_use(port, self.host, self.probe_timeout)

    async def reserve(self, start_port: int, test_connectivity: bool = False,
                      purpose: Optional[str] = None) -> int:
        """Reserve the first usable port at or after ``start_port``.

        Args:
            start_port: First port to probe
            test_connectivity: Also require a real connection to succeed
            purpose: Free-form label kept on the allocation record

        Returns:
            The reserved port

        Raises:
            PortExhaustion: If no port qualified within the attempt limit
        """
        async with self._allocation_lock:
            logger.debug(
                f"Finding available port starting from {start_port} "
                f"(max attempts: {self.max_attempts}, connectivity test: {test_connectivity})"
            )
            port = start_port
            attempts = 0

            while attempts < self.max_attempts and port <= MAX_PORT:
                attempts += 1

                if port in self._allocations:
                    logger.debug(f"Port {port} is already reserved by this process")
                elif await is_port_in_use(port, self.host, self.probe_timeout):
                    logger.debug(f"Port {port} is in use, trying {port + 1} (attempt {attempts}/{self.max_attempts})")
                elif test_connectivity and not await check_port_connectivity(port, self.host, self.connect_timeout):
                    logger.debug(f"Port {port} is available but not connectable, trying next port")
                else:
                    self._allocations[port] = PortAllocation(
                        port=port,
                        bind_address=self.host,
                        connectivity_verified=test_connectivity,
                        purpose=purpose
                    )
                    logger.debug(f"Found available port: {port} after {attempts} attempts")
                    return port

                port += 1

            logger.error(f"No available ports after {attempts} attempts starting from {start_port}")
            raise PortExhaustion(start_port, attempts)

    def claim(self, port: int, purpose: Optional[str] = None) -> None:
        """Record a port already known to be free as owned by this process."""
        self._allocations.setdefault(
            port, PortAllocation(port=port, bind_address=self.host, purpose=purpose)
        )

    def release(self, port: int) -> None:
        """Give a port back. Releasing an unknown port is a no-op."""
        if self._allocations.pop(port, None) is not None:
            logger.debug(f"Released port {port}")

    def release_all(self) -> None:
        for port in list(self._allocations):
            self.release(port)

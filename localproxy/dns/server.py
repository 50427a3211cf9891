"""Authoritative UDP responder for locally proxied domains.

Answers A and AAAA queries for configured domains (and their subdomains)
with the loopback address. Every other query gets NXDOMAIN.
"""

import asyncio
import logging
from typing import FrozenSet, Iterable, Optional, Tuple

from ..errors import DNSBindFailure, DNSFormatError
from ..shared.config import Config, get_config
from ..shared.python_logger_config import set_verbose
from .wire import (
    TYPE_A,
    TYPE_AAAA,
    build_answer_response,
    build_nxdomain_response,
    parse_header,
    parse_question,
)

logger = logging.getLogger(__name__)


class _ResponderProtocol(asyncio.DatagramProtocol):
    def __init__(self, responder: 'DNSResponder'):
        self.responder = responder
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple):
        # A single bad query must never reach the loop exception handler
        try:
            response = self.responder.handle_datagram(data, addr)
        except Exception as e:
            logger.error(f"Failed to handle DNS query from {addr}: {e}", exc_info=True)
            return
        if response is not None and self.transport is not None:
            self.transport.sendto(response, addr)

    def error_received(self, exc: Exception):
        logger.warning(f"DNS socket error: {exc}")

    def connection_lost(self, exc: Optional[Exception]):
        if exc:
            logger.warning(f"DNS socket closed with error: {exc}")


class DNSResponder:
    """Minimal authoritative nameserver bound to a loopback UDP port."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        ttl: Optional[int] = None,
        wildcard_tlds: Optional[Iterable[str]] = None,
        config: Optional[Config] = None
    ):
        config = config or get_config()
        self.host = host or config.DNS_HOST
        self.port = port if port is not None else config.DNS_PORT
        self.ttl = ttl if ttl is not None else config.DNS_TTL
        if wildcard_tlds is None:
            wildcard_tlds = config.dns_wildcard_tlds()
        self.wildcard_tlds: FrozenSet[str] = frozenset(t.lower().lstrip('.') for t in wildcard_tlds)
        self._domains: FrozenSet[str] = frozenset()
        self._transport: Optional[asyncio.DatagramTransport] = None

    @property
    def domains(self) -> FrozenSet[str]:
        return self._domains

    @property
    def is_running(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    @property
    def bound_port(self) -> Optional[int]:
        """Actual port of the socket, useful when bound to port 0."""
        if not self.is_running:
            return None
        return self._transport.get_extra_info('sockname')[1]

    def matches(self, name: str) -> bool:
        """Whether ``name`` equals or is a subdomain of a served domain."""
        name = name.lower().rstrip('.')
        for domain in self._domains:
            if name == domain or name.endswith('.' + domain):
                return True
        if self.wildcard_tlds and '.' in name:
            return name.rsplit('.', 1)[-1] in self.wildcard_tlds
        return False

    def handle_datagram(self, data: bytes, addr: Tuple = None) -> Optional[bytes]:
        """Build the reply for one query datagram, or None to drop it."""
        try:
            header = parse_header(data)
            if header.is_response:
                logger.debug(f"Ignoring DNS response datagram from {addr}")
                return None
            if header.qdcount < 1:
                raise DNSFormatError("Query carries no question")
            question, _ = parse_question(data)
        except DNSFormatError as e:
            logger.warning(f"Dropping malformed DNS query from {addr}: {e}")
            return None

        logger.trace(f"DNS query from {addr}: {question.name} type={question.qtype}")

        try:
            if question.qtype in (TYPE_A, TYPE_AAAA) and self.matches(question.name):
                logger.debug(f"DNS answer {question.name} type={question.qtype} -> loopback")
                return build_answer_response(header, question, self.ttl)

            logger.debug(f"DNS NXDOMAIN {question.name} type={question.qtype}")
            return build_nxdomain_response(header, question)
        except DNSFormatError as e:
            logger.warning(f"Cannot answer DNS query from {addr}: {e}")
            return None

    async def _bind(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _ResponderProtocol(self),
                local_addr=(self.host, self.port)
            )
        except OSError as e:
            raise DNSBindFailure(f"Cannot bind DNS responder to {self.host}:{self.port}: {e}") from e
        self._transport = transport

    async def start(self, domains: Iterable[str], verbose: bool = False) -> bool:
        """Serve ``domains``, binding the socket if not already running.

        Returns:
            False if the socket could not be bound; callers fall back to
            hosts-file resolution
        """
        set_verbose(verbose)
        self._domains = frozenset(d.lower().rstrip('.') for d in domains if d)

        if self.is_running:
            logger.debug(f"DNS responder already running, now serving: {sorted(self._domains)}")
            return True

        try:
            await self._bind()
        except DNSBindFailure as e:
            logger.warning(f"{e}; falling back to hosts file resolution")
            return False

        logger.info(f"DNS responder listening on {self.host}:{self.bound_port} for {sorted(self._domains)}")
        return True

    async def stop(self) -> None:
        if self._transport is None:
            return
        self._transport.close()
        self._transport = None
        # Let connection_lost run before the loop goes away
        await asyncio.sleep(0)
        logger.info("DNS responder stopped")

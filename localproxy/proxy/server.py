"""Hypercorn-backed listeners for proxy and redirect apps."""

import asyncio
import logging
import os
import ssl
import tempfile
from typing import Optional

from hypercorn.asyncio import serve
from hypercorn.config import Config as HypercornConfig

from ..certmanager.models import SSLMaterial
from ..shared.utils import connect_host, format_host_port

logger = logging.getLogger(__name__)


class ProxyServerConfig(HypercornConfig):
    """Hypercorn config restricted to TLS 1.2 and 1.3 without client certificates."""

    def create_ssl_context(self) -> Optional[ssl.SSLContext]:
        context = super().create_ssl_context()
        if context is not None:
            context.minimum_version = ssl.TLSVersion.TLSv1_2
            context.maximum_version = ssl.TLSVersion.TLSv1_3
            context.verify_mode = ssl.CERT_NONE
        return context


class ProxyListener:
    """One bound Hypercorn server.

    Satisfies the listener handle contract of the lifecycle coordinator:
    ``await listener.close()`` stops serving and frees the port.
    """

    def __init__(self, app, host: str, port: int, ssl_material: Optional[SSLMaterial] = None,
                 name: Optional[str] = None, startup_timeout: float = 10.0):
        self.app = app
        self.host = host
        self.port = port
        self.ssl_material = ssl_material
        self.name = name or f"listener:{port}"
        self.startup_timeout = startup_timeout
        self.server_task: Optional[asyncio.Task] = None
        self.cert_file: Optional[str] = None
        self.key_file: Optional[str] = None
        self._shutdown_event = asyncio.Event()

    @property
    def is_tls(self) -> bool:
        return self.ssl_material is not None

    @property
    def is_serving(self) -> bool:
        return self.server_task is not None and not self.server_task.done()

    def _write_tls_files(self):
        # Hypercorn loads certificates from files only
        with tempfile.NamedTemporaryFile(mode='wb', suffix='.pem', delete=False) as cf:
            cf.write(self.ssl_material.cert_chain)
            self.cert_file = cf.name

        with tempfile.NamedTemporaryFile(mode='wb', suffix='.key', delete=False) as kf:
            kf.write(self.ssl_material.key)
            self.key_file = kf.name
        os.chmod(self.key_file, 0o600)

    def build_config(self) -> ProxyServerConfig:
        config = ProxyServerConfig()
        config.bind = [format_host_port(self.host, self.port)]
        config.errorlog = logging.getLogger('hypercorn.error')
        config.accesslog = None
        config.keep_alive_timeout = 60
        config.shutdown_timeout = 2
        config.ssl_handshake_timeout = 5
        config.h11_max_incomplete_size = 65536

        if self.is_tls:
            self._write_tls_files()
            config.certfile = self.cert_file
            config.keyfile = self.key_file
            config.alpn_protocols = ["h2", "http/1.1"]
        return config

    async def _wait_until_listening(self):
        target = connect_host(self.host)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout

        while True:
            if self.server_task.done():
                exc = self.server_task.exception() if not self.server_task.cancelled() else None
                raise exc or RuntimeError(f"{self.name} exited before listening on port {self.port}")
            try:
                _, writer = await asyncio.wait_for(asyncio.open_connection(target, self.port), timeout=1.0)
            except (OSError, asyncio.TimeoutError):
                if loop.time() >= deadline:
                    raise asyncio.TimeoutError(f"{self.name} did not start listening on port {self.port}")
                await asyncio.sleep(0.05)
                continue
            writer.close()
            return

    async def start(self):
        """Start serving and return once the port accepts connections."""
        config = self.build_config()
        scheme = "https" if self.is_tls else "http"
        logger.info(f"Starting {self.name} on {scheme}://{format_host_port(self.host, self.port)}")

        self._shutdown_event.clear()
        self.server_task = asyncio.create_task(
            serve(self.app, config, shutdown_trigger=self._shutdown_event.wait)
        )
        try:
            await self._wait_until_listening()
        except BaseException:
            await self.close()
            raise
        logger.debug(f"{self.name} is listening on port {self.port}")

    async def close(self):
        """Stop the server and remove temporary certificate files."""
        if self.server_task is not None:
            self._shutdown_event.set()
            try:
                await asyncio.wait_for(asyncio.shield(self.server_task), timeout=5)
            except asyncio.TimeoutError:
                self.server_task.cancel()
                try:
                    await self.server_task
                except asyncio.CancelledError:
                    pass
            except (asyncio.CancelledError, Exception) as e:
                logger.debug(f"{self.name} ended with {type(e).__name__}: {e}")
            self.server_task = None
            logger.info(f"Stopped {self.name} on port {self.port}")

        self.cleanup()

    def cleanup(self):
        """Clean up temporary files."""
        for path in (self.cert_file, self.key_file):
            if path and os.path.exists(path):
                try:
                    os.unlink(path)
                except OSError as e:
                    logger.error(f"Error cleaning up temp file {path}: {e}")
        self.cert_file = None
        self.key_file = None

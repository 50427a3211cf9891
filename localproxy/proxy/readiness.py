"""Upstream readiness probing before a Route starts serving."""

import asyncio
import logging
from typing import Optional

import httpx

from ..errors import ConnectivityTimeout
from ..shared.config import Config, get_config
from ..shared.utils import format_host_port

logger = logging.getLogger(__name__)


async def _tcp_probe(host: str, port: int, timeout: float) -> None:
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    writer.close()


async def _http_probe(scheme: str, host: str, port: int, timeout: float) -> int:
    async with httpx.AsyncClient(verify=False, timeout=timeout, follow_redirects=False) as client:
        response = await client.head(f"{scheme}://{format_host_port(host, port)}/")
        return response.status_code


async def probe_upstream(scheme: str, host: str, port: int, timeout: float) -> Optional[str]:
    """One readiness attempt.

    Returns:
        None when the upstream is reachable, otherwise the failure reason
    """
    try:
        await _tcp_probe(host, port, timeout)
        return None
    except (OSError, asyncio.TimeoutError) as e:
        tcp_reason = str(e) or type(e).__name__
        logger.debug(f"TCP probe of {host}:{port} failed ({tcp_reason}), trying HTTP")

    try:
        status = await _http_probe(scheme, host, port, timeout)
    except httpx.HTTPError as e:
        return f"{tcp_reason}; HTTP probe: {str(e) or type(e).__name__}"
    # Any HTTP answer means something is serving
    logger.debug(f"HTTP probe of {host}:{port} answered {status}")
    return None


async def wait_for_upstream(
    scheme: str,
    host: str,
    port: int,
    retries: Optional[int] = None,
    timeout: Optional[float] = None,
    delay: Optional[float] = None,
    max_duration: Optional[float] = None,
    config: Optional[Config] = None
) -> int:
    """Wait until the upstream answers, retrying with a fixed delay.

    Args:
        scheme: ``http`` or ``https``, used for the HTTP fallback probe
        host: Upstream host
        port: Upstream port
        retries: Maximum attempts (UPSTREAM_READY_RETRIES)
        timeout: Per-attempt timeout (UPSTREAM_READY_TIMEOUT)
        delay: Sleep between attempts (UPSTREAM_RETRY_DELAY)
        max_duration: Overall bound in seconds (UPSTREAM_READY_MAX_DURATION)

    Returns:
        The attempt number that succeeded

    Raises:
        ConnectivityTimeout: If every attempt failed or the overall bound passed
    """
    config = config or get_config()
    retries = config.UPSTREAM_READY_RETRIES if retries is None else retries
    timeout = config.UPSTREAM_READY_TIMEOUT if timeout is None else timeout
    delay = config.UPSTREAM_RETRY_DELAY if delay is None else delay
    max_duration = config.UPSTREAM_READY_MAX_DURATION if max_duration is None else max_duration

    loop = asyncio.get_running_loop()
    deadline = loop.time() + max_duration
    reason = None
    attempt = 0

    while attempt < retries:
        attempt += 1
        remaining = deadline - loop.time()
        if remaining <= 0:
            break

        try:
            reason = await asyncio.wait_for(
                probe_upstream(scheme, host, port, min(timeout, remaining)),
                timeout=remaining
            )
        except asyncio.TimeoutError:
            reason = f"exceeded {max_duration}s overall"

        if reason is None:
            logger.debug(f"Upstream {host}:{port} is ready (attempt {attempt})")
            return attempt

        logger.debug(f"Upstream {host}:{port} not ready (attempt {attempt}/{retries}): {reason}")
        if attempt < retries and deadline - loop.time() > delay:
            await asyncio.sleep(delay)
        elif attempt < retries:
            break

    raise ConnectivityTimeout(host, port, attempt, reason)

"""ASGI applications served by the proxy listeners."""

import asyncio
import logging

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, RedirectResponse, Response
from starlette.routing import Route

from .handler import ForwardingHandler

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE"]


def create_proxy_app(handler: ForwardingHandler) -> Starlette:
    """Catch-all app forwarding every path to ``handler``."""

    async def handle_proxy(request: Request) -> Response:
        try:
            return await handler.handle_request(request)
        except asyncio.CancelledError:
            # Client went away mid-request
            logger.debug(f"Client disconnected during {request.url.path}")
            return PlainTextResponse("", status_code=499)
        except (ConnectionResetError, BrokenPipeError, ConnectionAbortedError) as e:
            logger.debug(f"Client connection lost: {type(e).__name__}")
            return PlainTextResponse("", status_code=499)

    return Starlette(
        routes=[
            Route("/{path:path}", handle_proxy, methods=ALL_METHODS),
        ]
    )


def _strip_port(host_header: str) -> str:
    if host_header.startswith('['):
        return host_header.split(']')[0] + ']'
    return host_header.split(':')[0]


def create_redirect_app(https_port: int = 443) -> Starlette:
    """App answering every request with a 301 to the HTTPS URL."""
    port_suffix = '' if https_port == 443 else f":{https_port}"

    async def redirect_to_https(request: Request) -> Response:
        host = _strip_port(request.headers.get('host', '')) or 'localhost'
        location = f"https://{host}{port_suffix}{request.url.path}"
        if request.url.query:
            location += f"?{request.url.query}"
        return RedirectResponse(location, status_code=301)

    return Starlette(
        routes=[
            Route("/{path:path}", redirect_to_https, methods=ALL_METHODS),
        ]
    )

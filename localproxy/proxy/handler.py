"""HTTP/S forwarding handler for a single Route."""

import logging
import time
from typing import Iterable, List, Optional, Sequence, Tuple

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse

from ..errors import ForwardingFailure
from ..shared.config import Config, get_config
from ..shared.logging import get_logger, log_request, log_response
from .clean_urls import alternate_paths, rewrite_clean_path
from .models import Route

logger = get_logger(__name__)
stdlib_logger = logging.getLogger(__name__)

SECURITY_HEADERS = (
    ('strict-transport-security', 'max-age=31536000; includeSubDomains; preload'),
    ('x-content-type-options', 'nosniff'),
)

HOP_BY_HOP = frozenset({
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'proxy-connection', 'te', 'trailer', 'trailers', 'transfer-encoding', 'upgrade',
})

# Recomputed by the client for the forwarded request
REQUEST_SKIP = frozenset({'host', 'content-length'})


def _connection_tokens(headers: Iterable[Tuple[str, str]]) -> set:
    tokens = set()
    for name, value in headers:
        if name.lower() == 'connection':
            tokens.update(t.strip().lower() for t in value.split(',') if t.strip())
    return tokens


def normalize_headers(headers: Sequence[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Drop pseudo-headers, hop-by-hop headers and anything named in Connection.

    Duplicates and their order are preserved.
    """
    drop = HOP_BY_HOP | _connection_tokens(headers)
    return [
        (name, value) for name, value in headers
        if not name.startswith(':') and name.lower() not in drop
    ]


def with_security_headers(headers: Sequence[Tuple[str, str]]) -> List[Tuple[str, str]]:
    names = {name for name, _ in SECURITY_HEADERS}
    kept = [(name, value) for name, value in headers if name.lower() not in names]
    return kept + list(SECURITY_HEADERS)


def _encode_headers(headers: Sequence[Tuple[str, str]]) -> List[Tuple[bytes, bytes]]:
    return [(name.lower().encode('latin-1'), value.encode('latin-1')) for name, value in headers]


class ForwardingHandler:
    """Forwards every request for one Route to its upstream dev server."""

    def __init__(self, route: Route, client: Optional[httpx.AsyncClient] = None,
                 config: Optional[Config] = None):
        self.route = route
        self.upstream_url = route.upstream_url

        if client is None:
            config = config or get_config()
            client = httpx.AsyncClient(
                follow_redirects=False,
                verify=False,  # Dev servers commonly use self-signed certificates
                timeout=httpx.Timeout(
                    connect=config.PROXY_CONNECT_TIMEOUT,
                    read=config.PROXY_REQUEST_TIMEOUT,
                    write=10.0,
                    pool=None
                ),
                limits=httpx.Limits(max_keepalive_connections=100)
            )
            self._owns_client = True
        else:
            self._owns_client = False
        self.client = client

    def request_target(self, request: Request) -> Tuple[str, str, str]:
        """(method, path, query) of the inbound request.

        ``:method`` and ``:path`` header fields win when a transport passes
        them through, as multiplexed connections carry the request line that
        way. The path stays percent-encoded exactly as the client sent it.
        """
        method = request.method
        raw_path = request.scope.get('raw_path')
        if raw_path:
            # Some servers include the query string in raw_path
            path = raw_path.decode('latin-1').split('?', 1)[0]
        else:
            path = request.url.path
        query = request.url.query
        for name, value in request.headers.items():
            if name == ':method':
                method = value.upper()
            elif name == ':path':
                path, _, query = value.partition('?')
        return method, path or '/', query

    def prepare_headers(self, request: Request) -> List[Tuple[str, str]]:
        """Headers for the upstream request."""
        headers = [
            (name, value) for name, value in normalize_headers(request.headers.items())
            if name.lower() not in REQUEST_SKIP
        ]

        client_host = request.headers.get('host', '')
        if self.route.change_origin:
            headers.append(('host', self.route.upstream_host_header))
        elif client_host:
            headers.append(('host', client_host))

        headers.append(('x-forwarded-for', request.client.host if request.client else 'unknown'))
        headers.append(('x-forwarded-proto', request.url.scheme))
        headers.append(('x-forwarded-host', client_host))
        return headers

    async def _send(self, method: str, path: str, query: str,
                    headers: List[Tuple[str, str]], body: bytes) -> httpx.Response:
        url = f"{self.upstream_url}{path}"
        if query:
            url += f"?{query}"
        req = self.client.build_request(method, url, headers=headers, content=body or None)
        try:
            return await self.client.send(req, stream=True)
        except httpx.TransportError as e:
            raise ForwardingFailure(str(e) or type(e).__name__) from e

    async def _try_alternates(self, original: httpx.Response, method: str, path: str, query: str,
                              headers: List[Tuple[str, str]], body: bytes) -> httpx.Response:
        """First alternate answering 200, else the original 404."""
        for alternate in alternate_paths(path):
            try:
                response = await self._send(method, alternate, query, headers, body)
            except ForwardingFailure as e:
                stdlib_logger.debug(f"Clean URL fallback {alternate} failed: {e}")
                continue

            if response.status_code == 200:
                stdlib_logger.debug(f"Clean URL fallback {path} -> {alternate}")
                await original.aclose()
                return response

            stdlib_logger.debug(f"Clean URL fallback {alternate} returned {response.status_code}")
            await response.aclose()
        return original

    def relay(self, upstream: httpx.Response) -> Response:
        """Stream the upstream response back verbatim, plus security headers."""
        headers = normalize_headers(upstream.headers.multi_items())

        if upstream.is_stream_consumed:
            # Body was already buffered, and httpx has decoded it
            content = upstream.content
            headers = [
                (name, value) for name, value in headers
                if name.lower() not in ('content-encoding', 'content-length')
            ]
            headers.append(('content-length', str(len(content))))
            response = Response(content, status_code=upstream.status_code,
                                background=BackgroundTask(upstream.aclose))
        else:
            response = StreamingResponse(
                upstream.aiter_raw(),
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose)
            )
        response.raw_headers = _encode_headers(with_security_headers(headers))
        return response

    def bad_gateway(self, reason: str) -> Response:
        response = PlainTextResponse(f"Proxy Error: {reason}", status_code=502)
        for name, value in SECURITY_HEADERS:
            response.headers[name] = value
        return response

    async def handle_request(self, request: Request) -> Response:
        start_time = time.time()
        method, path, query = self.request_target(request)
        log_request(logger, method, path, host=self.route.to, upstream=self.upstream_url)

        forward_path = rewrite_clean_path(path) if self.route.clean_urls else path
        headers = self.prepare_headers(request)
        body = await request.body()

        try:
            upstream = await self._send(method, forward_path, query, headers, body)
        except ForwardingFailure as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                "Failed to reach upstream",
                method=method,
                path=forward_path,
                upstream=self.upstream_url,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            response = self.bad_gateway(str(e))
            log_response(logger, response.status_code, duration_ms, path=path)
            return response

        if self.route.clean_urls and upstream.status_code == 404:
            upstream = await self._try_alternates(upstream, method, forward_path, query, headers, body)

        duration_ms = (time.time() - start_time) * 1000
        log_response(logger, upstream.status_code, duration_ms, path=path,
                     upstream_path=upstream.request.url.path)
        return self.relay(upstream)

    async def close(self):
        """Close the HTTP client if this handler created it."""
        if self._owns_client:
            await self.client.aclose()

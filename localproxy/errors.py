"""Exception types raised across localproxy."""

from typing import List, Optional, Tuple


class LocalProxyError(Exception):
    """Base class for every localproxy error."""


class PortExhaustion(LocalProxyError):
    """No usable port was found within the attempt limit."""

    def __init__(self, start_port: int, attempts: int):
        self.start_port = start_port
        self.attempts = attempts
        super().__init__(
            f"Unable to find an available port after {attempts} attempts starting from {start_port}"
        )


class ConnectivityTimeout(LocalProxyError):
    """The upstream never answered the readiness probe."""

    def __init__(self, host: str, port: int, attempts: int, reason: Optional[str] = None):
        self.host = host
        self.port = port
        self.attempts = attempts
        self.reason = reason
        message = f"Failed to connect to {host}:{port} after {attempts} attempts"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class DNSBindFailure(LocalProxyError):
    """The DNS responder could not bind its UDP socket."""


class DNSFormatError(LocalProxyError):
    """A DNS datagram could not be parsed."""


class TLSMaterialMissing(LocalProxyError):
    """HTTPS was requested but no key/certificate could be produced."""


class ForwardingFailure(LocalProxyError):
    """The upstream request failed at the transport level."""


class ProxyStartupError(LocalProxyError):
    """A Route could not be brought up."""

    def __init__(self, domain: str, cause: BaseException):
        self.domain = domain
        self.cause = cause
        super().__init__(f"Failed to start proxy for {domain}: {cause}")


class CleanupPartialFailure(LocalProxyError):
    """One or more teardown steps failed."""

    def __init__(self, failures: List[Tuple[str, BaseException]]):
        self.failures = failures
        steps = ', '.join(step for step, _ in failures)
        super().__init__(f"Cleanup finished with {len(failures)} failed step(s): {steps}")

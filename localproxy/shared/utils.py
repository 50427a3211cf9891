"""Shared helpers for host names and addresses."""

from typing import Iterable, List, Tuple
from urllib.parse import urlsplit

# TLDs owned by registries with HSTS preloading; browsers may bypass local DNS
PROBLEMATIC_TLDS = frozenset({'dev', 'app', 'page', 'new', 'day', 'foo'})

# Reserved for testing and local use (RFC 2606 / RFC 6761)
RESERVED_TLDS = frozenset({'test', 'localhost', 'local', 'example', 'invalid'})


def is_loopback_domain(domain: str) -> bool:
    """True for localhost, 127.0.0.1 and any subdomain of localhost."""
    domain = domain.strip().lower().rstrip('.')
    return domain in ('localhost', '127.0.0.1') or domain.endswith('.localhost')


def custom_domains(domains: Iterable[str]) -> List[str]:
    """Domains that need hosts-file or DNS help to resolve, in order, without duplicates."""
    seen = []
    for domain in domains:
        if domain and not is_loopback_domain(domain) and domain not in seen:
            seen.append(domain)
    return seen


def tld_of(domain: str) -> str:
    return domain.rstrip('.').rsplit('.', 1)[-1].lower()


def problematic_tlds(domains: Iterable[str]) -> List[str]:
    """TLDs among ``domains`` that are known to misbehave for local development."""
    return sorted({tld_of(d) for d in domains if tld_of(d) in PROBLEMATIC_TLDS})


def split_host_port(value: str, default_scheme: str = 'http') -> Tuple[str, str, int]:
    """Parse ``host:port`` or ``scheme://host:port`` into (scheme, host, port).

    Missing ports default to 443 for https and 80 otherwise.
    """
    if '://' not in value:
        value = f"{default_scheme}://{value}"
    parts = urlsplit(value)
    scheme = parts.scheme.lower() or default_scheme
    host = (parts.hostname or 'localhost').lower()
    port = parts.port or (443 if scheme == 'https' else 80)
    return scheme, host, port


def format_host_port(host: str, port: int) -> str:
    """``host:port`` with IPv6 literals bracketed."""
    if ':' in host and not host.startswith('['):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def connect_host(bind_host: str) -> str:
    """Address to dial when checking a listener bound to ``bind_host``."""
    if bind_host in ('', '0.0.0.0'):
        return '127.0.0.1'
    if bind_host == '::':
        return '::1'
    return bind_host

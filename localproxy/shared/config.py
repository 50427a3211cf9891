"""Centralized configuration management for localproxy."""

import os
import sys
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv

# Values already present in the environment win over the .env file
load_dotenv(os.getenv('LOCALPROXY_ENV_FILE', '.env'), override=False)


def _default_hosts_file() -> str:
    if sys.platform == 'win32':
        return os.path.join(os.getenv('windir', 'C:\\Windows'), 'System32', 'drivers', 'etc', 'hosts')
    return '/etc/hosts'


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Configuration class with all environment variables."""

    # Proxy listeners
    SERVER_HOST: str = os.getenv('SERVER_HOST', '0.0.0.0')
    HTTP_PORT: int = int(os.getenv('HTTP_PORT', '80'))
    HTTPS_PORT: int = int(os.getenv('HTTPS_PORT', '443'))
    HTTPS_FALLBACK_PORT: int = int(os.getenv('HTTPS_FALLBACK_PORT', '3443'))
    HTTP_FALLBACK_OFFSET: int = int(os.getenv('HTTP_FALLBACK_OFFSET', '1000'))

    # Port allocation
    PORT_MAX_ATTEMPTS: int = int(os.getenv('PORT_MAX_ATTEMPTS', '50'))
    PORT_PROBE_TIMEOUT: float = float(os.getenv('PORT_PROBE_TIMEOUT', '3'))
    PORT_CONNECT_TIMEOUT: float = float(os.getenv('PORT_CONNECT_TIMEOUT', '3'))

    # Upstream readiness
    UPSTREAM_READY_RETRIES: int = int(os.getenv('UPSTREAM_READY_RETRIES', '5'))
    UPSTREAM_READY_TIMEOUT: float = float(os.getenv('UPSTREAM_READY_TIMEOUT', '3'))
    UPSTREAM_RETRY_DELAY: float = float(os.getenv('UPSTREAM_RETRY_DELAY', '2'))
    UPSTREAM_READY_MAX_DURATION: float = float(os.getenv('UPSTREAM_READY_MAX_DURATION', '15'))
    BYPASS_CONNECTION_TEST: bool = _env_bool('BYPASS_CONNECTION_TEST', 'false')

    # Forwarding
    PROXY_CONNECT_TIMEOUT: float = float(os.getenv('PROXY_CONNECT_TIMEOUT', '30'))
    PROXY_REQUEST_TIMEOUT: float = float(os.getenv('PROXY_REQUEST_TIMEOUT', '120'))

    # DNS responder
    DNS_ENABLED: bool = _env_bool('DNS_ENABLED', 'true')
    DNS_HOST: str = os.getenv('DNS_HOST', '127.0.0.1')
    DNS_PORT: int = int(os.getenv('DNS_PORT', '15353'))
    DNS_WILDCARD_TLDS: str = os.getenv('DNS_WILDCARD_TLDS', '')
    DNS_TTL: int = int(os.getenv('DNS_TTL', '300'))

    # Certificates
    CERT_DIR: str = os.getenv('CERT_DIR', str(Path.home() / '.localproxy' / 'ssl'))
    RSA_KEY_SIZE: int = int(os.getenv('RSA_KEY_SIZE', '2048'))
    CERT_VALIDITY_DAYS: int = int(os.getenv('CERT_VALIDITY_DAYS', '825'))

    # Host system integration
    HOSTS_FILE: str = os.getenv('HOSTS_FILE', _default_hosts_file())
    RESOLVER_DIR: str = os.getenv('RESOLVER_DIR', '/etc/resolver')
    PROCESS_STOP_TIMEOUT: float = float(os.getenv('PROCESS_STOP_TIMEOUT', '3'))

    # Logging
    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO').upper()

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration values."""
        errors = []

        for name in ('HTTP_PORT', 'HTTPS_PORT', 'HTTPS_FALLBACK_PORT', 'DNS_PORT'):
            value = getattr(cls, name)
            if not (1 <= value <= 65535):
                errors.append(f"{name} must be between 1 and 65535, got {value}")

        if cls.PORT_MAX_ATTEMPTS < 1:
            errors.append("PORT_MAX_ATTEMPTS must be at least 1")

        if cls.UPSTREAM_READY_RETRIES < 0:
            errors.append("UPSTREAM_READY_RETRIES must not be negative")

        # Check timeout hierarchy
        if cls.PROXY_CONNECT_TIMEOUT >= cls.PROXY_REQUEST_TIMEOUT:
            errors.append("PROXY_CONNECT_TIMEOUT must be less than PROXY_REQUEST_TIMEOUT")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")

    def dns_wildcard_tlds(self) -> List[str]:
        """TLDs the DNS responder answers for wholesale."""
        return [t.strip().lower().lstrip('.') for t in self.DNS_WILDCARD_TLDS.split(',') if t.strip()]


@lru_cache()
def get_config() -> Config:
    """Get validated configuration instance."""
    Config.validate()
    return Config()

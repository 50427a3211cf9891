"""Pytest configuration and recording fakes for localproxy tests."""

import socket
from typing import Dict, List, Optional, Tuple

import pytest

from localproxy.certmanager.models import SSLMaterial
from localproxy.shared.config import Config


def free_port(host: str = '127.0.0.1') -> int:
    """A port the OS considers free right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def make_config(**overrides) -> Config:
    """Config instance with fast timeouts; ``overrides`` shadow the class values."""
    config = Config()
    defaults = dict(
        SERVER_HOST='127.0.0.1',
        PORT_MAX_ATTEMPTS=20,
        PORT_PROBE_TIMEOUT=1.0,
        PORT_CONNECT_TIMEOUT=1.0,
        UPSTREAM_READY_RETRIES=2,
        UPSTREAM_READY_TIMEOUT=0.5,
        UPSTREAM_RETRY_DELAY=0.1,
        UPSTREAM_READY_MAX_DURATION=2.0,
        BYPASS_CONNECTION_TEST=False,
        PROXY_CONNECT_TIMEOUT=2.0,
        PROXY_REQUEST_TIMEOUT=5.0,
        DNS_ENABLED=False,
        DNS_HOST='127.0.0.1',
        DNS_PORT=0,
        DNS_WILDCARD_TLDS='',
        PROCESS_STOP_TIMEOUT=1.0,
        RSA_KEY_SIZE=2048,
    )
    defaults.update(overrides)
    for name, value in defaults.items():
        setattr(config, name, value)
    return config


class FakeHosts:
    def __init__(self, present: Optional[List[str]] = None):
        self.present = set(present or [])
        self.added: List[List[str]] = []
        self.removed: List[List[str]] = []

    async def check_hosts(self, domains):
        return [d in self.present for d in domains]

    async def add_hosts(self, domains):
        self.added.append(list(domains))
        self.present.update(domains)
        return True

    async def remove_hosts(self, domains):
        self.removed.append(list(domains))
        self.present.difference_update(domains)
        return True


class FakeCerts:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requested: List[List[str]] = []
        self.cleaned: List[str] = []

    async def get_ssl_material(self, domains, tls=None):
        from localproxy.errors import TLSMaterialMissing
        self.requested.append(list(domains))
        if self.fail:
            raise TLSMaterialMissing("no certificate for you")
        return SSLMaterial(key=b'key', cert=b'cert', domains=list(domains))

    async def cleanup_certificates(self, domain):
        self.cleaned.append(domain)
        return True


class FakeProcesses:
    def __init__(self, start_ok: bool = True):
        self.start_ok = start_ok
        self.started: Dict[str, Tuple[str, Optional[str], dict]] = {}
        self.stopped: List[str] = []
        self.stop_all_calls = 0

    async def start(self, id, command, cwd=None, env=None):
        if not self.start_ok:
            return False
        self.started[id] = (command, cwd, dict(env or {}))
        return True

    async def stop(self, id):
        self.stopped.append(id)
        return self.started.pop(id, None) is not None

    async def stop_all(self):
        self.stop_all_calls += 1
        for id in list(self.started):
            await self.stop(id)
        return True


class FakeResolver:
    def __init__(self):
        self.setups: List[Tuple[List[str], int, str]] = []
        self.removed = 0

    async def setup(self, tlds, port, host='127.0.0.1'):
        self.setups.append((list(tlds), port, host))
        return True

    async def remove(self):
        self.removed += 1
        return True


class FakeDNS:
    def __init__(self, bind_ok: bool = True):
        self.bind_ok = bind_ok
        self.host = '127.0.0.1'
        self.port = 15353
        self.bound_port = None
        self.domains: List[str] = []
        self.stopped = 0

    async def start(self, domains, verbose=False):
        self.domains = list(domains)
        if self.bind_ok:
            self.bound_port = self.port
        return self.bind_ok

    async def stop(self):
        self.stopped += 1
        self.bound_port = None


class FakeListener:
    def __init__(self, name: str = 'fake', fail: bool = False):
        self.name = name
        self.fail = fail
        self.closed = 0

    async def close(self):
        self.closed += 1
        if self.fail:
            raise RuntimeError(f"{self.name} refused to close")


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def fake_hosts():
    return FakeHosts()


@pytest.fixture
def fake_certs():
    return FakeCerts()


@pytest.fixture
def fake_processes():
    return FakeProcesses()


@pytest.fixture
def fake_resolver():
    return FakeResolver()


@pytest.fixture
def fake_dns():
    return FakeDNS()


class ExitRecorder:
    def __init__(self):
        self.codes: List[int] = []

    def __call__(self, code: int):
        self.codes.append(code)


@pytest.fixture
def exit_recorder():
    return ExitRecorder()

"""Tests for environment-driven configuration."""

import pytest

from localproxy.shared.config import Config

from .conftest import make_config


class TestConfig:

    def test_defaults_validate(self):
        Config.validate()

    def test_collects_every_error(self, monkeypatch):
        monkeypatch.setattr(Config, 'HTTP_PORT', 0)
        monkeypatch.setattr(Config, 'PORT_MAX_ATTEMPTS', 0)
        with pytest.raises(ValueError) as exc_info:
            Config.validate()
        message = str(exc_info.value)
        assert 'HTTP_PORT must be between 1 and 65535' in message
        assert 'PORT_MAX_ATTEMPTS must be at least 1' in message

    def test_timeout_hierarchy(self, monkeypatch):
        monkeypatch.setattr(Config, 'PROXY_CONNECT_TIMEOUT', 200.0)
        with pytest.raises(ValueError, match='PROXY_CONNECT_TIMEOUT'):
            Config.validate()

    def test_wildcard_tlds_parsed(self):
        config = make_config(DNS_WILDCARD_TLDS=' .Test, dev ,,')
        assert config.dns_wildcard_tlds() == ['test', 'dev']

    def test_instance_overrides_do_not_leak(self):
        make_config(HTTP_PORT=8080)
        assert Config().HTTP_PORT == Config.HTTP_PORT

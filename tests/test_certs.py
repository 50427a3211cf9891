"""Tests for local CA and certificate management."""

import ipaddress
import ssl

import pytest
from cryptography import x509

from localproxy.certmanager import CertificateManager, SSLMaterial
from localproxy.certmanager.manager import san_names
from localproxy.errors import TLSMaterialMissing
from localproxy.proxy.models import TlsPaths

from .conftest import make_config


@pytest.fixture
def certs(tmp_path):
    return CertificateManager(cert_dir=str(tmp_path / 'ssl'), key_size=2048, config=make_config())


def test_san_names():
    assert san_names(['a.test', 'b.test']) == ['a.test', '*.a.test', 'b.test', '*.b.test', 'localhost']


class TestCertificateManager:

    @pytest.mark.asyncio
    async def test_generates_leaf_signed_by_local_ca(self, certs):
        material = await certs.get_ssl_material(['myapp.test'])

        cert_path, key_path, ca_path = certs.paths_for('myapp.test')
        assert cert_path.exists() and key_path.exists() and ca_path.exists()
        assert (key_path.stat().st_mode & 0o777) == 0o600

        leaf = x509.load_pem_x509_certificate(material.cert)
        ca = x509.load_pem_x509_certificate(material.ca)
        assert leaf.issuer == ca.subject
        leaf.verify_directly_issued_by(ca)

        san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert set(san.get_values_for_type(x509.DNSName)) == {'myapp.test', '*.myapp.test', 'localhost'}
        assert set(san.get_values_for_type(x509.IPAddress)) == {
            ipaddress.ip_address('127.0.0.1'), ipaddress.ip_address('::1')
        }

    @pytest.mark.asyncio
    async def test_material_loads_into_ssl_context(self, certs, tmp_path):
        material = await certs.get_ssl_material(['myapp.test'])
        chain = tmp_path / 'chain.pem'
        chain.write_bytes(material.cert_chain)
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(str(chain), material.key_path)

    @pytest.mark.asyncio
    async def test_reuses_existing_material(self, certs):
        first = await certs.get_ssl_material(['myapp.test'])
        second = await certs.get_ssl_material(['myapp.test'])
        assert second.cert == first.cert
        assert second.key == first.key

    @pytest.mark.asyncio
    async def test_regenerates_when_domain_not_covered(self, certs):
        first = await certs.get_ssl_material(['myapp.test'])
        second = await certs.get_ssl_material(['myapp.test', 'api.other.test'])
        assert second.cert != first.cert
        assert 'api.other.test' in second.domains

    @pytest.mark.asyncio
    async def test_ca_is_shared_across_domains(self, certs):
        one = await certs.get_ssl_material(['one.test'])
        two = await certs.get_ssl_material(['two.test'])
        assert one.ca == two.ca

    @pytest.mark.asyncio
    async def test_explicit_paths_win(self, certs, tmp_path):
        key = tmp_path / 'k.pem'
        cert = tmp_path / 'c.pem'
        key.write_bytes(b'KEY')
        cert.write_bytes(b'CERT')
        material = await certs.get_ssl_material(['myapp.test'], TlsPaths(key_path=str(key), cert_path=str(cert)))
        assert material == SSLMaterial(
            key=b'KEY', cert=b'CERT', key_path=str(key), cert_path=str(cert), domains=['myapp.test']
        )
        assert not certs.cert_dir.exists()

    @pytest.mark.asyncio
    async def test_unreadable_explicit_paths(self, certs, tmp_path):
        tls = TlsPaths(key_path=str(tmp_path / 'nope.key'), cert_path=str(tmp_path / 'nope.crt'))
        with pytest.raises(TLSMaterialMissing):
            await certs.get_ssl_material(['myapp.test'], tls)

    @pytest.mark.asyncio
    async def test_no_domains(self, certs):
        with pytest.raises(TLSMaterialMissing):
            await certs.get_ssl_material([])

    @pytest.mark.asyncio
    async def test_cleanup_certificates(self, certs):
        await certs.get_ssl_material(['myapp.test'])
        assert await certs.cleanup_certificates('myapp.test') is True
        assert not any(p.exists() for p in certs.paths_for('myapp.test'))
        # Missing files are fine
        assert await certs.cleanup_certificates('myapp.test') is True

    def test_wildcard_file_names(self, certs):
        cert_path, key_path, ca_path = certs.paths_for('*.myapp.test')
        assert cert_path.name == 'wildcard.myapp.test.crt'
        assert key_path.name == 'wildcard.myapp.test.crt.key'
        assert ca_path.name == 'wildcard.myapp.test.ca.crt'


class TestSSLMaterial:

    def test_cert_chain_appends_ca(self):
        material = SSLMaterial(key=b'k', cert=b'LEAF', ca=b'CA\n')
        assert material.cert_chain == b'LEAF\nCA\n'

    def test_cert_chain_without_ca(self):
        assert SSLMaterial(key=b'k', cert=b'LEAF\n').cert_chain == b'LEAF\n'

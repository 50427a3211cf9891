"""Local certificate authority and per-domain certificate management."""

import asyncio
import ipaddress
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..errors import TLSMaterialMissing
from ..proxy.models import TlsPaths
from ..shared.config import Config, get_config
from .models import SSLMaterial

logger = logging.getLogger(__name__)

CA_NAME = 'localproxy'
CA_VALIDITY_DAYS = 3650
# Regenerate leaf certificates this close to expiry
RENEW_BEFORE = timedelta(days=1)


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption()
    )


def _cert_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def _write(path: Path, data: bytes, private: bool = False):
    path.write_bytes(data)
    if private:
        os.chmod(path, 0o600)


def san_names(domains: Iterable[str]) -> List[str]:
    """DNS names a leaf certificate for ``domains`` should carry."""
    names = []
    for domain in domains:
        for name in (domain, f"*.{domain}"):
            if name not in names:
                names.append(name)
    if 'localhost' not in names:
        names.append('localhost')
    return names


class CertificateManager:
    """Loads or generates TLS material for proxied domains.

    A single root CA lives in ``CERT_DIR`` and signs one leaf certificate
    per primary domain. Each domain gets ``<domain>.crt``, ``<domain>.crt.key``
    and ``<domain>.ca.crt``.
    """

    def __init__(self, cert_dir: Optional[str] = None, key_size: Optional[int] = None,
                 validity_days: Optional[int] = None, config: Optional[Config] = None):
        config = config or get_config()
        self.cert_dir = Path(os.path.expanduser(cert_dir or config.CERT_DIR))
        self.key_size = key_size or config.RSA_KEY_SIZE
        self.validity_days = validity_days or config.CERT_VALIDITY_DAYS

    def paths_for(self, domain: str) -> Tuple[Path, Path, Path]:
        """(cert, key, ca) file paths for ``domain``."""
        name = domain.replace('*', 'wildcard')
        return (
            self.cert_dir / f"{name}.crt",
            self.cert_dir / f"{name}.crt.key",
            self.cert_dir / f"{name}.ca.crt",
        )

    @property
    def ca_paths(self) -> Tuple[Path, Path]:
        return self.cert_dir / f"{CA_NAME}.ca.crt", self.cert_dir / f"{CA_NAME}.ca.key"

    async def get_ssl_material(self, domains: Sequence[str], tls: Optional[TlsPaths] = None) -> SSLMaterial:
        """Material covering ``domains``, reusing files on disk when still valid.

        Raises:
            TLSMaterialMissing: If explicit paths are unreadable or generation failed
        """
        domains = [d.lower() for d in domains if d]
        if not domains:
            raise TLSMaterialMissing("No domains given for certificate")

        if tls is not None and tls.is_complete:
            return await asyncio.to_thread(self._load_explicit, tls, domains)

        existing = await asyncio.to_thread(self._load_existing, domains)
        if existing is not None:
            logger.debug(f"Using existing certificate for {domains[0]}")
            return existing

        try:
            return await asyncio.to_thread(self._generate, domains)
        except (OSError, ValueError) as e:
            raise TLSMaterialMissing(f"Could not generate certificate for {domains[0]}: {e}") from e

    def _load_explicit(self, tls: TlsPaths, domains: List[str]) -> SSLMaterial:
        try:
            key = Path(tls.key_path).read_bytes()
            cert = Path(tls.cert_path).read_bytes()
            ca = Path(tls.ca_path).read_bytes() if tls.ca_path else None
        except OSError as e:
            raise TLSMaterialMissing(f"Cannot read configured certificate files: {e}") from e
        logger.info(f"Using configured certificate {tls.cert_path}")
        return SSLMaterial(
            key=key, cert=cert, ca=ca,
            key_path=tls.key_path, cert_path=tls.cert_path, ca_path=tls.ca_path,
            domains=domains
        )

    def _load_existing(self, domains: List[str]) -> Optional[SSLMaterial]:
        cert_path, key_path, ca_path = self.paths_for(domains[0])
        if not (cert_path.exists() and key_path.exists()):
            return None

        try:
            cert_pem = cert_path.read_bytes()
            cert = x509.load_pem_x509_certificate(cert_pem)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable certificate {cert_path}: {e}")
            return None

        if cert.not_valid_after_utc - RENEW_BEFORE <= datetime.now(timezone.utc):
            logger.info(f"Certificate {cert_path} has expired, regenerating")
            return None

        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        except x509.ExtensionNotFound:
            return None
        covered = set(san.get_values_for_type(x509.DNSName))
        missing = [d for d in domains if d not in covered]
        if missing:
            logger.info(f"Certificate {cert_path} does not cover {missing}, regenerating")
            return None

        return SSLMaterial(
            key=key_path.read_bytes(),
            cert=cert_pem,
            ca=ca_path.read_bytes() if ca_path.exists() else None,
            key_path=str(key_path),
            cert_path=str(cert_path),
            ca_path=str(ca_path) if ca_path.exists() else None,
            domains=domains
        )

    def _load_or_create_ca(self) -> Tuple[rsa.RSAPrivateKey, x509.Certificate]:
        ca_cert_path, ca_key_path = self.ca_paths
        if ca_cert_path.exists() and ca_key_path.exists():
            try:
                ca_cert = x509.load_pem_x509_certificate(ca_cert_path.read_bytes())
                ca_key = serialization.load_pem_private_key(ca_key_path.read_bytes(), password=None)
                if ca_cert.not_valid_after_utc > datetime.now(timezone.utc) + RENEW_BEFORE:
                    return ca_key, ca_cert
            except ValueError as e:
                logger.warning(f"Ignoring unreadable local CA: {e}")

        key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        name = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'localproxy'),
            x509.NameAttribute(NameOID.COMMON_NAME, 'localproxy Local Development CA'),
        ])
        now = datetime.now(timezone.utc)
        ca_cert = x509.CertificateBuilder().subject_name(
            name
        ).issuer_name(
            name
        ).public_key(
            key.public_key()
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            now - timedelta(minutes=5)
        ).not_valid_after(
            now + timedelta(days=CA_VALIDITY_DAYS)
        ).add_extension(
            x509.BasicConstraints(ca=True, path_length=0), critical=True
        ).add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False
            ),
            critical=True
        ).add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        ).sign(key, hashes.SHA256())

        self.cert_dir.mkdir(parents=True, exist_ok=True)
        _write(ca_key_path, _key_pem(key), private=True)
        _write(ca_cert_path, _cert_pem(ca_cert))
        logger.info(f"Created local certificate authority {ca_cert_path}")
        return key, ca_cert

    def _generate(self, domains: List[str]) -> SSLMaterial:
        ca_key, ca_cert = self._load_or_create_ca()
        key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        now = datetime.now(timezone.utc)

        alt_names: List[x509.GeneralName] = [x509.DNSName(n) for n in san_names(domains)]
        alt_names += [
            x509.IPAddress(ipaddress.ip_address('127.0.0.1')),
            x509.IPAddress(ipaddress.ip_address('::1')),
        ]

        cert = x509.CertificateBuilder().subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
        ).issuer_name(
            ca_cert.subject
        ).public_key(
            key.public_key()
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            now - timedelta(minutes=5)
        ).not_valid_after(
            now + timedelta(days=self.validity_days)
        ).add_extension(
            x509.SubjectAlternativeName(alt_names), critical=False
        ).add_extension(
            x509.BasicConstraints(ca=False, path_length=None), critical=True
        ).add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        ).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False
        ).sign(ca_key, hashes.SHA256())

        cert_path, key_path, ca_path = self.paths_for(domains[0])
        key_pem, cert_pem, ca_pem = _key_pem(key), _cert_pem(cert), _cert_pem(ca_cert)
        _write(key_path, key_pem, private=True)
        _write(cert_path, cert_pem)
        _write(ca_path, ca_pem)
        logger.info(f"Generated certificate for {', '.join(domains)} in {self.cert_dir}")

        return SSLMaterial(
            key=key_pem, cert=cert_pem, ca=ca_pem,
            key_path=str(key_path), cert_path=str(cert_path), ca_path=str(ca_path),
            domains=domains
        )

    async def cleanup_certificates(self, domain: str) -> bool:
        """Delete the certificate files for ``domain``; missing files are fine."""
        removed = 0
        for path in self.paths_for(domain):
            try:
                await asyncio.to_thread(path.unlink)
                removed += 1
                logger.debug(f"Deleted {path}")
            except FileNotFoundError:
                continue
        if removed:
            logger.info(f"Removed {removed} certificate file(s) for {domain}")
        return True

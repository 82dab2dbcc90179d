# buda_manager/core/security.py
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtendedKeyUsageOID

from buda_manager.core.errors import ErrorCode, OperationalError, SecurityError

logger = logging.getLogger("buda_manager.core.security")

CLIENT_CERT_HEADER = "X-Buda-Client"


def _ext(cert: x509.Certificate, kind):
    try:
        return cert.extensions.get_extension_for_class(kind).value
    except x509.ExtensionNotFound:
        return None


def _eku_allows_client(cert: x509.Certificate) -> bool:
    eku = _ext(cert, x509.ExtendedKeyUsage)
    if eku is None:
        return True
    return ExtendedKeyUsageOID.CLIENT_AUTH in eku or ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE in eku


def is_ssl_client(cert: x509.Certificate) -> bool:
    """
    Equivalent of `openssl x509 -purpose` reporting "SSL client : Yes".
    """
    if not _eku_allows_client(cert):
        return False
    bc = _ext(cert, x509.BasicConstraints)
    if bc is not None and bc.ca:
        return False
    ku = _ext(cert, x509.KeyUsage)
    if ku is not None and not (ku.digital_signature or ku.key_agreement):
        return False
    return True


def is_ssl_client_ca(cert: x509.Certificate) -> bool:
    """
    Equivalent of "SSL client CA : Yes": the certificate may sign client
    certificates.
    """
    bc = _ext(cert, x509.BasicConstraints)
    if bc is None:
        # v1 certificates carry no extensions; only self-signed ones act as roots
        if cert.version != x509.Version.v1 or cert.issuer != cert.subject:
            return False
    elif not bc.ca:
        return False
    ku = _ext(cert, x509.KeyUsage)
    if ku is not None and not ku.key_cert_sign:
        return False
    return _eku_allows_client(cert)


class SecurityGate:
    """
    Client-certificate check applied to every control-plane request.

    Without a CA the gate is open. With one, the `X-Buda-Client` header must
    carry a base64-encoded PEM certificate that is usable for SSL client
    auth, directly signed by the CA and inside its validity window.
    Purpose and signature results may be cached per fingerprint; the
    validity window is always evaluated against the current time.
    """

    def __init__(
        self,
        ca_cert: Optional[x509.Certificate] = None,
        *,
        timeout_seconds: float = 5.0,
        cache_ttl_seconds: float = 0.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._ca = ca_cert
        self._timeout = timeout_seconds
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._verified: Dict[bytes, float] = {}

    @property
    def secure(self) -> bool:
        return self._ca is not None

    # ---------- startup ---------- #

    @classmethod
    def from_ca_file(cls, path: Optional[str], **kwargs) -> "SecurityGate":
        """
        Loads and checks the CA for secure mode. Any failure here is fatal.
        """
        if not path:
            return cls(None, **kwargs)

        logger.debug("Check CA file exists and is accessible")
        if not os.access(path, os.R_OK):
            raise RuntimeError(f"CA file not readable: {path}")

        logger.debug("Check CA is a valid certificate")
        with open(path, "rb") as f:
            pem = f.read()
        try:
            ca = x509.load_pem_x509_certificate(pem)
        except ValueError as e:
            raise RuntimeError(f"Invalid CA file: {path}") from e
        if not is_ssl_client_ca(ca):
            raise RuntimeError(f"Invalid CA file (not usable as SSL client CA): {path}")

        logger.info("CA loaded for secure mode: %s", ca.subject.rfc4514_string())
        return cls(ca, **kwargs)

    # ---------- per request ---------- #

    async def check(self, header_value: Optional[str]) -> None:
        if not self.secure:
            return
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.validate, header_value or ""),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Client certificate validation timed out after %.1fs", self._timeout)
            raise OperationalError("certificate validation timed out") from e

    def validate(self, header_value: str) -> None:
        """
        Synchronous validation; raises SecurityError with the first
        failing check's code.
        """
        assert self._ca is not None
        cert = self._decode(header_value)
        fingerprint = cert.fingerprint(hashes.SHA256())

        if not self._cached(fingerprint):
            logger.debug("Check an actual client certificate is provided")
            if not is_ssl_client(cert):
                logger.error("Invalid client certificate (purpose)")
                raise SecurityError(ErrorCode.INVALID_CLIENT_CERTIFICATE)

            logger.debug("Check certificate is signed by the configured CA")
            try:
                cert.verify_directly_issued_by(self._ca)
            except (ValueError, TypeError, InvalidSignature):
                logger.error("Unsigned client certificate")
                raise SecurityError(ErrorCode.UNSIGNED_CLIENT_CERTIFICATE)
            self._remember(fingerprint)

        logger.debug("Check certificate dates")
        now = self._clock()
        if cert.not_valid_before_utc > now:
            logger.error("Future client certificate")
            raise SecurityError(ErrorCode.FUTURE_CLIENT_CERTIFICATE)
        if cert.not_valid_after_utc < now:
            logger.error("Expired client certificate")
            raise SecurityError(ErrorCode.EXPIRED_CLIENT_CERTIFICATE)
        logger.debug("Valid client certificate")

    @staticmethod
    def _decode(header_value: str) -> x509.Certificate:
        try:
            pem = base64.b64decode(header_value.encode("ascii"), validate=False)
            return x509.load_pem_x509_certificate(pem)
        except (binascii.Error, UnicodeEncodeError, ValueError):
            logger.error("Invalid client certificate (malformed)")
            raise SecurityError(ErrorCode.INVALID_CLIENT_CERTIFICATE)

    # ---------- cache ---------- #

    def _cached(self, fingerprint: bytes) -> bool:
        if self._cache_ttl <= 0:
            return False
        expires = self._verified.get(fingerprint)
        if expires is None:
            return False
        if expires < time.monotonic():
            self._verified.pop(fingerprint, None)
            return False
        return True

    def _remember(self, fingerprint: bytes) -> None:
        if self._cache_ttl <= 0:
            return
        now = time.monotonic()
        if len(self._verified) > 1024:
            self._verified = {k: v for k, v in self._verified.items() if v >= now}
        self._verified[fingerprint] = now + self._cache_ttl

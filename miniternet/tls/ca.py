# ============================================================================
# miniternet/tls/ca.py
# Certificate Authority and OCSP
# ============================================================================
#
# PURPOSE:
# Fixtures get their certificates from the closed network's own CA, never
# from a public one. Two implementations share one async interface:
#
# - CertificateAuthorityClient: talks to the CA/OCSP service over HTTP
#     POST /sign  {"csr": PEM, "hostname": ..., "state": ...} -> {"certificate": PEM}
#     POST /ocsp  {"certificate": PEM, "status": ...}          -> DER OCSP response
#     GET  /ca.pem                                             -> CA certificate
# - LocalCertificateAuthority: signs in-process with cryptography; its
#   handle_request() is the same HTTP contract as a plain function
#
# CERTIFICATE STATES:
# - valid: signed by the CA for the requested host
# - expired: validity window entirely in the past
# - self_signed: signed by a throwaway key, issuer == subject
# - wrong_host: issued for a different host name
#
# ============================================================================

from __future__ import annotations

import datetime
import json
import logging
from typing import List, Optional, Tuple

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509 import ocsp
from cryptography.x509.oid import AuthorityInformationAccessOID, NameOID

from miniternet.errors import CertIssuanceError, ErrorCode

logger = logging.getLogger(__name__)

CERT_STATES = ("valid", "expired", "self_signed", "wrong_host")
OCSP_STATES = ("good", "revoked", "invalid")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def build_csr(hostname: str) -> Tuple[ec.EllipticCurvePrivateKey, x509.CertificateSigningRequest]:
    """New P-256 key and a CSR for ``hostname`` (CN and SAN)."""
    key = ec.generate_private_key(ec.SECP256R1())
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)]))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return key, csr


def private_key_pem(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def certificate_names(cert: x509.Certificate) -> List[str]:
    """Lower-cased DNS names of a certificate: SAN entries, else the CN."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        names = san.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        names = [a.value for a in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
    return [str(n).lower().rstrip(".") for n in names]


def certificate_matches(cert: x509.Certificate, hostname: str) -> bool:
    return hostname.lower().rstrip(".") in certificate_names(cert)


def _self_signed(common_name: str, key, days: int = 3650, ca: bool = True) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = _utcnow()
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(hours=1))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )


class LocalCertificateAuthority:
    """In-process CA for hosts under ``suffix``."""

    def __init__(self, suffix: str, name: str = "Miniternet Test CA", ocsp_url: Optional[str] = None,
                 validity_days: int = 90):
        self.suffix = suffix.lower().strip(".")
        self.ocsp_url = ocsp_url
        self.validity_days = validity_days
        self._key = ec.generate_private_key(ec.SECP256R1())
        self.certificate = _self_signed(name, self._key)
        self.issued: List[x509.Certificate] = []

    def ca_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def _in_scope(self, hostname: str) -> bool:
        host = hostname.lower().rstrip(".")
        return host == self.suffix or host.endswith("." + self.suffix)

    def sign_csr(self, csr_pem: bytes, hostname: str, state: str = "valid") -> x509.Certificate:
        """Sign ``csr_pem`` for ``hostname``. Raises CertIssuanceError on rejection."""
        if state not in CERT_STATES:
            raise CertIssuanceError(f"Unknown certificate state {state!r}", code=ErrorCode.CERT_CSR_REJECTED)
        try:
            csr = x509.load_pem_x509_csr(csr_pem)
        except ValueError as e:
            raise CertIssuanceError(f"Unparseable CSR for {hostname}: {e}", code=ErrorCode.CERT_CSR_REJECTED) from e
        if not csr.is_signature_valid:
            raise CertIssuanceError(f"CSR for {hostname} has a bad signature", code=ErrorCode.CERT_CSR_REJECTED)
        if not self._in_scope(hostname):
            raise CertIssuanceError(
                f"{hostname} is outside {self.suffix}",
                code=ErrorCode.CERT_CSR_REJECTED,
                details={"hostname": hostname, "suffix": self.suffix},
            )

        host = f"wrong-host.{self.suffix}" if state == "wrong_host" else hostname.lower().rstrip(".")
        now = _utcnow()
        if state == "expired":
            not_before = now - datetime.timedelta(days=self.validity_days + 30)
            not_after = now - datetime.timedelta(days=30)
        else:
            not_before = now - datetime.timedelta(hours=1)
            not_after = now + datetime.timedelta(days=self.validity_days)

        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, host)])
        if state == "self_signed":
            signing_key = ec.generate_private_key(ec.SECP256R1())
            issuer = subject
        else:
            signing_key = self._key
            issuer = self.certificate.subject

        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(host)]), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        )
        if self.ocsp_url and state != "self_signed":
            builder = builder.add_extension(
                x509.AuthorityInformationAccess([
                    x509.AccessDescription(AuthorityInformationAccessOID.OCSP,
                                           x509.UniformResourceIdentifier(self.ocsp_url)),
                ]),
                critical=False,
            )
        cert = builder.sign(signing_key, hashes.SHA256())
        self.issued.append(cert)
        logger.info(f"[CA] Issued {state} certificate for {host} (serial {cert.serial_number:x})")
        return cert

    def ocsp_response(self, cert: x509.Certificate, status: str) -> bytes:
        """
        DER OCSP response for ``cert``. ``invalid`` is signed by a key that
        is not the CA's.
        """
        if status not in OCSP_STATES:
            raise CertIssuanceError(f"Unknown OCSP status {status!r}", code=ErrorCode.CERT_CSR_REJECTED)
        now = _utcnow()
        revoked = status == "revoked"
        responder_cert, responder_key = self.certificate, self._key
        if status == "invalid":
            responder_key = ec.generate_private_key(ec.SECP256R1())
            responder_cert = _self_signed("Miniternet Rogue Responder", responder_key, days=30, ca=False)
        builder = ocsp.OCSPResponseBuilder().add_response(
            cert=cert,
            issuer=self.certificate,
            algorithm=hashes.SHA256(),
            cert_status=ocsp.OCSPCertStatus.REVOKED if revoked else ocsp.OCSPCertStatus.GOOD,
            this_update=now,
            next_update=now + datetime.timedelta(days=1),
            revocation_time=now - datetime.timedelta(hours=1) if revoked else None,
            revocation_reason=x509.ReasonFlags.key_compromise if revoked else None,
        ).responder_id(ocsp.OCSPResponderEncoding.HASH, responder_cert)
        response = builder.sign(responder_key, hashes.SHA256())
        return response.public_bytes(serialization.Encoding.DER)

    # Same interface as CertificateAuthorityClient

    async def issue(self, csr_pem: bytes, hostname: str, state: str = "valid") -> bytes:
        return self.sign_csr(csr_pem, hostname, state).public_bytes(serialization.Encoding.PEM)

    async def ocsp(self, cert_pem: bytes, status: str) -> bytes:
        return self.ocsp_response(x509.load_pem_x509_certificate(cert_pem), status)

    async def ca_certificate(self) -> bytes:
        return self.ca_pem()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        """The CA's HTTP contract, usable as an httpx.MockTransport handler."""
        if request.method == "GET" and request.url.path.endswith("/ca.pem"):
            return httpx.Response(200, content=self.ca_pem())
        if request.method != "POST":
            return httpx.Response(405)
        try:
            body = json.loads(request.content or b"{}")
        except json.JSONDecodeError:
            return httpx.Response(400, json={"error": "invalid JSON"})
        try:
            if request.url.path.endswith("/sign"):
                cert = self.sign_csr(body["csr"].encode(), body["hostname"], body.get("state", "valid"))
                return httpx.Response(200, json={
                    "certificate": cert.public_bytes(serialization.Encoding.PEM).decode()
                })
            if request.url.path.endswith("/ocsp"):
                cert = x509.load_pem_x509_certificate(body["certificate"].encode())
                return httpx.Response(200, content=self.ocsp_response(cert, body["status"]),
                                      headers={"content-type": "application/ocsp-response"})
        except KeyError as e:
            return httpx.Response(400, json={"error": f"missing field {e}"})
        except CertIssuanceError as e:
            return httpx.Response(422, json=e.to_dict())
        return httpx.Response(404)


class CertificateAuthorityClient:
    """HTTP client for the CA/OCSP service."""

    def __init__(self, base_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: dict, hostname: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                         transport=self.transport) as client:
                response = await client.post(path, json=payload)
        except httpx.TransportError as e:
            raise CertIssuanceError(
                f"CA at {self.base_url} unreachable for {hostname}: {type(e).__name__}: {e}",
                code=ErrorCode.CERT_CA_UNREACHABLE,
                details={"ca_url": self.base_url, "hostname": hostname},
            ) from e
        if response.status_code >= 500:
            raise CertIssuanceError(
                f"CA at {self.base_url} failed for {hostname}: HTTP {response.status_code}",
                code=ErrorCode.CERT_CA_UNREACHABLE,
                details={"ca_url": self.base_url, "hostname": hostname, "status": response.status_code},
            )
        if response.status_code >= 400:
            raise CertIssuanceError(
                f"CA rejected request for {hostname}: HTTP {response.status_code} {response.text[:200]}",
                code=ErrorCode.CERT_CSR_REJECTED,
                details={"hostname": hostname, "status": response.status_code},
            )
        return response

    async def issue(self, csr_pem: bytes, hostname: str, state: str = "valid") -> bytes:
        response = await self._post("/sign", {
            "csr": csr_pem.decode(), "hostname": hostname, "state": state,
        }, hostname)
        try:
            return response.json()["certificate"].encode()
        except (ValueError, KeyError) as e:
            raise CertIssuanceError(
                f"CA answered without a certificate for {hostname}",
                code=ErrorCode.CERT_CSR_REJECTED,
                details={"hostname": hostname},
            ) from e

    async def ocsp(self, cert_pem: bytes, status: str) -> bytes:
        response = await self._post("/ocsp", {"certificate": cert_pem.decode(), "status": status}, "ocsp")
        return response.content

    async def ca_certificate(self) -> bytes:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                         transport=self.transport) as client:
                response = await client.get("/ca.pem")
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise CertIssuanceError(
                f"Could not fetch CA certificate from {self.base_url}: {e}",
                code=ErrorCode.CERT_CA_UNREACHABLE,
            ) from e
        return response.content

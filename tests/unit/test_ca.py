import datetime

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509 import ocsp

from miniternet.errors import CertIssuanceError, ErrorCode
from miniternet.tls.ca import (
    CertificateAuthorityClient,
    LocalCertificateAuthority,
    build_csr,
    certificate_matches,
)

HOST = "tls13only.test.nlnetlabs.tk"


def _csr_pem(hostname=HOST):
    _, csr = build_csr(hostname)
    return csr.public_bytes(serialization.Encoding.PEM)


@pytest.fixture
def ca():
    return LocalCertificateAuthority("test.nlnetlabs.tk", ocsp_url="http://ca_ocsp/ocsp")


def test_valid_certificate_is_signed_by_ca(ca):
    cert = ca.sign_csr(_csr_pem(), HOST)
    assert certificate_matches(cert, HOST)
    assert cert.issuer == ca.certificate.subject
    cert.verify_directly_issued_by(ca.certificate)
    aia = cert.extensions.get_extension_for_class(x509.AuthorityInformationAccess)
    assert aia.value[0].access_location.value == "http://ca_ocsp/ocsp"


@pytest.mark.parametrize("state", ["expired", "self_signed", "wrong_host"])
def test_broken_certificate_states(ca, state):
    cert = ca.sign_csr(_csr_pem(), HOST, state=state)
    now = datetime.datetime.now(datetime.timezone.utc)
    if state == "expired":
        assert cert.not_valid_after_utc < now
        assert certificate_matches(cert, HOST)
    elif state == "self_signed":
        assert cert.issuer == cert.subject
        assert cert.issuer != ca.certificate.subject
    else:
        assert not certificate_matches(cert, HOST)


def test_rejections(ca):
    with pytest.raises(CertIssuanceError) as excinfo:
        ca.sign_csr(_csr_pem("www.example.org"), "www.example.org")
    assert excinfo.value.code is ErrorCode.CERT_CSR_REJECTED
    with pytest.raises(CertIssuanceError):
        ca.sign_csr(b"not a csr", HOST)
    with pytest.raises(CertIssuanceError):
        ca.sign_csr(_csr_pem(), HOST, state="weird")


@pytest.mark.parametrize("status,expected", [
    ("good", ocsp.OCSPCertStatus.GOOD),
    ("revoked", ocsp.OCSPCertStatus.REVOKED),
])
def test_ocsp_responses(ca, status, expected):
    cert = ca.sign_csr(_csr_pem(), HOST)
    response = ocsp.load_der_ocsp_response(ca.ocsp_response(cert, status))
    assert response.response_status is ocsp.OCSPResponseStatus.SUCCESSFUL
    assert response.certificate_status is expected
    assert response.serial_number == cert.serial_number


def test_invalid_ocsp_is_not_signed_by_ca(ca):
    cert = ca.sign_csr(_csr_pem(), HOST)
    good = ocsp.load_der_ocsp_response(ca.ocsp_response(cert, "good"))
    invalid = ocsp.load_der_ocsp_response(ca.ocsp_response(cert, "invalid"))
    assert invalid.responder_key_hash != good.responder_key_hash


@pytest.mark.asyncio
async def test_client_against_local_ca_transport(ca):
    client = CertificateAuthorityClient("http://ca_ocsp", transport=httpx.MockTransport(ca.handle_request))

    pem = await client.issue(_csr_pem(), HOST)
    cert = x509.load_pem_x509_certificate(pem)
    assert certificate_matches(cert, HOST)

    der = await client.ocsp(pem, "good")
    assert ocsp.load_der_ocsp_response(der).certificate_status is ocsp.OCSPCertStatus.GOOD

    assert await client.ca_certificate() == ca.ca_pem()

    with pytest.raises(CertIssuanceError) as excinfo:
        await client.issue(_csr_pem("evil.example"), "evil.example")
    assert excinfo.value.code is ErrorCode.CERT_CSR_REJECTED


@pytest.mark.asyncio
async def test_client_reports_unreachable_ca():
    def down(request):
        raise httpx.ConnectError("connection refused", request=request)

    def broken(request):
        return httpx.Response(503)

    for handler in (down, broken):
        client = CertificateAuthorityClient("http://ca_ocsp", transport=httpx.MockTransport(handler))
        with pytest.raises(CertIssuanceError) as excinfo:
            await client.issue(_csr_pem(), HOST)
        assert excinfo.value.code is ErrorCode.CERT_CA_UNREACHABLE


@pytest.mark.asyncio
async def test_local_ca_async_interface(ca):
    pem = await ca.issue(_csr_pem(), HOST, "valid")
    assert b"BEGIN CERTIFICATE" in pem
    assert await ca.ca_certificate() == ca.ca_pem()
    assert await ca.ocsp(pem, "revoked")

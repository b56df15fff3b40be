"""
miniternet/tls/server_config.py
Renders a fixture profile into web server configuration.

Fixture servers are plain Apache httpd with mod_ssl; everything that makes
one fixture differ from the next is in the directives written here, next to
the fixture's key, certificate and stapled OCSP response.
"""

import logging
from pathlib import Path
from typing import Dict, List, TYPE_CHECKING

if TYPE_CHECKING:
    from miniternet.tls.matrix import TargetFixture

logger = logging.getLogger(__name__)

# mod_ssl protocol names
_PROTOCOL_NAMES: Dict[str, str] = {
    "SSLv2": "SSLv2",
    "SSLv3": "SSLv3",
    "TLSv1": "TLSv1",
    "TLSv1.1": "TLSv1.1",
    "TLSv1.2": "TLSv1.2",
    "TLSv1.3": "TLSv1.3",
}


def _listen_lines(fixture: "TargetFixture", port: int) -> List[str]:
    lines = []
    if fixture.addresses.ipv4:
        lines.append(f"Listen {fixture.addresses.ipv4}:{port}")
    if fixture.addresses.ipv6:
        lines.append(f"Listen [{fixture.addresses.ipv6}]:{port}")
    return lines


def _vhost_addresses(fixture: "TargetFixture", port: int) -> str:
    parts = []
    if fixture.addresses.ipv4:
        parts.append(f"{fixture.addresses.ipv4}:{port}")
    if fixture.addresses.ipv6:
        parts.append(f"[{fixture.addresses.ipv6}]:{port}")
    return " ".join(parts)


def render(fixture: "TargetFixture", directory: Path) -> str:
    """Apache configuration for one fixture."""
    profile = fixture.profile
    lines = [f"# {profile.name}: {profile.description or 'generated fixture'}"]
    lines += _listen_lines(fixture, 80)
    lines += [
        f"<VirtualHost {_vhost_addresses(fixture, 80)}>",
        f"    ServerName {fixture.hostname}",
        "    DocumentRoot /var/www/html",
        "</VirtualHost>",
    ]
    if not profile.tls:
        return "\n".join(lines) + "\n"

    protocols = " ".join(f"+{_PROTOCOL_NAMES[p]}" for p in profile.protocols)
    lines += [""] + _listen_lines(fixture, 443)
    lines += [
        f"<VirtualHost {_vhost_addresses(fixture, 443)}>",
        f"    ServerName {fixture.hostname}",
        "    DocumentRoot /var/www/html",
        "    SSLEngine on",
        f"    SSLCertificateFile {directory / f'{profile.name}.crt'}",
        f"    SSLCertificateKeyFile {directory / f'{profile.name}.key'}",
        f"    SSLProtocol -all {protocols}",
        f"    SSLHonorCipherOrder {'on' if profile.honor_cipher_order else 'off'}",
        f"    SSLCompression {'on' if profile.compression else 'off'}",
        f"    SSLInsecureRenegotiation {'on' if profile.insecure_renegotiation else 'off'}",
    ]
    if profile.ciphers:
        lines.append(f"    SSLCipherSuite {profile.ciphers}")
    if profile.ciphersuites:
        lines.append(f"    SSLCipherSuite TLSv1.3 {profile.ciphersuites}")
    if profile.early_data:
        lines.append("    SSLOpenSSLConfCmd MaxEarlyData 16384")
    if profile.ocsp != "none":
        lines += [
            "    SSLUseStapling on",
            "    SSLStaplingStandardCacheTimeout 3600",
            "    SSLStaplingReturnResponderErrors on",
        ]
    lines.append("</VirtualHost>")
    return "\n".join(lines) + "\n"


def write(fixture: "TargetFixture", directory: Path) -> Path:
    """Write configuration, key, certificate and OCSP staple. Returns the .conf path."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    name = fixture.profile.name
    if fixture.key_pem:
        key_path = directory / f"{name}.key"
        key_path.write_bytes(fixture.key_pem)
        key_path.chmod(0o600)
    if fixture.certificate_pem:
        (directory / f"{name}.crt").write_bytes(fixture.certificate_pem)
    if fixture.ocsp_response:
        (directory / f"{name}.ocsp").write_bytes(fixture.ocsp_response)
    conf = directory / f"{name}.conf"
    conf.write_text(render(fixture, directory))
    logger.debug(f"[TLSMatrix] Wrote {conf}")
    return conf

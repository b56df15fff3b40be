"""
miniternet/tls/profiles.py
Declarative TLS fixture profiles.

A profile says what one target server must look like on the wire: which
protocol versions it speaks, which ciphers it offers and in what order,
what its certificate and OCSP staple look like, and how it is reachable
(same or different IPv4/IPv6 host parts, or IPv4 only). The default matrix
covers one behaviour per fixture.
"""

import json
import re
from pathlib import Path
from typing import Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from miniternet.errors import ConfigurationError, ErrorCode

Protocol = Literal["SSLv2", "SSLv3", "TLSv1", "TLSv1.1", "TLSv1.2", "TLSv1.3"]
CertState = Literal["valid", "expired", "self_signed", "wrong_host"]
OcspState = Literal["none", "good", "revoked", "invalid"]
DualStack = Literal["same", "divergent", "ipv4_only"]

_NAME = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")


class FixtureProfile(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    description: str = ""
    protocols: List[Protocol] = Field(default_factory=list)
    # OpenSSL cipher list for TLS <= 1.2
    ciphers: Optional[str] = None
    # TLS 1.3 cipher suites
    ciphersuites: Optional[str] = None
    honor_cipher_order: bool = True
    insecure_renegotiation: bool = False
    compression: bool = False
    early_data: bool = False
    certificate: CertState = "valid"
    ocsp: OcspState = "none"
    dual_stack: DualStack = "same"
    tags: List[str] = Field(default_factory=list)
    # CSS selector on the results page -> text it must contain
    expect: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME.match(value):
            raise ValueError(f"profile name must be a lowercase DNS label, got {value!r}")
        return value

    @field_validator("protocols")
    @classmethod
    def _unique_protocols(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("protocols must not repeat")
        return value

    @model_validator(mode="after")
    def _consistent(self) -> "FixtureProfile":
        if not self.protocols:
            if self.ocsp != "none" or self.ciphers or self.ciphersuites or self.early_data:
                raise ValueError("a plain-HTTP profile cannot set TLS options")
        if (self.early_data or self.ciphersuites) and "TLSv1.3" not in self.protocols:
            raise ValueError("early_data and ciphersuites need TLSv1.3")
        return self

    @property
    def tls(self) -> bool:
        return bool(self.protocols)

    @property
    def all_tags(self) -> List[str]:
        tags = list(self.tags)
        tags.append("tls" if self.tls else "plain")
        if self.ocsp != "none":
            tags.append("ocsp")
        if self.dual_stack != "same":
            tags.append("dualstack")
        return tags


def _profile(name: str, protocols: Sequence[str] = (), **kwargs) -> FixtureProfile:
    return FixtureProfile(name=name, protocols=list(protocols), **kwargs)


LEGACY_BAD_CIPHERS = "EXP:NULL:RC4:DES:!3DES"
MODERN_BAD_CIPHERS = "aNULL:eNULL:@SECLEVEL=0"
LEGACY_PHASEOUT_CIPHERS = "DES-CBC3-SHA:ECDHE-RSA-DES-CBC3-SHA"
MODERN_PHASEOUT_CIPHERS = "AES128-SHA:AES256-SHA:AES128-SHA256:AES256-SHA256"

DEFAULT_MATRIX: List[FixtureProfile] = [
    _profile("nossl", description="Plain HTTP only", expect={"#tls": "not reachable"}),
    _profile("ssl2only", ["SSLv2"], expect={"#tls-versions": "SSL 2.0"}),
    _profile("ssl3only", ["SSLv3"], expect={"#tls-versions": "SSL 3.0"}),
    _profile("tls10only", ["TLSv1"], expect={"#tls-versions": "TLS 1.0"}),
    _profile("tls10onlyclientcipherorder", ["TLSv1"], honor_cipher_order=False,
             expect={"#tls-cipher-order": "not enforced"}),
    _profile("tls10onlyinsecurereneg", ["TLSv1"], insecure_renegotiation=True,
             expect={"#tls-renegotiation": "insecure"}),
    _profile("tls11only", ["TLSv1.1"], expect={"#tls-versions": "TLS 1.1"}),
    _profile("tls1011", ["TLSv1", "TLSv1.1"], expect={"#tls-versions": "TLS 1.0"}),
    _profile("tls1112", ["TLSv1.1", "TLSv1.2"], expect={"#tls-versions": "TLS 1.1"}),
    _profile("tls12only", ["TLSv1.2"], expect={"#tls-versions": "TLS 1.2"}),
    _profile("tls12onlylegacybadciphers", ["TLSv1.2"], ciphers=LEGACY_BAD_CIPHERS,
             expect={"#tls-ciphers": "insufficient"}),
    _profile("tls12onlymodernbadciphers", ["TLSv1.2"], ciphers=MODERN_BAD_CIPHERS,
             expect={"#tls-ciphers": "insufficient"}),
    _profile("tls12onlylegacyphaseoutciphers", ["TLSv1.2"], ciphers=LEGACY_PHASEOUT_CIPHERS,
             expect={"#tls-ciphers": "phase out"}),
    _profile("tls12onlymodernphaseoutciphers", ["TLSv1.2"], ciphers=MODERN_PHASEOUT_CIPHERS,
             expect={"#tls-ciphers": "phase out"}),
    _profile("tls1213", ["TLSv1.2", "TLSv1.3"], expect={"#tls-versions": "TLS 1.3"}),
    _profile("tls1213tlscompression", ["TLSv1.2", "TLSv1.3"], compression=True,
             expect={"#tls-compression": "enabled"}),
    _profile("tls13only", ["TLSv1.3"], ocsp="good", expect={"#tls-versions": "TLS 1.3"}),
    _profile("tls130rtt", ["TLSv1.3"], early_data=True, expect={"#tls-0rtt": "enabled"}),
    _profile("tls13invalidocsp", ["TLSv1.3"], ocsp="invalid", expect={"#tls-ocsp": "invalid"}),
    _profile("tls13onlyclientcipherorder", ["TLSv1.3"], honor_cipher_order=False,
             expect={"#tls-versions": "TLS 1.3"}),
    _profile("tls13onlydiffipv4ipv6", ["TLSv1.3"], dual_stack="divergent",
             expect={"#ipv6-web-same": "differ"}),
    _profile("tls13onlyipv4only", ["TLSv1.3"], dual_stack="ipv4_only",
             expect={"#ipv6-web": "no AAAA"}),
]


def load_profiles(path, base: Optional[Sequence[FixtureProfile]] = None) -> List[FixtureProfile]:
    """
    Read profiles from a JSON file.

    The file holds either a list of profiles (added to ``base``) or an object
    ``{"replace": true, "profiles": [...]}`` that replaces ``base`` entirely.
    A profile whose name already exists in ``base`` overrides it.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        raise ConfigurationError(
            f"Fixture profile file not found: {path}", code=ErrorCode.CONFIG_FILE_NOT_FOUND
        ) from None
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Fixture profile file {path} is not valid JSON: {e}", code=ErrorCode.CONFIG_PARSE_ERROR
        ) from e

    replace = False
    if isinstance(data, dict):
        replace = bool(data.get("replace", False))
        data = data.get("profiles", [])
    if not isinstance(data, list):
        raise ConfigurationError(f"{path}: expected a list of profiles", code=ErrorCode.CONFIG_PARSE_ERROR)

    try:
        loaded = [FixtureProfile.model_validate(item) for item in data]
    except ValidationError as e:
        raise ConfigurationError(
            f"{path}: invalid fixture profile: {e.error_count()} error(s)",
            code=ErrorCode.CONFIG_PARSE_ERROR,
            details={"errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]},
        ) from e

    merged: Dict[str, FixtureProfile] = {} if replace else {p.name: p for p in (base or DEFAULT_MATRIX)}
    seen = set()
    for profile in loaded:
        if profile.name in seen:
            raise ConfigurationError(f"{path}: profile {profile.name!r} defined twice")
        seen.add(profile.name)
        merged[profile.name] = profile
    return list(merged.values())

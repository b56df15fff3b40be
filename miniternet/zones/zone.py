"""
miniternet/zones/zone.py
Zone bookkeeping for the DNSSEC chain: states, key material, delegations.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

import dns.dnssec
import dns.name
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset
from cryptography.hazmat.primitives.asymmetric import ed25519

from miniternet.errors import TestbedError
from miniternet.net.allocator import AddressPair

# Combined signing key: ZONE | SEP
KSK_FLAGS = 257
DS_DIGEST = "SHA256"


class ZoneState(IntEnum):
    """Ordered so ``state >= ZoneState.DELEGATED`` reads naturally."""
    FAILED = -1
    UNSIGNED = 0
    KEY_GENERATED = 1
    PUBLISHED = 2
    DELEGATED = 3
    VERIFIED = 4


def to_name(value) -> dns.name.Name:
    if isinstance(value, dns.name.Name):
        return value
    text = str(value)
    return dns.name.from_text(text if text.endswith(".") else text + ".")


@dataclass(frozen=True)
class ZoneKey:
    """An Ed25519 (algorithm 15) key plus its DNSKEY rdata."""
    private_key: ed25519.Ed25519PrivateKey
    dnskey: dns.rdata.Rdata

    @classmethod
    def generate(cls) -> "ZoneKey":
        private_key = ed25519.Ed25519PrivateKey.generate()
        dnskey = dns.dnssec.make_dnskey(
            private_key.public_key(), dns.dnssec.Algorithm.ED25519, flags=KSK_FLAGS
        )
        return cls(private_key=private_key, dnskey=dnskey)

    @property
    def key_tag(self) -> int:
        return dns.dnssec.key_id(self.dnskey)

    def ds(self, zone) -> dns.rdata.Rdata:
        return dns.dnssec.make_ds(to_name(zone), self.dnskey, DS_DIGEST)


@dataclass(frozen=True)
class NameServer:
    """One server authoritative for a zone: its host name and addresses."""
    hostname: dns.name.Name
    addresses: AddressPair

    def glue(self, ttl: int) -> List[dns.rrset.RRset]:
        rrsets = []
        if self.addresses.ipv4:
            rrsets.append(dns.rrset.from_text(self.hostname, ttl, "IN", "A", self.addresses.ipv4))
        if self.addresses.ipv6:
            rrsets.append(dns.rrset.from_text(self.hostname, ttl, "IN", "AAAA", self.addresses.ipv6))
        return rrsets


@dataclass
class Delegation:
    """What a parent publishes for one child: NS, glue and DS."""
    child: dns.name.Name
    nameservers: Tuple[NameServer, ...]
    ds: dns.rdata.Rdata

    @property
    def fingerprint(self) -> Tuple[int, Tuple[str, ...]]:
        return (self.ds.key_tag, tuple(sorted(ns.hostname.to_text() for ns in self.nameservers)))


@dataclass
class ZoneRecord:
    """
    One zone of the chain.

    ``delegation`` is the delegation the parent has acknowledged, if any;
    ``children`` the delegations this zone currently carries for its children.
    """
    name: dns.name.Name
    parent: Optional[dns.name.Name]
    primary: NameServer
    secondaries: List[NameServer] = field(default_factory=list)
    synced_secondaries: List[NameServer] = field(default_factory=list)
    key: Optional[ZoneKey] = None
    delegation: Optional[Delegation] = None
    children: Dict[dns.name.Name, Delegation] = field(default_factory=dict)
    hosts: Dict[dns.name.Name, AddressPair] = field(default_factory=dict)
    state: ZoneState = ZoneState.UNSIGNED
    error: Optional[TestbedError] = None
    changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def label(self) -> str:
        return self.name.to_text()

    def serving(self) -> Tuple[NameServer, ...]:
        """Servers that may be listed in NS sets: the primary plus synced secondaries."""
        return (self.primary, *self.synced_secondaries)

    def ds(self) -> dns.rdata.Rdata:
        if self.key is None:
            raise ValueError(f"zone {self.label} has no key")
        return self.key.ds(self.name)

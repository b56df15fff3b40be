"""
miniternet/zones/verifier.py
Validating resolution through the closed network's chain of trust.

Resolution starts at the root servers with the exported trust anchor (the
root DS) and follows referrals down. At every hop the zone's DNSKEY RRset
must match the DS the parent vouched for and carry a valid self-signature,
and every DS handed over in a referral must validate under the parent's
keys. Every listed server of a zone is asked for its DNSKEYs, so a
secondary that serves stale data fails the walk too.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import dns.dnssec
import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from miniternet.errors import ChainVerificationError
from miniternet.net.allocator import AddressPair
from miniternet.zones.transport import Transport
from miniternet.zones.zone import to_name

logger = logging.getLogger(__name__)

MAX_REFERRALS = 16


@dataclass
class ValidatedAnswer:
    qname: dns.name.Name
    rdtype: int
    rcode: int
    rrset: Optional[dns.rrset.RRset]
    # Zones walked from the root to the one that answered
    path: List[dns.name.Name] = field(default_factory=list)

    @property
    def addresses(self) -> List[str]:
        return sorted(rdata.address for rdata in self.rrset) if self.rrset is not None else []


class ChainVerifier:
    """Resolves names from the root trust anchor, validating every hop."""

    def __init__(
        self,
        transport: Transport,
        trust_anchor: dns.rrset.RRset,
        root_servers: Sequence[AddressPair],
        family: int = 4,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.trust_anchor = trust_anchor
        self.root_servers = list(root_servers)
        self.family = family
        self.timeout = timeout
        self.clock = clock

    def _addresses(self, pairs: Sequence[AddressPair]) -> List[str]:
        addresses = [p.for_family(self.family) for p in pairs]
        return [a for a in addresses if a]

    async def _ask(self, address: str, qname: dns.name.Name, rdtype) -> dns.message.Message:
        query = dns.message.make_query(qname, rdtype, want_dnssec=True)
        query.flags &= ~dns.flags.RD
        try:
            return await self.transport.query(address, query, self.timeout)
        except (dns.exception.DNSException, OSError) as e:
            raise ChainVerificationError(
                f"No answer from {address} for {qname} {dns.rdatatype.to_text(rdtype)}: {e}",
                details={"server": address, "qname": qname.to_text()},
            ) from e

    def _validate(self, rrset, sigs, zone: dns.name.Name, keys: dns.rrset.RRset, what: str) -> None:
        if sigs is None:
            raise ChainVerificationError(
                f"{what} is unsigned", details={"zone": zone.to_text(), "name": rrset.name.to_text()}
            )
        try:
            dns.dnssec.validate(rrset, sigs, {zone: keys}, now=self.clock())
        except dns.dnssec.ValidationFailure as e:
            raise ChainVerificationError(
                f"{what} failed validation: {e}",
                details={"zone": zone.to_text(), "name": rrset.name.to_text()},
            ) from e

    async def _zone_keys(self, zone: dns.name.Name, servers: List[str],
                         ds_rrset: dns.rrset.RRset) -> dns.rrset.RRset:
        """DNSKEYs of ``zone`` that match ``ds_rrset``, checked on every server."""
        if not servers:
            raise ChainVerificationError(
                f"No {'IPv4' if self.family == 4 else 'IPv6'} servers for {zone}",
                details={"zone": zone.to_text()},
            )
        trusted: Optional[dns.rrset.RRset] = None
        for address in servers:
            response = await self._ask(address, zone, dns.rdatatype.DNSKEY)
            dnskeys = response.get_rrset(response.answer, zone, dns.rdataclass.IN, dns.rdatatype.DNSKEY)
            sigs = response.get_rrset(response.answer, zone, dns.rdataclass.IN,
                                      dns.rdatatype.RRSIG, dns.rdatatype.DNSKEY)
            if dnskeys is None:
                raise ChainVerificationError(
                    f"{address} returned no DNSKEY for {zone}",
                    details={"zone": zone.to_text(), "server": address},
                )
            matching = [
                key for key in dnskeys
                if any(dns.dnssec.make_ds(zone, key, ds.digest_type) == ds for ds in ds_rrset)
            ]
            if not matching:
                raise ChainVerificationError(
                    f"No DNSKEY of {zone} on {address} matches the DS published by its parent",
                    details={"zone": zone.to_text(), "server": address,
                             "ds_key_tags": sorted(ds.key_tag for ds in ds_rrset)},
                )
            keys = dns.rrset.from_rdata_list(zone, dnskeys.ttl, matching)
            self._validate(dnskeys, sigs, zone, keys, f"DNSKEY of {zone} on {address}")
            trusted = keys if trusted is None else trusted
        return trusted

    async def resolve(self, qname, rdtype="A") -> ValidatedAnswer:
        """
        Resolve ``qname``/``rdtype`` with full validation.

        Raises ChainVerificationError when any hop fails to validate. A name
        without data of that type comes back with ``rrset`` None.
        """
        qname = to_name(qname)
        rdtype = dns.rdatatype.RdataType.make(rdtype)
        zone = dns.name.root
        ds_rrset = self.trust_anchor
        servers = self._addresses(self.root_servers)
        path: List[dns.name.Name] = []

        for _ in range(MAX_REFERRALS):
            keys = await self._zone_keys(zone, servers, ds_rrset)
            path.append(zone)
            response = await self._ask(servers[0], qname, rdtype)

            referral = self._referral_ns(response, zone)
            if referral is not None:
                child = referral.name
                ds = response.get_rrset(response.authority, child, dns.rdataclass.IN, dns.rdatatype.DS)
                if ds is None:
                    raise ChainVerificationError(
                        f"Delegation of {child} from {zone} has no DS",
                        details={"zone": zone.to_text(), "child": child.to_text()},
                    )
                ds_sigs = response.get_rrset(response.authority, child, dns.rdataclass.IN,
                                             dns.rdatatype.RRSIG, dns.rdatatype.DS)
                self._validate(ds, ds_sigs, zone, keys, f"DS of {child}")
                servers = self._glue(response, referral)
                zone, ds_rrset = child, ds
                logger.debug(f"[ChainVerifier] {qname}: referred to {child}")
                continue

            rcode = response.rcode()
            if rcode not in (dns.rcode.NOERROR, dns.rcode.NXDOMAIN):
                raise ChainVerificationError(
                    f"{zone} answered {dns.rcode.to_text(rcode)} for {qname}",
                    details={"zone": zone.to_text(), "qname": qname.to_text()},
                )
            answer = response.get_rrset(response.answer, qname, dns.rdataclass.IN, rdtype)
            if answer is not None:
                sigs = response.get_rrset(response.answer, qname, dns.rdataclass.IN,
                                          dns.rdatatype.RRSIG, rdtype)
                self._validate(answer, sigs, zone, keys, f"{qname} {dns.rdatatype.to_text(rdtype)}")
            return ValidatedAnswer(qname=qname, rdtype=rdtype, rcode=rcode, rrset=answer, path=path)

        raise ChainVerificationError(f"Too many referrals resolving {qname}", details={"qname": qname.to_text()})

    def _referral_ns(self, response: dns.message.Message, zone: dns.name.Name):
        if response.answer or response.flags & dns.flags.AA:
            return None
        for rrset in response.authority:
            if rrset.rdtype == dns.rdatatype.NS and rrset.name != zone and rrset.name.is_subdomain(zone):
                return rrset
        return None

    def _glue(self, response: dns.message.Message, ns_rrset) -> List[str]:
        rdtype = dns.rdatatype.A if self.family == 4 else dns.rdatatype.AAAA
        addresses = []
        for ns in ns_rrset:
            glue = response.get_rrset(response.additional, ns.target, dns.rdataclass.IN, rdtype)
            if glue is not None:
                addresses.extend(rdata.address for rdata in glue)
        return addresses

    async def zone_keys(self, zone) -> dns.rrset.RRset:
        """The validated DNSKEYs of ``zone``, found by walking from the root."""
        zone = to_name(zone)
        if zone == dns.name.root:
            return await self._zone_keys(zone, self._addresses(self.root_servers), self.trust_anchor)
        answer = await self.resolve(zone, dns.rdatatype.DNSKEY)
        if answer.rrset is None:
            raise ChainVerificationError(f"{zone} has no DNSKEY", details={"zone": zone.to_text()})
        return answer.rrset

    async def check_signature(self, zone, rrset: dns.rrset.RRset, sigs: Optional[dns.rrset.RRset]) -> None:
        """
        Validate a signature captured earlier against the zone's current keys.

        Raises ChainVerificationError for signatures made with a key the zone
        no longer publishes.
        """
        zone = to_name(zone)
        keys = await self.zone_keys(zone)
        self._validate(rrset, sigs, zone, keys, f"{rrset.name} {dns.rdatatype.to_text(rrset.rdtype)}")


def trust_anchor_text(anchor: dns.rrset.RRset) -> str:
    """The anchor in unbound ``root.key`` (DS) form."""
    return anchor.to_text() + "\n"


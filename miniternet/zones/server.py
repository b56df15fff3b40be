# ============================================================================
# miniternet/zones/server.py
# In-process Authoritative Name Servers
# ============================================================================
#
# PURPOSE:
# Serves the signed zones of the closed network. A primary holds the zone
# data and the zone key, signs every authoritative RRset, answers queries,
# hands out referrals below delegation points, applies RFC 2136 dynamic
# updates (how children push NS + DS into their parent) and offers the whole
# zone over AXFR. A secondary copies its primary over SOA + AXFR and serves
# the primary's signatures verbatim.
#
# KEY CONCEPTS:
# - **Delegation point**: a name below the apex carrying NS; everything at or
#   under it is the child's, except the DS RRset, which the parent signs
# - **Acknowledged update**: NOERROR is only returned once the change is
#   applied and re-signed; an update that changes nothing leaves the serial
#   alone
#
# ============================================================================

from __future__ import annotations

import asyncio
import logging
import struct
import threading
from typing import Dict, Iterable, List, Optional, Tuple

import dns.dnssec
import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.opcode
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from miniternet.errors import DNSSECPublicationError, ErrorCode
from miniternet.zones.zone import ZoneKey, to_name

logger = logging.getLogger(__name__)

RRKey = Tuple[dns.name.Name, int]

# SOA timers: refresh, retry, expire
SOA_TIMERS = (3600, 900, 604800)


class ZoneData:
    """RRsets and their signatures for one zone, plus query answering."""

    def __init__(self, origin, name: str = "server"):
        self.origin = to_name(origin)
        self.name = name
        self._rrsets: Dict[RRKey, dns.rrset.RRset] = {}
        self._sigs: Dict[RRKey, dns.rrset.RRset] = {}
        self._lock = threading.RLock()

    @property
    def serial(self) -> int:
        soa = self._rrsets.get((self.origin, dns.rdatatype.SOA))
        return soa[0].serial if soa else 0

    def rrset(self, name, rdtype) -> Optional[dns.rrset.RRset]:
        with self._lock:
            return self._rrsets.get((to_name(name), dns.rdatatype.RdataType.make(rdtype)))

    def signature(self, name, rdtype) -> Optional[dns.rrset.RRset]:
        with self._lock:
            return self._sigs.get((to_name(name), dns.rdatatype.RdataType.make(rdtype)))

    def _find_cut(self, name: dns.name.Name) -> Optional[dns.name.Name]:
        """Topmost delegation point at or above ``name`` (never the apex)."""
        cut = None
        current = name
        while current != self.origin and current.is_subdomain(self.origin):
            if (current, dns.rdatatype.NS) in self._rrsets:
                cut = current
            current = current.parent()
        return cut

    def _name_exists(self, name: dns.name.Name) -> bool:
        return any(n == name or n.is_subdomain(name) for n, _ in self._rrsets)

    def _with_sig(self, key: RRKey) -> List[dns.rrset.RRset]:
        out = [self._rrsets[key]]
        if key in self._sigs:
            out.append(self._sigs[key])
        return out

    def _add(self, response: dns.message.Message, section, key: RRKey) -> None:
        """Add an RRset (and its RRSIG, if any) through the message index."""
        for rrset in self._with_sig(key):
            response.find_rrset(
                section, rrset.name, rrset.rdclass, rrset.rdtype, rrset.covers, create=True
            ).update(rrset)

    def handle(self, query: dns.message.Message) -> dns.message.Message:
        """Answer one query (or update) message."""
        if query.opcode() == dns.opcode.UPDATE:
            return self.handle_update(query)

        response = dns.message.make_response(query)
        if not query.question:
            response.set_rcode(dns.rcode.FORMERR)
            return response
        question = query.question[0]
        qname, rdtype = question.name, question.rdtype

        with self._lock:
            if not qname.is_subdomain(self.origin):
                response.set_rcode(dns.rcode.REFUSED)
                return response

            if rdtype == dns.rdatatype.AXFR:
                response.flags |= dns.flags.AA
                response.answer = self._axfr()
                return response

            cut = self._find_cut(qname)
            if cut is not None and not (qname == cut and rdtype == dns.rdatatype.DS):
                self._referral(response, cut)
                return response

            response.flags |= dns.flags.AA
            key = (qname, rdtype)
            if key in self._rrsets:
                self._add(response, dns.message.ANSWER, key)
                return response

            if not self._name_exists(qname):
                response.set_rcode(dns.rcode.NXDOMAIN)
            self._add(response, dns.message.AUTHORITY, (self.origin, dns.rdatatype.SOA))
            return response

    def _referral(self, response: dns.message.Message, cut: dns.name.Name) -> None:
        ns = self._rrsets[(cut, dns.rdatatype.NS)]
        self._add(response, dns.message.AUTHORITY, (cut, dns.rdatatype.NS))
        if (cut, dns.rdatatype.DS) in self._rrsets:
            self._add(response, dns.message.AUTHORITY, (cut, dns.rdatatype.DS))
        for rdata in ns:
            for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
                if (rdata.target, rdtype) in self._rrsets:
                    self._add(response, dns.message.ADDITIONAL, (rdata.target, rdtype))

    def _axfr(self) -> List[dns.rrset.RRset]:
        soa_key = (self.origin, dns.rdatatype.SOA)
        records = self._with_sig(soa_key)
        for key in sorted(self._rrsets, key=lambda k: (k[0], k[1])):
            if key != soa_key:
                records.extend(self._with_sig(key))
        records.append(self._rrsets[soa_key])
        return records

    def handle_update(self, query: dns.message.Message) -> dns.message.Message:
        response = dns.message.make_response(query)
        response.set_rcode(dns.rcode.REFUSED)
        return response

    def load_records(self, records: Iterable[dns.rrset.RRset]) -> None:
        """Replace the zone contents; RRSIG RRsets are stored as signatures."""
        rrsets: Dict[RRKey, dns.rrset.RRset] = {}
        sigs: Dict[RRKey, dns.rrset.RRset] = {}
        for rrset in records:
            if rrset.rdtype == dns.rdatatype.RRSIG:
                sigs[(rrset.name, rrset.covers)] = rrset
            else:
                key = (rrset.name, rrset.rdtype)
                if key in rrsets:
                    rrsets[key].union_update(rrset)
                else:
                    rrsets[key] = rrset
        with self._lock:
            self._rrsets = rrsets
            self._sigs = sigs


class AuthoritativeServer(ZoneData):
    """Primary server: owns the zone key and signs everything it serves."""

    def __init__(self, origin, ttl: int = 300, signature_lifetime: int = 7 * 24 * 3600,
                 name: str = "primary"):
        super().__init__(origin, name=name)
        self.ttl = ttl
        self.signature_lifetime = signature_lifetime
        self.key: Optional[ZoneKey] = None
        self.accept_updates = True
        self.updates_applied = 0

    def load(self, records: Iterable[dns.rrset.RRset], key: ZoneKey, mname=None) -> None:
        """Load unsigned zone data, add SOA and DNSKEY, and sign it."""
        with self._lock:
            serial = self.serial + 1
            self.key = key
            rrsets: Dict[RRKey, dns.rrset.RRset] = {}
            for rrset in records:
                key_ = (rrset.name, rrset.rdtype)
                if key_ in rrsets:
                    rrsets[key_].union_update(rrset)
                else:
                    rrsets[key_] = rrset
            self._rrsets = rrsets
            self._rrsets[(self.origin, dns.rdatatype.DNSKEY)] = dns.rrset.from_rdata(
                self.origin, self.ttl, key.dnskey
            )
            self._set_soa(serial, mname)
            self._sign_all()
        logger.info(f"[{self.name}] Loaded {self.origin} serial {serial} key {key.key_tag}")

    def set_key(self, key: ZoneKey) -> None:
        """Swap the zone key and re-sign everything with it."""
        with self._lock:
            self.key = key
            self._rrsets[(self.origin, dns.rdatatype.DNSKEY)] = dns.rrset.from_rdata(
                self.origin, self.ttl, key.dnskey
            )
            self._set_soa(self.serial + 1)
            self._sign_all()
        logger.info(f"[{self.name}] Re-signed {self.origin} with key {key.key_tag}")

    def _set_soa(self, serial: int, mname=None) -> None:
        current = self._rrsets.get((self.origin, dns.rdatatype.SOA))
        if mname is None:
            mname = current[0].mname if current else dns.name.Name(("ns1",)).concatenate(self.origin)
        rname = dns.name.Name(("hostmaster",)).concatenate(self.origin)
        refresh, retry, expire = SOA_TIMERS
        self._rrsets[(self.origin, dns.rdatatype.SOA)] = dns.rrset.from_text(
            self.origin, self.ttl, "IN", "SOA",
            f"{to_name(mname)} {rname} {serial} {refresh} {retry} {expire} {self.ttl}",
        )

    def _is_authoritative(self, name: dns.name.Name, rdtype: int) -> bool:
        cut = self._find_cut(name)
        if cut is None:
            return True
        return name == cut and rdtype == dns.rdatatype.DS

    def _sign_all(self) -> None:
        assert self.key is not None
        self._sigs = {}
        for key, rrset in self._rrsets.items():
            if not self._is_authoritative(*key):
                continue
            rrsig = dns.dnssec.sign(
                rrset,
                self.key.private_key,
                self.origin,
                self.key.dnskey,
                lifetime=self.signature_lifetime,
            )
            sigs = dns.rrset.RRset(rrset.name, dns.rdataclass.IN, dns.rdatatype.RRSIG, covers=rrset.rdtype)
            sigs.add(rrsig, rrset.ttl)
            self._sigs[key] = sigs

    def _content(self) -> Dict[RRKey, dns.rrset.RRset]:
        return {k: v for k, v in self._rrsets.items() if k[1] != dns.rdatatype.SOA}

    def handle_update(self, query: dns.message.Message) -> dns.message.Message:
        """
        Apply an RFC 2136 update and acknowledge it.

        Prerequisites are not supported; the zone section must name this
        zone. NOERROR means the change is applied and re-signed.
        """
        response = dns.message.make_response(query)
        with self._lock:
            if not self.accept_updates or self.key is None:
                response.set_rcode(dns.rcode.REFUSED)
                return response
            zone = query.question[0].name if query.question else None
            if zone != self.origin:
                response.set_rcode(dns.rcode.NOTAUTH)
                return response

            working = {k: v.copy() for k, v in self._rrsets.items()}
            for rrset in query.update:
                if not rrset.name.is_subdomain(self.origin):
                    response.set_rcode(dns.rcode.NOTZONE)
                    return response
                self._apply(working, rrset)

            if self._same_content(working):
                logger.debug(f"[{self.name}] Update for {self.origin} changed nothing")
                return response

            self._rrsets = working
            self._set_soa(self.serial + 1)
            self._sign_all()
            self.updates_applied += 1
        logger.info(f"[{self.name}] Applied update to {self.origin}, serial now {self.serial}")
        return response

    def _same_content(self, working: Dict[RRKey, dns.rrset.RRset]) -> bool:
        current = self._content()
        proposed = {k: v for k, v in working.items() if k[1] != dns.rdatatype.SOA}
        if current.keys() != proposed.keys():
            return False
        return all(current[k] == proposed[k] and current[k].ttl == proposed[k].ttl for k in current)

    def _apply(self, working: Dict[RRKey, dns.rrset.RRset], rrset: dns.rrset.RRset) -> None:
        name, rdtype = rrset.name, rrset.rdtype
        if name == self.origin and rdtype in (dns.rdatatype.SOA, dns.rdatatype.DNSKEY):
            # apex SOA and DNSKEY are managed by the server itself
            return
        if rrset.deleting == dns.rdataclass.ANY:
            if rdtype == dns.rdatatype.ANY:
                for key in [k for k in working if k[0] == name]:
                    del working[key]
            else:
                working.pop((name, rdtype), None)
        elif rrset.deleting == dns.rdataclass.NONE:
            existing = working.get((name, rdtype))
            if existing is not None:
                for rdata in rrset:
                    existing.discard(rdata)
                if not existing:
                    del working[(name, rdtype)]
        else:
            existing = working.get((name, rdtype))
            if existing is None:
                working[(name, rdtype)] = dns.rrset.from_rdata_list(name, rrset.ttl, list(rrset))
            else:
                existing.update_ttl(rrset.ttl)
                existing.union_update(rrset)


class SecondaryServer(ZoneData):
    """
    Copies a zone from its primary with SOA + AXFR.

    ``sync_complete`` is set after the first successful transfer; until then
    the secondary must not be listed in any NS set.
    """

    def __init__(self, origin, primary_address: str, transport, name: str = "secondary",
                 timeout: float = 5.0):
        super().__init__(origin, name=name)
        self.primary_address = primary_address
        self.transport = transport
        self.timeout = timeout
        self.sync_complete = asyncio.Event()
        self.transfers = 0

    async def sync(self) -> bool:
        """Transfer the zone if the primary's serial moved. Returns True on transfer."""
        soa_query = dns.message.make_query(self.origin, dns.rdatatype.SOA)
        soa_response = await self.transport.query(self.primary_address, soa_query, self.timeout)
        soa = soa_response.get_rrset(soa_response.answer, self.origin, dns.rdataclass.IN, dns.rdatatype.SOA)
        if soa is None:
            raise DNSSECPublicationError(
                f"[{self.name}] primary {self.primary_address} returned no SOA for {self.origin}",
                code=ErrorCode.DNSSEC_SYNC_FAILED,
                details={"zone": self.origin.to_text(), "rcode": dns.rcode.to_text(soa_response.rcode())},
            )
        if self.sync_complete.is_set() and soa[0].serial == self.serial:
            return False

        axfr = dns.message.make_query(self.origin, dns.rdatatype.AXFR)
        response = await self.transport.query(self.primary_address, axfr, self.timeout)
        if response.rcode() != dns.rcode.NOERROR or not response.answer:
            raise DNSSECPublicationError(
                f"[{self.name}] zone transfer of {self.origin} failed",
                code=ErrorCode.DNSSEC_SYNC_FAILED,
                details={"zone": self.origin.to_text(), "rcode": dns.rcode.to_text(response.rcode())},
            )
        self.load_records(response.answer)
        self.transfers += 1
        self.sync_complete.set()
        logger.info(f"[{self.name}] Synced {self.origin} serial {self.serial}")
        return True


# ============================================================================
# Network frontends
# ============================================================================

# RFC 1035 limit for clients without EDNS
CLASSIC_UDP_SIZE = 512


def udp_wire(query: dns.message.Message, response: dns.message.Message) -> bytes:
    """
    Render ``response`` for UDP within the size the client advertised.

    An answer that does not fit is replaced by an empty one with TC set, so
    the client retries over TCP.
    """
    limit = max(query.payload, CLASSIC_UDP_SIZE) if query.edns >= 0 else CLASSIC_UDP_SIZE
    try:
        return response.to_wire(max_size=limit)
    except dns.exception.TooBig:
        truncated = dns.message.make_response(query)
        truncated.flags |= dns.flags.TC | (response.flags & dns.flags.AA)
        truncated.set_rcode(response.rcode())
        return truncated.to_wire(max_size=limit)


class DnsUdpFrontend(asyncio.DatagramProtocol):
    """Serves one ZoneData over UDP."""

    def __init__(self, server: ZoneData):
        self.server = server
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr):
        try:
            query = dns.message.from_wire(data)
        except dns.exception.DNSException as e:
            logger.debug(f"[{self.server.name}] Dropping malformed query from {addr}: {e}")
            return
        self.transport.sendto(udp_wire(query, self.server.handle(query)), addr)


async def _serve_tcp_client(server: ZoneData, reader: asyncio.StreamReader,
                            writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            header = await reader.readexactly(2)
            (length,) = struct.unpack("!H", header)
            query = dns.message.from_wire(await reader.readexactly(length))
            wire = server.handle(query).to_wire(max_size=65535)
            writer.write(struct.pack("!H", len(wire)) + wire)
            await writer.drain()
    except asyncio.IncompleteReadError:
        pass
    except dns.exception.DNSException as e:
        logger.debug(f"[{server.name}] Closing TCP client after bad message: {e}")
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError as e:
            logger.debug(f"[{server.name}] TCP client went away: {e}")


async def serve(server: ZoneData, host: str, port: int = 53):
    """
    Serve ``server`` on ``host:port`` over UDP and TCP.

    Returns (udp transport, tcp server); close both to stop serving.
    """
    loop = asyncio.get_running_loop()
    udp, _ = await loop.create_datagram_endpoint(lambda: DnsUdpFrontend(server), local_addr=(host, port))
    tcp = await asyncio.start_server(
        lambda r, w: _serve_tcp_client(server, r, w), host=host, port=port
    )
    logger.info(f"[{server.name}] Serving {server.origin} on {host}:{port}")
    return udp, tcp

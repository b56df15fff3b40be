# ============================================================================
# miniternet/zones/bootstrapper.py
# DNSSEC Chain Bootstrapper
# ============================================================================
#
# PURPOSE:
# Builds the root -> TLD -> leaf chain of trust at runtime. Name server
# addresses only exist after allocation, so DS and glue records cannot be
# baked into zone files; each child pushes its NS + glue + DS into its parent
# with an RFC 2136 UPDATE once its own key is final and it is serving.
#
# ZONE LIFECYCLE:
#   UNSIGNED -> KEY_GENERATED -> PUBLISHED -> DELEGATED -> VERIFIED
#   (any state may end in FAILED)
#
# - PUBLISHED: zone loaded into its primary and signed
# - DELEGATED: parent acknowledged NS + DS (the root instead exports its DS
#   as the trust anchor resolvers start from)
# - VERIFIED: a canary name below the leaf validated through the whole chain
#
# PUBLICATION POLICY:
# - Each UPDATE attempt waits at most ds_ack_timeout for the parent's NOERROR
# - Failed attempts are retried with exponential backoff, ds_max_attempts total
# - Exhaustion marks the zone FAILED and raises DNSSECPublicationError
# - Re-delegating unchanged key material and name servers is a no-op
#
# ============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import dns.exception
import dns.name
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset
import dns.update

from miniternet.base.config import DNSConfig
from miniternet.errors import (
    ChainVerificationError,
    ConfigurationError,
    DNSSECPublicationError,
    ErrorCode,
    TestbedError,
)
from miniternet.net.allocator import AddressPair
from miniternet.utils.async_helpers import retry_with_backoff
from miniternet.zones.server import AuthoritativeServer, SecondaryServer
from miniternet.zones.transport import InMemoryTransport, Transport
from miniternet.zones.verifier import ChainVerifier, ValidatedAnswer, trust_anchor_text
from miniternet.zones.zone import Delegation, NameServer, ZoneKey, ZoneRecord, ZoneState, to_name

logger = logging.getLogger(__name__)


class UpdateRefused(Exception):
    """The server answered an UPDATE with something other than NOERROR."""

    def __init__(self, server: str, rcode: int):
        super().__init__(f"{server} answered {dns.rcode.to_text(rcode)}")
        self.rcode = rcode


_RETRYABLE = (dns.exception.DNSException, OSError, asyncio.TimeoutError, UpdateRefused)


class DNSSECChainBootstrapper:
    """
    Owns every ZoneRecord and its servers.

    Usage:
        chain = DNSSECChainBootstrapper(config.dns)
        chain.add_zone(".", root_pair)
        chain.add_zone("tk", tk_pair, parent=".")
        chain.add_zone("nlnetlabs.tk", leaf_pair, parent="tk")
        for zone in (".", "tk", "nlnetlabs.tk"):
            await chain.start_zone(zone)
        await chain.verify_chain()
    """

    def __init__(self, config: Optional[DNSConfig] = None, transport: Optional[Transport] = None,
                 clock: Callable[[], float] = time.time, sleep=asyncio.sleep):
        self.config = config or DNSConfig()
        self.transport = transport if transport is not None else InMemoryTransport()
        self.clock = clock
        self._sleep = sleep
        self.zones: Dict[dns.name.Name, ZoneRecord] = {}
        self.servers: Dict[dns.name.Name, AuthoritativeServer] = {}
        self.secondaries: Dict[dns.name.Name, Tuple[dns.name.Name, SecondaryServer, NameServer]] = {}
        self._anchor: Optional[dns.rrset.RRset] = None
        self.trust_anchor_path: Optional[Path] = None

    # ------------------------------------------------------------------
    # Declaration
    # ------------------------------------------------------------------

    def add_zone(self, zone, primary: AddressPair, parent=None, ns_host=None) -> ZoneRecord:
        """Declare a zone served by a primary at ``primary``. ``parent`` None means root."""
        name = to_name(zone)
        if name in self.zones:
            raise ConfigurationError(f"Zone {name} declared twice")
        parent_name = to_name(parent) if parent is not None else None
        if parent_name is None and name != dns.name.root:
            raise ConfigurationError(f"Zone {name} needs a parent zone")
        if parent_name is not None:
            if parent_name not in self.zones:
                raise ConfigurationError(f"Parent {parent_name} of {name} is not declared")
            if name == parent_name or not name.is_subdomain(parent_name):
                raise ConfigurationError(f"{name} is not below its parent {parent_name}")
        if not primary.ipv4 and not primary.ipv6:
            raise ConfigurationError(f"Zone {name} has no server address")

        hostname = to_name(ns_host) if ns_host else dns.name.Name(("ns1",)).concatenate(name)
        record = ZoneRecord(name=name, parent=parent_name, primary=NameServer(hostname, primary))
        server = AuthoritativeServer(
            name, ttl=self.config.ttl,
            signature_lifetime=self.config.signature_lifetime,
            name=f"ns:{record.label}",
        )
        self.zones[name] = record
        self.servers[name] = server
        self._register(primary, server)
        logger.debug(f"[DNSSEC] Declared zone {name} at {primary.ipv4}/{primary.ipv6}")
        return record

    def add_secondary(self, zone, addresses: AddressPair, ns_host=None) -> SecondaryServer:
        """
        Declare a secondary for ``zone``. It is not listed anywhere until
        attach_secondary() has synced it.
        """
        record = self.zone(zone)
        index = len(record.secondaries) + 2
        hostname = to_name(ns_host) if ns_host else dns.name.Name((f"ns{index}",)).concatenate(record.name)
        nameserver = NameServer(hostname, addresses)
        server = SecondaryServer(
            record.name, self._address(record.primary), self.transport,
            name=f"ns:{hostname.to_text()}", timeout=self.config.ds_ack_timeout,
        )
        record.secondaries.append(nameserver)
        self.secondaries[hostname] = (record.name, server, nameserver)
        self._register(addresses, server)
        return server

    def _register(self, addresses: AddressPair, server) -> None:
        if isinstance(self.transport, InMemoryTransport):
            for address in addresses:
                self.transport.register(address, server)

    def zone(self, zone) -> ZoneRecord:
        name = to_name(zone)
        try:
            return self.zones[name]
        except KeyError:
            raise ConfigurationError(f"Unknown zone {name}") from None

    def state(self, zone) -> ZoneState:
        return self.zone(zone).state

    def leaves(self) -> List[ZoneRecord]:
        parents = {r.parent for r in self.zones.values()}
        return [r for r in self.zones.values() if r.name not in parents]

    def _address(self, nameserver: NameServer) -> str:
        return nameserver.addresses.ipv4 or nameserver.addresses.ipv6

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, record: ZoneRecord, state: ZoneState, error: Optional[TestbedError] = None) -> None:
        record.state = state
        if error is not None:
            record.error = error
        event, record.changed = record.changed, asyncio.Event()
        event.set()
        if state is ZoneState.FAILED:
            logger.error(f"[DNSSEC] {record.label} -> FAILED: {error}")
        else:
            logger.info(f"[DNSSEC] {record.label} -> {state.name}")

    def _fail(self, record: ZoneRecord, error: TestbedError) -> TestbedError:
        self._set_state(record, ZoneState.FAILED, error)
        return error

    async def wait_for_state(self, zone, state: ZoneState, timeout: Optional[float] = None) -> ZoneRecord:
        """
        Wait until ``zone`` reaches at least ``state``.

        Raises DNSSECPublicationError if the zone fails first and
        asyncio.TimeoutError when ``timeout`` elapses.
        """
        record = self.zone(zone)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while record.state < state:
            if record.state is ZoneState.FAILED:
                raise DNSSECPublicationError(
                    f"Zone {record.label} failed before reaching {state.name}",
                    code=ErrorCode.DNSSEC_ZONE_NOT_READY,
                    details={"zone": record.label, "cause": record.error.to_dict() if record.error else None},
                )
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            await asyncio.wait_for(record.changed.wait(), timeout=remaining)
        return record

    # ------------------------------------------------------------------
    # Keys and publication
    # ------------------------------------------------------------------

    def generate_keys(self, zone) -> ZoneKey:
        record = self.zone(zone)
        if record.key is not None:
            return record.key
        record.key = ZoneKey.generate()
        self._set_state(record, ZoneState.KEY_GENERATED)
        logger.info(f"[DNSSEC] {record.label} key tag {record.key.key_tag}")
        return record.key

    def _zone_records(self, record: ZoneRecord) -> List[dns.rrset.RRset]:
        ttl = self.config.ttl
        origin = record.name
        serving = record.serving()
        rrsets = [dns.rrset.from_text_list(origin, ttl, "IN", "NS", [ns.hostname.to_text() for ns in serving])]
        for ns in serving:
            if ns.hostname.is_subdomain(origin):
                rrsets.extend(ns.glue(ttl))

        canary = dns.name.Name((self.config.canary_label,)).concatenate(origin)
        rrsets.extend(NameServer(canary, record.primary.addresses).glue(ttl))
        for hostname, pair in record.hosts.items():
            rrsets.extend(NameServer(hostname, pair).glue(ttl))

        for delegation in record.children.values():
            rrsets.append(dns.rrset.from_text_list(
                delegation.child, ttl, "IN", "NS", [ns.hostname.to_text() for ns in delegation.nameservers]
            ))
            rrsets.append(dns.rrset.from_rdata(delegation.child, ttl, delegation.ds))
            for ns in delegation.nameservers:
                if ns.hostname.is_subdomain(delegation.child):
                    rrsets.extend(ns.glue(ttl))
        return rrsets

    async def publish(self, zone) -> ZoneRecord:
        """Load the zone into its primary, sign it and sync its secondaries."""
        record = self.zone(zone)
        if record.key is None:
            raise DNSSECPublicationError(
                f"Zone {record.label} has no key yet",
                code=ErrorCode.DNSSEC_ZONE_NOT_READY,
                details={"zone": record.label},
            )
        self.servers[record.name].load(self._zone_records(record), record.key, mname=record.primary.hostname)
        await self._sync_secondaries(record)
        if record.state < ZoneState.PUBLISHED:
            self._set_state(record, ZoneState.PUBLISHED)
        return record

    async def _sync_secondaries(self, record: ZoneRecord) -> None:
        for ns in record.synced_secondaries:
            _, server, _ = self.secondaries[ns.hostname]
            try:
                await server.sync()
            except (dns.exception.DNSException, OSError) as e:
                raise DNSSECPublicationError(
                    f"Secondary {ns.hostname} of {record.label} failed to sync: {e}",
                    code=ErrorCode.DNSSEC_SYNC_FAILED,
                    details={"zone": record.label, "secondary": ns.hostname.to_text()},
                ) from e

    async def _push(self, target: ZoneRecord, update: dns.update.UpdateMessage, what: str) -> None:
        """Send ``update`` to ``target``'s primary until it is acknowledged."""
        address = self._address(target.primary)

        async def send_once() -> None:
            response = await self.transport.query(address, update, self.config.ds_ack_timeout)
            if response.rcode() != dns.rcode.NOERROR:
                raise UpdateRefused(address, response.rcode())

        try:
            await retry_with_backoff(
                send_once,
                attempts=self.config.ds_max_attempts,
                base_delay=self.config.ds_backoff,
                attempt_timeout=self.config.ds_ack_timeout,
                retry_on=_RETRYABLE,
                name=what,
                sleep=self._sleep,
            )
        except _RETRYABLE as e:
            raise DNSSECPublicationError(
                f"{what}: no acknowledgement from {target.label} after "
                f"{self.config.ds_max_attempts} attempts ({type(e).__name__}: {e})",
                details={"zone": target.label, "server": address, "attempts": self.config.ds_max_attempts},
            ) from e

    async def delegate(self, zone) -> bool:
        """
        Push NS + glue + DS for ``zone`` into its parent.

        Returns False when the parent already holds exactly this delegation.
        For the root this exports the trust anchor instead.
        """
        record = self.zone(zone)
        if record.key is None or record.state < ZoneState.PUBLISHED:
            raise DNSSECPublicationError(
                f"Zone {record.label} must be published before it is delegated",
                code=ErrorCode.DNSSEC_ZONE_NOT_READY,
                details={"zone": record.label, "state": record.state.name},
            )

        delegation = Delegation(child=record.name, nameservers=record.serving(), ds=record.ds())
        if (record.state >= ZoneState.DELEGATED and record.delegation is not None
                and record.delegation.fingerprint == delegation.fingerprint):
            logger.debug(f"[DNSSEC] {record.label} already delegated with key {delegation.ds.key_tag}")
            return False

        if record.is_root:
            self._anchor = dns.rrset.from_rdata(dns.name.root, self.config.ttl, delegation.ds)
            if self.trust_anchor_path is not None:
                self.export_trust_anchor(self.trust_anchor_path)
            record.delegation = delegation
            self._set_state(record, ZoneState.DELEGATED)
            return True

        parent = self.zone(record.parent)
        if parent.state < ZoneState.PUBLISHED:
            raise self._fail(record, DNSSECPublicationError(
                f"Parent {parent.label} of {record.label} is not serving",
                code=ErrorCode.DNSSEC_ZONE_NOT_READY,
                details={"zone": record.label, "parent": parent.label, "parent_state": parent.state.name},
            ))

        ttl = self.config.ttl
        update = dns.update.UpdateMessage(parent.name)
        ns_rdatas = [
            dns.rdata.from_text(dns.rdataclass.IN, dns.rdatatype.NS, ns.hostname.to_text())
            for ns in delegation.nameservers
        ]
        update.replace(record.name, ttl, *ns_rdatas)
        update.replace(record.name, ttl, delegation.ds)
        for ns in delegation.nameservers:
            if ns.hostname.is_subdomain(record.name):
                self._host_update(update, ns.hostname, ns.addresses, ttl)

        try:
            await self._push(parent, update, f"delegate {record.label}")
        except DNSSECPublicationError as e:
            raise self._fail(record, e)

        parent.children[record.name] = delegation
        record.delegation = delegation
        await self._sync_secondaries(parent)
        self._set_state(record, ZoneState.DELEGATED)
        logger.info(f"[DNSSEC] {parent.label} now delegates {record.label} (DS key tag {delegation.ds.key_tag})")
        return True

    async def start_zone(self, zone) -> ZoneRecord:
        """Generate keys (once), publish and delegate. What a DNS node runs on start."""
        record = self.zone(zone)
        try:
            self.generate_keys(zone)
            await self.publish(zone)
            await self.delegate(zone)
        except DNSSECPublicationError as e:
            if record.state is not ZoneState.FAILED:
                self._fail(record, e)
            raise
        return record

    @staticmethod
    def _host_update(update: dns.update.UpdateMessage, hostname: dns.name.Name,
                     addresses: AddressPair, ttl: int) -> None:
        for rdtype, address in (("A", addresses.ipv4), ("AAAA", addresses.ipv6)):
            if address:
                update.replace(hostname, ttl, dns.rdata.from_text(dns.rdataclass.IN, rdtype, address))
            else:
                update.delete(hostname, rdtype)

    # ------------------------------------------------------------------
    # Runtime changes
    # ------------------------------------------------------------------

    async def attach_secondary(self, hostname) -> SecondaryServer:
        """
        Sync a declared secondary, then list it in its zone's NS set (and the
        parent's delegation when the zone is already delegated).
        """
        zone_name, server, nameserver = self.secondaries[to_name(hostname)]
        record = self.zone(zone_name)
        try:
            await server.sync()
        except (dns.exception.DNSException, OSError) as e:
            raise DNSSECPublicationError(
                f"Secondary {nameserver.hostname} failed its first sync: {e}",
                code=ErrorCode.DNSSEC_SYNC_FAILED,
                details={"zone": record.label, "secondary": nameserver.hostname.to_text()},
            ) from e
        if nameserver not in record.synced_secondaries:
            record.synced_secondaries.append(nameserver)

        update = dns.update.UpdateMessage(record.name)
        update.add(record.name, self.config.ttl,
                   dns.rdata.from_text(dns.rdataclass.IN, dns.rdatatype.NS, nameserver.hostname.to_text()))
        if nameserver.hostname.is_subdomain(record.name):
            self._host_update(update, nameserver.hostname, nameserver.addresses, self.config.ttl)
        await self._push(record, update, f"list secondary {nameserver.hostname}")
        await self._sync_secondaries(record)

        if record.state >= ZoneState.DELEGATED:
            await self.delegate(record.name)
        return server

    async def register_host(self, zone, hostname, ipv4: Optional[str] = None,
                            ipv6: Optional[str] = None) -> None:
        """
        Publish A and/or AAAA for ``hostname``. A family left out is removed.

        The zone must be at least DELEGATED.
        """
        record = self.zone(zone)
        if record.state < ZoneState.DELEGATED:
            raise DNSSECPublicationError(
                f"Cannot register {hostname}: zone {record.label} is {record.state.name}",
                code=ErrorCode.DNSSEC_ZONE_NOT_READY,
                details={"zone": record.label, "state": record.state.name},
            )
        name = to_name(hostname)
        if not name.is_subdomain(record.name) or name == record.name:
            raise ConfigurationError(f"{name} is not a host name inside {record.label}")
        if not ipv4 and not ipv6:
            raise ConfigurationError(f"{name} needs at least one address")

        update = dns.update.UpdateMessage(record.name)
        pair = AddressPair(ipv4=ipv4, ipv6=ipv6)
        self._host_update(update, name, pair, self.config.ttl)
        await self._push(record, update, f"register {name}")
        record.hosts[name] = pair
        await self._sync_secondaries(record)
        logger.info(f"[DNSSEC] Registered {name} -> {ipv4 or '-'} / {ipv6 or '-'}")

    async def rotate_keys(self, zone) -> ZoneKey:
        """
        Replace the zone key, re-sign, and re-publish the delegation.

        The zone drops back to PUBLISHED until the parent acknowledges the
        new DS; callers re-verify the chain afterwards.
        """
        record = self.zone(zone)
        if record.key is None:
            raise DNSSECPublicationError(
                f"Zone {record.label} has no key to rotate",
                code=ErrorCode.DNSSEC_ZONE_NOT_READY,
                details={"zone": record.label},
            )
        old_tag = record.key.key_tag
        record.key = ZoneKey.generate()
        self.servers[record.name].set_key(record.key)
        await self._sync_secondaries(record)
        self._set_state(record, ZoneState.PUBLISHED)
        logger.info(f"[DNSSEC] Rotated {record.label}: key {old_tag} -> {record.key.key_tag}")
        await self.delegate(record.name)
        return record.key

    # ------------------------------------------------------------------
    # Trust anchor and verification
    # ------------------------------------------------------------------

    def trust_anchor(self) -> dns.rrset.RRset:
        if self._anchor is None:
            raise ChainVerificationError(
                "Root zone has not exported a trust anchor yet",
                code=ErrorCode.DNSSEC_ZONE_NOT_READY,
            )
        return self._anchor

    def export_trust_anchor(self, path) -> Path:
        """Write the root DS in unbound ``root.key`` form; re-written on root rotation."""
        path = Path(path)
        self.trust_anchor_path = path
        if self._anchor is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(trust_anchor_text(self._anchor))
            logger.info(f"[DNSSEC] Trust anchor written to {path}")
        return path

    def root(self) -> ZoneRecord:
        return self.zone(dns.name.root)

    def verifier(self, family: int = 4) -> ChainVerifier:
        return ChainVerifier(
            self.transport,
            self.trust_anchor(),
            [ns.addresses for ns in self.root().serving()],
            family=family,
            timeout=self.config.ds_ack_timeout,
            clock=self.clock,
        )

    def _families(self) -> List[int]:
        families = []
        for family in (4, 6):
            if all(r.primary.addresses.for_family(family) for r in self.zones.values()):
                families.append(family)
        return families

    async def verify_chain(self, families: Optional[Iterable[int]] = None) -> Dict[str, ValidatedAnswer]:
        """
        Resolve canary.<leaf> for every leaf through the full chain.

        On success every zone on each path becomes VERIFIED. A failing leaf
        is marked FAILED and ChainVerificationError is raised.
        """
        families = list(families) if families is not None else self._families()
        results: Dict[str, ValidatedAnswer] = {}
        for leaf in self.leaves():
            canary = dns.name.Name((self.config.canary_label,)).concatenate(leaf.name)
            for family in families:
                expected = leaf.primary.addresses.for_family(family)
                if expected is None:
                    continue
                rdtype = dns.rdatatype.A if family == 4 else dns.rdatatype.AAAA
                try:
                    answer = await self.verifier(family).resolve(canary, rdtype)
                    if answer.addresses != [expected]:
                        raise ChainVerificationError(
                            f"{canary} resolved to {answer.addresses or 'nothing'}, expected {expected}",
                            details={"qname": canary.to_text(), "expected": expected,
                                     "got": answer.addresses},
                        )
                except ChainVerificationError as e:
                    raise self._fail(leaf, e)
                results[f"{canary.to_text()}/{dns.rdatatype.to_text(rdtype)}"] = answer
                for name in answer.path:
                    record = self.zones.get(name)
                    if record is not None and record.state is ZoneState.DELEGATED:
                        self._set_state(record, ZoneState.VERIFIED)
        logger.info(f"[DNSSEC] Chain verified for {len(results)} canary lookups")
        return results

    async def resolve(self, qname, rdtype="A", family: int = 4) -> ValidatedAnswer:
        """Validated lookup of an arbitrary name (fixture registrations, checks)."""
        return await self.verifier(family).resolve(qname, rdtype)

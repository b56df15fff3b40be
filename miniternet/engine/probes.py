"""
miniternet/engine/probes.py
Health predicates for ServiceNodes.

A probe is an async callable returning True once the service is ready.
Probes never raise for "not ready yet"; the supervisor polls them until the
node's grace period runs out.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import dns.asyncquery
import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype
import httpx

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]


def http_probe(
    url: str,
    timeout: float = 5.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Probe:
    """Ready when ``url`` answers with a status below 400."""

    async def probe() -> bool:
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport, verify=False) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug(f"[Probe] {url} not ready: {type(e).__name__}")
            return False
        return response.status_code < 400

    probe.__name__ = f"http_probe({url})"
    return probe


def tcp_probe(host: str, port: int, timeout: float = 3.0) -> Probe:
    """Ready when a TCP connection to ``host:port`` succeeds."""

    async def probe() -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    probe.__name__ = f"tcp_probe({host}:{port})"
    return probe


def resolver_probe(address: str, qname: str, port: int = 53, timeout: float = 3.0) -> Probe:
    """Ready when the resolver at ``address`` answers ``qname`` with the AD bit set."""

    async def probe() -> bool:
        query = dns.message.make_query(qname, dns.rdatatype.A, want_dnssec=True)
        query.flags |= dns.flags.AD
        try:
            response = await dns.asyncquery.udp(query, address, timeout=timeout, port=port)
        except (dns.exception.DNSException, OSError) as e:
            logger.debug(f"[Probe] resolver {address} not ready: {type(e).__name__}")
            return False
        return response.rcode() == dns.rcode.NOERROR and bool(response.flags & dns.flags.AD)

    probe.__name__ = f"resolver_probe({address}, {qname})"
    return probe


def predicate_probe(check: Callable[[], bool]) -> Probe:
    """Wrap a plain synchronous predicate."""

    async def probe() -> bool:
        return bool(check())

    return probe


def event_probe(event: asyncio.Event) -> Probe:
    """Ready once ``event`` is set (e.g. a secondary's sync-complete signal)."""

    async def probe() -> bool:
        return event.is_set()

    return probe


def all_of(*probes: Probe) -> Probe:
    async def probe() -> bool:
        for p in probes:
            if not await p():
                return False
        return True

    return probe

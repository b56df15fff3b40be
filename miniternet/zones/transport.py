"""
miniternet/zones/transport.py
How DNS messages reach a server address.

InMemoryTransport keeps everything inside the process but still serialises
every message to wire format and back, so what a server answers is exactly
what a real client would see. UdpTransport talks to real sockets with
dnspython's asyncio query functions.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

import dns.asyncquery
import dns.exception
import dns.flags
import dns.message
import dns.rdatatype

logger = logging.getLogger(__name__)


class Transport:
    async def query(self, address: str, message: dns.message.Message,
                    timeout: float = 5.0) -> dns.message.Message:
        raise NotImplementedError


class InMemoryTransport(Transport):
    """Routes messages to ZoneData objects registered by address."""

    def __init__(self):
        self._servers: Dict[str, object] = {}
        self._unreachable: Set[str] = set()
        self.queries = 0

    def register(self, address: Optional[str], server) -> None:
        if address:
            self._servers[address] = server

    def unregister(self, address: Optional[str]) -> None:
        self._servers.pop(address, None)

    def server_at(self, address: str):
        return self._servers.get(address)

    def set_unreachable(self, address: str, unreachable: bool = True) -> None:
        """Make ``address`` time out (or answer again)."""
        if unreachable:
            self._unreachable.add(address)
        else:
            self._unreachable.discard(address)

    async def query(self, address: str, message: dns.message.Message,
                    timeout: float = 5.0) -> dns.message.Message:
        self.queries += 1
        await asyncio.sleep(0)
        server = self._servers.get(address)
        if server is None or address in self._unreachable:
            raise dns.exception.Timeout(timeout=timeout)
        request = dns.message.from_wire(message.to_wire())
        response = server.handle(request)
        return dns.message.from_wire(response.to_wire(max_size=65535))


class UdpTransport(Transport):
    """
    Queries real servers. Zone transfers and truncated answers go over TCP.

    ``address_map`` lets logical addresses (those the allocator handed out)
    be redirected, e.g. to loopback ports during local runs.
    """

    def __init__(self, port: int = 53, address_map: Optional[Dict[str, tuple]] = None):
        self.port = port
        self.address_map = dict(address_map or {})

    def _target(self, address: str):
        host, port = self.address_map.get(address, (address, self.port))
        return host, port

    async def query(self, address: str, message: dns.message.Message,
                    timeout: float = 5.0) -> dns.message.Message:
        host, port = self._target(address)
        question = message.question[0] if message.question else None
        if question is not None and question.rdtype == dns.rdatatype.AXFR:
            return await dns.asyncquery.tcp(message, host, timeout=timeout, port=port)
        response = await dns.asyncquery.udp(message, host, timeout=timeout, port=port)
        if response.flags & dns.flags.TC:
            logger.debug(f"[UdpTransport] Truncated answer from {host}, retrying over TCP")
            response = await dns.asyncquery.tcp(message, host, timeout=timeout, port=port)
        return response

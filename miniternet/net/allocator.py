"""
miniternet/net/allocator.py
Stable IPv4/IPv6 address assignment inside the closed network.

Every service instance gets its addresses before bring-up because DNS records
and peer configuration reference them. Allocation is deterministic: the n-th
distinct key gets host index n in both families, so re-running the same
topology yields the same addresses. Keys may request only one family, and a
fixture that needs divergent dual-stack addresses allocates its IPv6 side
under its own key.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from miniternet.errors import AddressExhaustedError, ConfigurationError

logger = logging.getLogger(__name__)

# Host indexes below this are left for the bridge gateway and friends
FIRST_HOST_INDEX = 2


@dataclass(frozen=True)
class AddressPair:
    """The addresses one service (or one fixture) is reachable on."""
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None

    def for_family(self, family: int) -> Optional[str]:
        return self.ipv4 if family == 4 else self.ipv6

    def __iter__(self):
        return iter(a for a in (self.ipv4, self.ipv6) if a)


class AddressAllocator:
    """
    Hands out addresses from a fixed pair of subnets.

    Thread-safe; all bookkeeping happens under one lock.
    """

    def __init__(self, subnet_v4: str, subnet_v6: str):
        try:
            self.subnet_v4 = ipaddress.IPv4Network(subnet_v4)
            self.subnet_v6 = ipaddress.IPv6Network(subnet_v6)
        except ValueError as e:
            raise ConfigurationError(f"Invalid subnet: {e}") from e
        self._lock = threading.Lock()
        self._next_index = FIRST_HOST_INDEX
        self._index_by_key: Dict[str, int] = {}
        self._pairs: Dict[str, AddressPair] = {}

    @property
    def capacity_v4(self) -> int:
        # network address and broadcast are unusable
        return self.subnet_v4.num_addresses - 1

    def allocate(self, key: str, families: Iterable[int] = (4, 6)) -> AddressPair:
        """
        Return the address pair for ``key``, allocating it on first use.

        Calling again with the same key returns the same pair.
        """
        families = tuple(families)
        with self._lock:
            if key in self._pairs:
                return self._pairs[key]
            index = self._claim_index(key)
            pair = AddressPair(
                ipv4=str(self.subnet_v4.network_address + index) if 4 in families else None,
                ipv6=str(self.subnet_v6.network_address + index) if 6 in families else None,
            )
            self._pairs[key] = pair
            logger.debug(f"[AddressAllocator] {key} -> {pair.ipv4} / {pair.ipv6}")
            return pair

    def allocate_divergent(self, key: str) -> AddressPair:
        """
        Allocate a dual-stack pair whose IPv4 and IPv6 host parts differ.

        The IPv6 side is claimed under ``<key>~v6`` so it never mirrors the
        IPv4 host index.
        """
        v4 = self.allocate(key, families=(4,))
        v6 = self.allocate(f"{key}~v6", families=(6,))
        pair = AddressPair(ipv4=v4.ipv4, ipv6=v6.ipv6)
        with self._lock:
            self._pairs[key] = pair
        return pair

    def pin(self, key: str, ipv4: Optional[str] = None, ipv6: Optional[str] = None) -> AddressPair:
        """Reserve explicit addresses for ``key`` (e.g. from configuration)."""
        for value, net in ((ipv4, self.subnet_v4), (ipv6, self.subnet_v6)):
            if value is not None and ipaddress.ip_address(value) not in net:
                raise ConfigurationError(
                    f"Pinned address {value} for {key} is outside {net}",
                    details={"service": key, "address": value},
                )
        with self._lock:
            if key in self._pairs:
                raise ConfigurationError(f"Address for {key} already allocated")
            for value, net in ((ipv4, self.subnet_v4), (ipv6, self.subnet_v6)):
                if value is not None:
                    index = int(ipaddress.ip_address(value)) - int(net.network_address)
                    if index in self._index_by_key.values():
                        raise ConfigurationError(f"Pinned address {value} for {key} is already in use")
                    self._index_by_key[f"{key}@{net.version}"] = index
            pair = AddressPair(ipv4=ipv4, ipv6=ipv6)
            self._pairs[key] = pair
            return pair

    def get(self, key: str) -> AddressPair:
        with self._lock:
            try:
                return self._pairs[key]
            except KeyError:
                raise KeyError(f"No address allocated for {key!r}") from None

    def items(self) -> Tuple[Tuple[str, AddressPair], ...]:
        with self._lock:
            return tuple(self._pairs.items())

    def environment(self) -> Dict[str, str]:
        """
        Render allocations as ``<NAME>_IP`` / ``<NAME>_IPV6`` variables.

        Container definitions that expect this shape get it from the
        allocator instead of from per-service naming conventions.
        """
        env: Dict[str, str] = {}
        for key, pair in self.items():
            if "~" in key:
                continue
            stem = key.upper().replace("-", "_").replace(".", "_")
            if pair.ipv4:
                env[f"{stem}_IP"] = pair.ipv4
            if pair.ipv6:
                env[f"{stem}_IPV6"] = pair.ipv6
        return env

    def _claim_index(self, key: str) -> int:
        used = set(self._index_by_key.values())
        index = self._next_index
        while index in used:
            index += 1
        if index >= self.capacity_v4:
            raise AddressExhaustedError(
                f"Subnet {self.subnet_v4} has no free address for {key}",
                details={"subnet": str(self.subnet_v4), "allocated": len(self._pairs)},
            )
        self._index_by_key[key] = index
        self._next_index = index + 1
        return index

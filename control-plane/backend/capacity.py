#!/usr/bin/env python3
"""
Port capacity accounting for backend Subnets.

A Subnet can take another port while the ports it already has plus the
allocations handed out but not yet turned into ports stay below its usable
address count.
"""

import logging
import threading
from collections import defaultdict
from typing import Dict

from config import RESERVED_IP_COUNT

from .client import BackendClient, VpcSubnet

logger = logging.getLogger(__name__)


def has_capacity(total: int, used: int, reserved: int = RESERVED_IP_COUNT) -> bool:
    return used < total - reserved


class PortCapacityProbe:
    """
    Capacity test with pending-allocation bookkeeping.

    A successful probe reserves one pending slot on the Subnet; the consumer
    calls release() once its port exists (or it gave up), so that two
    concurrent callers never both take the last free address.
    """

    def __init__(self, backend: BackendClient, subnet_locks=None, reserved: int = RESERVED_IP_COUNT):
        self.backend = backend
        self.subnet_locks = subnet_locks
        self.reserved = reserved
        self._mutex = threading.Lock()
        self._pending: Dict[str, int] = defaultdict(int)

    def port_count(self, subnet: VpcSubnet) -> int:
        return len(self.backend.list_ports_of_subnet(subnet.id))

    def pending(self, path: str) -> int:
        with self._mutex:
            return self._pending.get(path, 0)

    def _probe(self, subnet: VpcSubnet) -> bool:
        current = self.backend.get_subnet_by_path(subnet.path)
        if current is None:
            logger.debug(f"Subnet {subnet.path} no longer exists")
            return False
        subnet = current
        ports = self.port_count(subnet)
        with self._mutex:
            used = ports + self._pending.get(subnet.path, 0)
            if not has_capacity(subnet.total_addresses(), used, self.reserved):
                return False
            self._pending[subnet.path] += 1
        return True

    def __call__(self, subnet: VpcSubnet) -> bool:
        if self.subnet_locks is None:
            return self._probe(subnet)
        # Deletion takes the write lock on the same path
        with self.subnet_locks.read_locked(subnet.path):
            return self._probe(subnet)

    def release(self, path: str):
        with self._mutex:
            if self._pending.get(path, 0) > 0:
                self._pending[path] -= 1
            if not self._pending.get(path):
                self._pending.pop(path, None)

    def forget(self, path: str):
        with self._mutex:
            self._pending.pop(path, None)

    def is_empty(self, subnet: VpcSubnet) -> bool:
        """No ports and no allocation in flight."""
        if self.pending(subnet.path):
            return False
        return self.port_count(subnet) == 0

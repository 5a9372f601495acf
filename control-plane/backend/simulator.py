#!/usr/bin/env python3
"""
In-memory network backend.

Stands in for the network-virtualization manager: keeps VPCs, Subnets, ports
and bindings in dictionaries, hands out network addresses from 10.0.0.0/8 and
can inject latency and failures so reconciliation paths can be exercised.
"""

import copy
import ipaddress
import logging
import threading
import time
import uuid
from collections import defaultdict
from typing import Dict, List, Optional

from errors import BackendError

from .client import (
    BackendClient,
    BackendPort,
    SubnetBinding,
    VPCInfo,
    VpcSubnet,
)

logger = logging.getLogger(__name__)

ADDRESS_POOL = ipaddress.ip_network("10.0.0.0/8")


class InMemoryBackend(BackendClient):
    def __init__(self, latency_seconds: float = 0):
        self.latency_seconds = latency_seconds
        self._lock = threading.Lock()
        self._subnets: Dict[str, VpcSubnet] = {}
        self._ports: Dict[str, BackendPort] = {}
        self._bindings: Dict[str, SubnetBinding] = {}
        self._vpcs: Dict[str, List[VPCInfo]] = defaultdict(list)
        self._failures: Dict[str, int] = {}
        self._next_address = int(ADDRESS_POOL.network_address)
        self.calls: Dict[str, int] = defaultdict(int)

    # Test and simulation hooks

    def fail_next(self, operation: str, count: int = 1):
        """Make the next `count` calls of `operation` raise BackendError."""
        with self._lock:
            self._failures[operation] = self._failures.get(operation, 0) + count

    def register_vpc(self, namespace: str, vpc_info: VPCInfo):
        with self._lock:
            if all(v.path != vpc_info.path for v in self._vpcs[namespace]):
                self._vpcs[namespace].append(vpc_info)

    def create_binding(self, subnet_path: str, parent_subnet_path: str, vlan: int = 0) -> SubnetBinding:
        binding = SubnetBinding(
            id=f"binding-{uuid.uuid4().hex[:8]}",
            subnet_path=subnet_path,
            parent_subnet_path=parent_subnet_path,
            vlan_traffic_tag=vlan,
        )
        with self._lock:
            self._bindings[binding.id] = binding
        return copy.deepcopy(binding)

    def _call(self, operation: str):
        with self._lock:
            self.calls[operation] += 1
            pending = self._failures.get(operation, 0)
            if pending:
                self._failures[operation] = pending - 1
        if pending:
            raise BackendError(f"simulated backend failure in {operation}")
        if self.latency_seconds:
            time.sleep(self.latency_seconds)

    def _allocate_cidr(self, size: int) -> str:
        size = max(size, 4)
        prefix = ADDRESS_POOL.max_prefixlen - (size - 1).bit_length()
        # Align the cursor to the block size
        start = -(-self._next_address // size) * size
        self._next_address = start + size
        return str(ipaddress.ip_network((start, prefix)))

    # BackendClient

    def list_subnets(self) -> List[VpcSubnet]:
        self._call("list_subnets")
        with self._lock:
            return copy.deepcopy(list(self._subnets.values()))

    def list_subnets_by_tag(self, scope: str, value: str) -> List[VpcSubnet]:
        self._call("list_subnets_by_tag")
        with self._lock:
            return [
                copy.deepcopy(s)
                for s in self._subnets.values()
                if any(t.scope == scope and t.value == value for t in s.tags)
            ]

    def get_subnet_by_path(self, path: str) -> Optional[VpcSubnet]:
        self._call("get_subnet_by_path")
        with self._lock:
            subnet = self._subnets.get(path)
            return copy.deepcopy(subnet) if subnet else None

    def create_subnet(self, vpc_info: VPCInfo, subnet: VpcSubnet) -> VpcSubnet:
        self._call("create_subnet")
        created = copy.deepcopy(subnet)
        created.vpc_path = vpc_info.path
        created.path = f"{vpc_info.path}/subnets/{created.id}"
        with self._lock:
            if created.path in self._subnets:
                raise BackendError(f"Subnet {created.path} already exists")
            if created.ip_addresses:
                created.network_addresses = list(created.ip_addresses)
            else:
                created.network_addresses = [self._allocate_cidr(created.ipv4_subnet_size)]
            self._subnets[created.path] = created
        logger.info(f"Backend: created Subnet {created.path}")
        return copy.deepcopy(created)

    def update_subnet(self, subnet: VpcSubnet) -> VpcSubnet:
        self._call("update_subnet")
        with self._lock:
            if subnet.path not in self._subnets:
                raise BackendError(f"Subnet {subnet.path} not found")
            self._subnets[subnet.path] = copy.deepcopy(subnet)
        return copy.deepcopy(subnet)

    def delete_subnet(self, subnet: VpcSubnet):
        self._call("delete_subnet")
        with self._lock:
            if any(p.subnet_path == subnet.path for p in self._ports.values()):
                raise BackendError(f"Subnet {subnet.path} still has ports")
            if any(b.subnet_path == subnet.path for b in self._bindings.values()):
                raise BackendError(f"Subnet {subnet.path} is referenced by a binding")
            self._subnets.pop(subnet.path, None)
        logger.info(f"Backend: deleted Subnet {subnet.path}")

    def list_ports_of_subnet(self, subnet_id: str) -> List[BackendPort]:
        self._call("list_ports_of_subnet")
        with self._lock:
            return [copy.deepcopy(p) for p in self._ports.values() if p.subnet_id == subnet_id]

    def create_port(self, subnet_path: str, owner_uid: str) -> BackendPort:
        self._call("create_port")
        with self._lock:
            subnet = self._subnets.get(subnet_path)
            if subnet is None:
                raise BackendError(f"Subnet {subnet_path} not found")
            port = BackendPort(
                id=f"port-{uuid.uuid4().hex[:8]}",
                subnet_id=subnet.id,
                subnet_path=subnet_path,
                owner_uid=owner_uid,
            )
            self._ports[port.id] = port
        return copy.deepcopy(port)

    def delete_port(self, port_id: str):
        self._call("delete_port")
        with self._lock:
            self._ports.pop(port_id, None)

    def list_vpc_candidates(self, namespace: str) -> List[VPCInfo]:
        self._call("list_vpc_candidates")
        with self._lock:
            return copy.deepcopy(self._vpcs.get(namespace, []))

    def list_bindings_of_subnet(self, subnet_path: str) -> List[SubnetBinding]:
        self._call("list_bindings_of_subnet")
        with self._lock:
            return [
                copy.deepcopy(b)
                for b in self._bindings.values()
                if b.subnet_path == subnet_path
            ]

    def delete_binding(self, binding: SubnetBinding):
        self._call("delete_binding")
        with self._lock:
            self._bindings.pop(binding.id, None)

#!/usr/bin/env python3
"""
SubnetSet controller wiring.

Builds the lock registries, backend services, allocator, reconciler, work
queue and garbage collector around one session factory and one backend, and
maps cluster object changes to the SubnetSet keys that must be reconciled.
"""

import logging
from typing import Optional

from config import (
    BACKEND_LATENCY_SECONDS,
    GC_INTERVAL_SECONDS,
    MAX_CONCURRENT_RECONCILES,
    REQUEUE_DELAY_SECONDS,
)
from errors import ControlPlaneError, ErrorKind, NotFoundError

from api import shared_api_logic as services
from api.admission import SubnetSetValidator
from api.models import DEFAULT_POD_NETWORK, DEFAULT_VM_NETWORK, default_network_of
from backend.capacity import PortCapacityProbe
from backend.client import (
    TAG_SCOPE_NAMESPACE,
    TAG_SCOPE_SUBNET_NAME,
    TAG_SCOPE_SUBNET_UID,
    BackendClient,
    Tag,
    VpcSubnet,
)
from backend.simulator import InMemoryBackend
from backend.subnet_service import ANNOTATION_ASSOCIATED_RESOURCE, DHCP_DEACTIVATED, SubnetService

from .allocator import SubnetAllocator
from .event_recorder import EventRecorder
from .garbage_collector import GarbageCollector
from .locks import LockRegistry
from .reconciler import SubnetSetReconciler
from .workqueue import ReconciliationEngine

logger = logging.getLogger(__name__)


class SubnetSetController:
    def __init__(
        self,
        db_factory,
        backend: Optional[BackendClient] = None,
        workers: int = MAX_CONCURRENT_RECONCILES,
        requeue_delay: float = REQUEUE_DELAY_SECONDS,
        gc_interval: float = GC_INTERVAL_SECONDS,
    ):
        self.db_factory = db_factory
        self.backend = backend or InMemoryBackend(latency_seconds=BACKEND_LATENCY_SECONDS)
        self.subnetset_locks = LockRegistry()
        self.subnet_locks = LockRegistry()
        self.probe = PortCapacityProbe(self.backend, self.subnet_locks)
        self.subnet_service = SubnetService(self.backend, self.subnet_locks, self.probe)
        self.recorder = EventRecorder()
        self.allocator = SubnetAllocator(db_factory, self.subnet_service, self.subnetset_locks, self.probe)
        self.reconciler = SubnetSetReconciler(db_factory, self.subnet_service, self.recorder)
        self.engine = ReconciliationEngine(self.reconciler.reconcile, workers, requeue_delay)
        self.gc = GarbageCollector(
            db_factory, self.subnet_service, self.subnetset_locks, self.subnet_locks, gc_interval
        )
        self.validator = SubnetSetValidator(
            db_factory, self.subnet_service, self.subnetset_locks, self.allocator
        )

    def start(self):
        db = self.db_factory()
        try:
            restored = self.allocator.restore_consumers(services.list_allocated_subnetports_logic(db))
            logger.info(f"Restored {restored} SubnetPort allocations")
            for subnetset in services.list_subnetsets_logic(db):
                self.enqueue_subnetset(subnetset.namespace, subnetset.name)
        finally:
            db.close()
        self.engine.start()
        self.gc.start()

    def stop(self):
        self.gc.stop()
        self.engine.stop()

    # Event mapping

    def enqueue_subnetset(self, namespace: str, name: str):
        self.engine.enqueue(namespace, name)

    def enqueue_namespace(self, namespace: str):
        """Namespace labels feed Subnet tags, so every SubnetSet in it is resynced."""
        db = self.db_factory()
        try:
            names = [s.name for s in services.list_subnetsets_logic(db, namespace)]
        finally:
            db.close()
        for name in names:
            self.enqueue_subnetset(namespace, name)

    def enqueue_binding_map_targets(self, namespace: str, *targets: Optional[str]):
        for target in {t for t in targets if t}:
            self.enqueue_subnetset(namespace, target)

    # Pre-created Subnets

    def realize_subnet(self, subnet_cr):
        """Create the backend Subnet for a Subnet object, unless it names an existing one."""
        if (subnet_cr.annotations or {}).get(ANNOTATION_ASSOCIATED_RESOURCE):
            return self.subnet_service.get_subnet_for_cr(subnet_cr)
        vpcs = self.backend.list_vpc_candidates(subnet_cr.namespace)
        if not vpcs:
            raise ControlPlaneError(f"no VPC found for namespace {subnet_cr.namespace}", ErrorKind.TRANSIENT)
        subnet = VpcSubnet(
            id=f"{subnet_cr.name}_{subnet_cr.uid[:5]}",
            display_name=subnet_cr.name,
            ipv4_subnet_size=subnet_cr.ipv4_subnet_size or 0,
            ip_addresses=list(subnet_cr.ip_addresses or []),
            access_mode=subnet_cr.access_mode or "Private",
            dhcp_mode=subnet_cr.dhcp_mode or DHCP_DEACTIVATED,
            tags=[
                Tag(TAG_SCOPE_NAMESPACE, subnet_cr.namespace),
                Tag(TAG_SCOPE_SUBNET_NAME, subnet_cr.name),
                Tag(TAG_SCOPE_SUBNET_UID, subnet_cr.uid),
            ],
        )
        return self.backend.create_subnet(vpcs[0], subnet)

    # Consumers

    def _subnetset_for_port(self, db, port):
        if port.subnetset:
            subnetset = services.get_subnetset_logic(db, port.namespace, port.subnetset)
            if subnetset is None:
                raise NotFoundError("SubnetSet", f"{port.namespace}/{port.subnetset}")
            return subnetset
        return self.default_subnetset(db, port.namespace, DEFAULT_VM_NETWORK)

    def default_subnetset(self, db, namespace: str, network: str = DEFAULT_POD_NETWORK):
        for subnetset in services.list_subnetsets_logic(db, namespace):
            if default_network_of(subnetset) == network:
                return subnetset
        raise NotFoundError(f"default {network} SubnetSet", namespace)

    def attach_port(self, db, port):
        """Allocate a Subnet for a SubnetPort and create its backend port."""
        if port.subnet:
            subnet_cr = services.get_subnet_logic(db, port.namespace, port.subnet)
            if subnet_cr is None:
                raise NotFoundError("Subnet", f"{port.namespace}/{port.subnet}")
            path = self.subnet_service.get_subnet_for_cr(subnet_cr).path
            backend_port = self.backend.create_port(path, port.uid)
            return services.update_subnetport_logic(db, port, path, backend_port.id)

        subnetset = self._subnetset_for_port(db, port)
        created = {}

        def create_backend_port(path: str):
            created["port"] = self.backend.create_port(path, port.uid)

        path = self.allocator.allocate_for_consumer(port.uid, subnetset, create_backend_port)
        logger.info(f"Attached SubnetPort {port.namespace}/{port.name} to Subnet {path}")
        # A cached allocation means the backend port already exists
        port_id = created["port"].id if "port" in created else port.port_id
        return services.update_subnetport_logic(db, port, path, port_id)

    def detach_port(self, port):
        if port.port_id:
            self.backend.delete_port(port.port_id)
        self.allocator.forget_consumer(port.uid)


# Singleton for use across the application
_controller: Optional[SubnetSetController] = None


def get_controller() -> SubnetSetController:
    global _controller
    if _controller is None:
        from api.database import SessionLocal

        _controller = SubnetSetController(SessionLocal)
    return _controller

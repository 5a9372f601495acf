#!/usr/bin/env python3
"""
Subnet Allocator

Picks a backend Subnet with spare capacity for a consumer of a SubnetSet.

- Pre-created SubnetSets: walk the named Subnets in order under the
  SubnetSet read lock, so many consumers allocate in parallel.
- Auto-provisioned SubnetSets: reuse a tagged Subnet with room, otherwise
  create one, all under the SubnetSet write lock so that contention creates
  at most one new Subnet.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Optional

from errors import ControlPlaneError, ErrorKind, NotFoundError, aggregate
from metrics import METRICS

from api import shared_api_logic as services
from backend.capacity import PortCapacityProbe
from backend.subnet_service import SubnetService

from .locks import LockRegistry
from .tags import build_subnetset_tags

logger = logging.getLogger(__name__)

MODE_PRE_CREATED = "pre-created"
MODE_AUTO = "auto"


class SubnetAllocator:
    def __init__(
        self,
        db_factory,
        subnet_service: SubnetService,
        subnetset_locks: LockRegistry,
        probe: PortCapacityProbe,
    ):
        self.db_factory = db_factory
        self.subnet_service = subnet_service
        self.backend = subnet_service.backend
        self.subnetset_locks = subnetset_locks
        self.probe = probe
        self._consumers: Dict[str, str] = {}
        self._consumers_lock = threading.Lock()

    @contextmanager
    def allocation(self, subnetset, probe: Optional[Callable] = None):
        """
        Yield the path of a Subnet with room for one more port.

        In pre-created mode the SubnetSet read lock is held until the block
        exits, so a concurrent spec update that removes Subnets waits for
        the caller to create its port.
        """
        probe = probe or self.probe
        if subnetset.subnet_names is not None:
            lock = self.subnetset_locks.acquire_read(subnetset.uid)
            try:
                path = self._record(MODE_PRE_CREATED, self._allocate_pre_created, subnetset, probe)
                yield path
            finally:
                self.subnetset_locks.release_read(subnetset.uid, lock)
        else:
            with self.subnetset_locks.write_locked(subnetset.uid):
                path = self._record(MODE_AUTO, self._allocate_auto, subnetset, probe)
            yield path

    def allocate(self, subnetset, probe: Optional[Callable] = None) -> str:
        """
        Allocate and return the path.

        The probe slot stays reserved, and the Subnet is kept from garbage
        collection, until the caller passes the path to probe.release().
        """
        with self.allocation(subnetset, probe) as path:
            return path

    def _record(self, mode: str, allocate, subnetset, probe) -> str:
        try:
            path = allocate(subnetset, probe)
        except Exception:
            METRICS["allocations"].labels(mode=mode, result="fail").inc()
            raise
        METRICS["allocations"].labels(mode=mode, result="success").inc()
        return path

    def _allocate_pre_created(self, subnetset, probe) -> str:
        db = self.db_factory()
        try:
            current = services.get_subnetset_logic(db, subnetset.namespace, subnetset.name)
            if current is None:
                raise NotFoundError("SubnetSet", subnetset.key)
            errors = []
            for name in current.subnet_names or []:
                subnet_cr = services.get_subnet_logic(db, current.namespace, name)
                if subnet_cr is None:
                    errors.append(NotFoundError("Subnet", f"{current.namespace}/{name}"))
                    continue
                try:
                    subnet = self.subnet_service.get_subnet_for_cr(subnet_cr)
                    if probe(subnet):
                        logger.debug(f"Allocated Subnet {subnet.path} from SubnetSet {current.key}")
                        return subnet.path
                except Exception as e:
                    errors.append(e)
        finally:
            db.close()

        err = aggregate(errors)
        if err is not None:
            raise err
        raise ControlPlaneError(
            f"all Subnets for SubnetSet {subnetset.key} are not available", ErrorKind.TRANSIENT
        )

    def _allocate_auto(self, subnetset, probe) -> str:
        for subnet in self.subnet_service.list_for_subnetset(subnetset.uid):
            if probe(subnet):
                logger.debug(f"Reused Subnet {subnet.path} for SubnetSet {subnetset.key}")
                return subnet.path

        db = self.db_factory()
        try:
            namespace = services.get_namespace_logic(db, subnetset.namespace)
        finally:
            db.close()
        if namespace is None:
            raise NotFoundError("Namespace", subnetset.namespace)
        tags = build_subnetset_tags(subnetset, namespace)

        vpcs = self.backend.list_vpc_candidates(subnetset.namespace)
        if not vpcs:
            raise ControlPlaneError(
                f"no VPC found for namespace {subnetset.namespace}", ErrorKind.TRANSIENT
            )
        subnet = self.subnet_service.create_subnet(subnetset, vpcs[0], tags)
        if probe(subnet):
            return subnet.path
        raise ControlPlaneError(
            f"cannot allocate Port from SubnetSet {subnetset.key}", ErrorKind.TRANSIENT
        )

    # Consumer cache

    def get_cached_path_for_consumer(self, consumer_uid: str) -> str:
        with self._consumers_lock:
            return self._consumers.get(consumer_uid, "")

    def allocate_for_consumer(
        self, consumer_uid: str, subnetset, on_allocated: Optional[Callable[[str], None]] = None
    ) -> str:
        """
        Allocate once per consumer and remember the result.

        on_allocated runs while the allocation is held; once it returns the
        pending slot is released because the consumer's port now exists.
        """
        cached = self.get_cached_path_for_consumer(consumer_uid)
        if cached:
            return cached
        with self.allocation(subnetset) as path:
            try:
                if on_allocated is not None:
                    on_allocated(path)
            finally:
                self.probe.release(path)
        with self._consumers_lock:
            self._consumers[consumer_uid] = path
        return path

    def forget_consumer(self, consumer_uid: str):
        with self._consumers_lock:
            self._consumers.pop(consumer_uid, None)

    def consumer_paths(self) -> Dict[str, str]:
        with self._consumers_lock:
            return dict(self._consumers)

    def restore_consumers(self, ports) -> int:
        """Seed the cache from SubnetPorts that already hold a Subnet."""
        with self._consumers_lock:
            for port in ports:
                self._consumers[port.uid] = port.subnet_path
            return len(self._consumers)

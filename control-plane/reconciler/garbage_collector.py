#!/usr/bin/env python3
"""
SubnetSet Garbage Collector

Periodic sweep that scales in empty backend Subnets of live SubnetSets,
removes Subnets whose owning SubnetSet is gone and drops lock entries for
identities that no longer exist.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from config import GC_INTERVAL_SECONDS
from errors import ControlPlaneError
from metrics import METRICS, RES_TYPE_SUBNETSET, record_delete

from api import shared_api_logic as services
from backend.client import TAG_SCOPE_SUBNETSET_UID
from backend.subnet_service import SubnetService, subnet_status

from .locks import LockRegistry

logger = logging.getLogger(__name__)


@dataclass
class GarbageCollectionResult:
    subnetsets_checked: int = 0
    orphan_subnets: int = 0
    stale_ports: bool = False
    locks_swept: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0

    @property
    def success(self) -> bool:
        return not self.errors


class GarbageCollector:
    def __init__(
        self,
        db_factory,
        subnet_service: SubnetService,
        subnetset_locks: LockRegistry,
        subnet_locks: LockRegistry,
        interval_seconds: float = GC_INTERVAL_SECONDS,
    ):
        self.db_factory = db_factory
        self.subnet_service = subnet_service
        self.subnetset_locks = subnetset_locks
        self.subnet_locks = subnet_locks
        self.interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="subnetset-gc", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run(self):
        logger.info("SubnetSet garbage collector started")
        while not self._stop_event.wait(self.interval):
            try:
                result = self.collect_garbage()
                if result.errors:
                    for error in result.errors:
                        logger.error(f"Garbage collection error: {error}")
            except Exception as e:
                logger.exception(f"Garbage collection failed: {e}")
        logger.info("SubnetSet garbage collector stopped")

    def _delete(self, subnets, result: GarbageCollectionResult) -> bool:
        has_stale_port, err = self.subnet_service.delete_subnets(subnets, delete_dependencies=True)
        result.stale_ports = result.stale_ports or has_stale_port
        if err is not None:
            result.errors.append(str(err))
            METRICS["gc_deletions"].labels(result="fail").inc()
            return False
        METRICS["gc_deletions"].labels(result="success").inc()
        return True

    def _refresh_status(self, subnetset, result: GarbageCollectionResult):
        """Rewrite status.subnets to the Subnets left after scale-in."""
        remaining = subnet_status(self.subnet_service.list_for_subnetset(subnetset.uid))
        db = self.db_factory()
        try:
            current = services.get_subnetset_logic(db, subnetset.namespace, subnetset.name)
            if current is None or current.uid != subnetset.uid:
                return
            if remaining == (current.status_subnets or []):
                return
            services.update_subnetset_status_logic(db, current, status_subnets=remaining)
            logger.info(f"Updated Subnets in status of SubnetSet {subnetset.key}")
        except ControlPlaneError as e:
            result.errors.append(f"failed to update status of SubnetSet {subnetset.key}: {e}")
        finally:
            db.close()

    def collect_garbage(self) -> GarbageCollectionResult:
        start_time = time.time()
        result = GarbageCollectionResult()

        db = self.db_factory()
        try:
            subnetsets = services.list_subnetsets_logic(db)
        finally:
            db.close()
        live_uids = {s.uid for s in subnetsets}

        created = self.subnet_service.list_created_by_subnetset()
        if created:
            for subnetset in subnetsets:
                owned = [s for s in created if s.tag_value(TAG_SCOPE_SUBNETSET_UID) == subnetset.uid]
                result.subnetsets_checked += 1
                if not owned:
                    continue
                record_delete(RES_TYPE_SUBNETSET, self._delete(owned, result))
                self._refresh_status(subnetset, result)

            orphans = [s for s in created if self.subnet_service.is_orphan(s, live_uids)]
            result.orphan_subnets = len(orphans)
            if orphans:
                logger.info(f"Garbage collecting {len(orphans)} orphaned Subnets")
                record_delete(RES_TYPE_SUBNETSET, self._delete(orphans, result))

        result.locks_swept += self.subnetset_locks.sweep(live_uids)
        live_paths = [s.path for s in self.subnet_service.backend.list_subnets()]
        result.locks_swept += self.subnet_locks.sweep(live_paths)

        result.duration_ms = (time.time() - start_time) * 1000
        return result

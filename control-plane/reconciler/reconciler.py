#!/usr/bin/env python3
"""
SubnetSet Reconciliation Engine

Drives one SubnetSet from its declared state to the backend:

- finalizer bookkeeping for binding maps that target the SubnetSet
- spec defaulting from the namespace network configuration
- tag and DHCP propagation to the backend Subnets it owns
- ordered cleanup of backend Subnets on deletion
- Ready / DeleteFailure status conditions

Every failure carries an ErrorKind, and the caller requeues based on it.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from config import MIN_SUBNET_SIZE, SUBNETSET_FINALIZER
from errors import (
    ControlPlaneError,
    ErrorKind,
    InvalidSubnetSizeError,
    NotFoundError,
    StalePortError,
    is_retryable,
)
from metrics import METRICS, RES_TYPE_SUBNETSET, record_delete, record_update

from api import shared_api_logic as services
from api.models import MODE_PRE_CREATED
from backend.client import TAG_SCOPE_SUBNETSET_UID
from backend.subnet_service import SubnetService, subnet_status

from .event_recorder import (
    EVENT_NORMAL,
    EVENT_WARNING,
    REASON_FAILED_DELETE,
    REASON_FAILED_UPDATE,
    REASON_SUCCESSFUL_CREATE_OR_UPDATE,
    REASON_SUCCESSFUL_DELETE,
    EventRecorder,
)
from .tags import build_subnetset_tags

logger = logging.getLogger(__name__)

KIND_SUBNETSET = "SubnetSet"

CONDITION_READY = "Ready"
CONDITION_DELETE_FAILURE = "DeleteFailure"

MESSAGE_READY = "SubnetSet has been successfully created/updated"
MESSAGE_NOT_READY = "SubnetSet could not be created/updated"
REASON_READY = "SubnetsReady"
REASON_NOT_READY = "SubnetNotReady"
REASON_SUBNET_IN_USE = "SubnetInUse"
REASON_DELETE_FAILED = "SubnetDeleteFailed"

PHASE_UPDATE = "update"
PHASE_DELETE = "delete"


@dataclass
class ReconcileResult:
    """Result of reconciling one SubnetSet."""

    key: str
    success: bool = True
    error: Optional[Exception] = None
    requeue: bool = False
    phase: str = PHASE_UPDATE
    actions_taken: List[str] = field(default_factory=list)
    duration_ms: float = 0


def is_valid_subnet_size(size: int, minimum: int = MIN_SUBNET_SIZE) -> bool:
    return size >= minimum and size & (size - 1) == 0


def merge_condition(conditions: List[dict], new: dict) -> Tuple[List[dict], bool]:
    """
    Merge one condition into a list keyed by type.

    Returns the merged list and whether anything changed.
    """
    fields = ("status", "reason", "message")
    merged = [dict(c) for c in conditions or []]
    for existing in merged:
        if existing.get("type") == new["type"]:
            if all(existing.get(f) == new.get(f) for f in fields):
                return merged, False
            existing.update({f: new.get(f) for f in fields})
            existing["lastTransitionTime"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
            return merged, True
    added = dict(new)
    added["lastTransitionTime"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    merged.append(added)
    return merged, True


def ready_condition(ready: bool, error: Optional[Exception] = None) -> dict:
    if ready:
        return {"type": CONDITION_READY, "status": "True", "reason": REASON_READY, "message": MESSAGE_READY}
    message = MESSAGE_NOT_READY if error is None else f"{MESSAGE_NOT_READY}: {error}"
    return {"type": CONDITION_READY, "status": "False", "reason": REASON_NOT_READY, "message": message}


class SubnetSetReconciler:
    def __init__(
        self,
        db_factory,
        subnet_service: SubnetService,
        recorder: Optional[EventRecorder] = None,
        finalizer: str = SUBNETSET_FINALIZER,
        min_subnet_size: int = MIN_SUBNET_SIZE,
    ):
        self.db_factory = db_factory
        self.subnet_service = subnet_service
        self.recorder = recorder or EventRecorder()
        self.finalizer = finalizer
        self.min_subnet_size = min_subnet_size

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        start_time = time.time()
        result = ReconcileResult(key=f"{namespace}/{name}")
        METRICS["controller_sync"].labels(res_type=RES_TYPE_SUBNETSET).inc()
        logger.info(f"Reconciling SubnetSet {result.key}")

        db = self.db_factory()
        try:
            self._reconcile(db, namespace, name, result)
        except Exception as e:
            result.success = False
            result.error = e
            result.requeue = is_retryable(e)
            self._on_failure(db, namespace, name, result)
        finally:
            db.close()

        result.duration_ms = (time.time() - start_time) * 1000
        METRICS["reconciliation_latency"].observe(result.duration_ms)
        return result

    def _reconcile(self, db, namespace: str, name: str, result: ReconcileResult):
        subnetset = services.get_subnetset_logic(db, namespace, name)
        if subnetset is None:
            result.phase = PHASE_DELETE
            self._cleanup_deleted(db, namespace, name, result)
            return

        binding_maps = services.list_binding_maps_for_subnetset_logic(db, namespace, name)
        subnetset = self._sync_finalizer(db, subnetset, bool(binding_maps), result)
        if subnetset is None:
            # Last finalizer removed from an object already marked for deletion
            result.phase = PHASE_DELETE
            self._cleanup_deleted(db, namespace, name, result)
            return

        if subnetset.deletion_timestamp is not None:
            result.phase = PHASE_DELETE
            self._reconcile_delete(db, subnetset, result)
            return

        self._reconcile_live(db, subnetset, result)

    def _sync_finalizer(self, db, subnetset, bound: bool, result: ReconcileResult):
        has_finalizer = self.finalizer in (subnetset.finalizers or [])
        if bound and not has_finalizer:
            subnetset = services.add_finalizer_logic(db, subnetset, self.finalizer)
            result.actions_taken.append("add_finalizer")
            logger.debug(f"Added finalizer on SubnetSet {subnetset.key}")
        elif not bound and has_finalizer:
            key = subnetset.key
            subnetset = services.remove_finalizer_logic(db, subnetset, self.finalizer)
            result.actions_taken.append("remove_finalizer")
            logger.debug(f"Removed finalizer from SubnetSet {key}")
        return subnetset

    def _cleanup_deleted(self, db, namespace: str, name: str, result: ReconcileResult):
        """Remove backend Subnets left behind by a SubnetSet that no longer exists."""
        live_uids = {s.uid for s in services.list_subnetsets_logic(db)}
        subnets = [
            s
            for s in self.subnet_service.list_by_subnetset_name(namespace, name)
            if s.tag_value(TAG_SCOPE_SUBNETSET_UID) not in live_uids
        ]
        if not subnets:
            return
        has_stale_port, err = self.subnet_service.delete_subnets(subnets, delete_dependencies=False)
        if err is not None:
            raise err
        if has_stale_port:
            raise StalePortError(f"SubnetSet {namespace}/{name} still has Subnets with ports")
        result.actions_taken.append("delete_subnets")
        record_delete(RES_TYPE_SUBNETSET, True)
        self.recorder.event(
            KIND_SUBNETSET, f"{namespace}/{name}", EVENT_NORMAL, REASON_SUCCESSFUL_DELETE,
            f"deleted {len(subnets)} Subnets",
        )

    def _reconcile_delete(self, db, subnetset, result: ReconcileResult):
        owned = self.subnet_service.list_for_subnetset(subnetset.uid)
        bound = self.subnet_service.has_bindings(owned)
        if bound:
            message = f"Subnets {', '.join(bound)} are still referenced by bindings"
            self._set_conditions(db, subnetset, [self._delete_failure(REASON_SUBNET_IN_USE, message)])
            raise ControlPlaneError(
                f"SubnetSet {subnetset.key} cannot be deleted: {message}", ErrorKind.TRANSIENT
            )

        has_stale_port, err = self.subnet_service.delete_subnets(owned, delete_dependencies=False)
        if err is not None or has_stale_port:
            message = str(err) if err is not None else "Subnets still have ports attached"
            self._set_conditions(db, subnetset, [self._delete_failure(REASON_DELETE_FAILED, message)])
            if err is not None:
                raise err
            raise StalePortError(f"SubnetSet {subnetset.key} cannot be deleted: {message}")

        services.update_subnetset_status_logic(db, subnetset, status_subnets=[])
        result.actions_taken.append("delete_subnets")
        record_delete(RES_TYPE_SUBNETSET, True)
        self.recorder.event(
            KIND_SUBNETSET, subnetset.key, EVENT_NORMAL, REASON_SUCCESSFUL_DELETE,
            "SubnetSet Subnets have been deleted",
        )

    def _reconcile_live(self, db, subnetset, result: ReconcileResult):
        changes = {}
        if subnetset.provisioning_mode() != MODE_PRE_CREATED:
            if not subnetset.access_mode or not subnetset.ipv4_subnet_size:
                config = services.get_vpc_network_config_logic(db, subnetset.namespace)
                if config is None:
                    raise ControlPlaneError(
                        f"failed to find VPCNetworkConfig for namespace {subnetset.namespace}",
                        ErrorKind.TRANSIENT,
                    )
                if not subnetset.access_mode:
                    changes["access_mode"] = config.default_subnet_access_mode or "Private"
                if not subnetset.ipv4_subnet_size:
                    changes["ipv4_subnet_size"] = config.default_subnet_size
            size = changes.get("ipv4_subnet_size", subnetset.ipv4_subnet_size)
            if not is_valid_subnet_size(size, self.min_subnet_size):
                raise InvalidSubnetSizeError(size, self.min_subnet_size)
        if changes:
            subnetset = services.update_subnetset_logic(db, subnetset, **changes)
            result.actions_taken.append("apply_defaults")

        owned = self.subnet_service.list_for_subnetset(subnetset.uid)
        if owned:
            namespace = services.get_namespace_logic(db, subnetset.namespace)
            if namespace is None:
                raise NotFoundError("Namespace", subnetset.namespace)
            tags = build_subnetset_tags(subnetset, namespace)
            self.subnet_service.update_tags(owned, tags, subnetset.dhcp_mode)

        status_subnets = self._status_subnets(db, subnetset, owned)
        self._set_conditions(db, subnetset, [ready_condition(True)], status_subnets=status_subnets)
        record_update(RES_TYPE_SUBNETSET, True)
        self.recorder.event(
            KIND_SUBNETSET, subnetset.key, EVENT_NORMAL, REASON_SUCCESSFUL_CREATE_OR_UPDATE, MESSAGE_READY
        )

    def _status_subnets(self, db, subnetset, owned) -> List[dict]:
        subnets = list(owned)
        if subnetset.provisioning_mode() == MODE_PRE_CREATED:
            for name in subnetset.subnet_names or []:
                subnet_cr = services.get_subnet_logic(db, subnetset.namespace, name)
                if subnet_cr is None:
                    continue
                try:
                    subnets.append(self.subnet_service.get_subnet_for_cr(subnet_cr))
                except NotFoundError:
                    logger.debug(f"Subnet {subnetset.namespace}/{name} is not realized yet")
        return subnet_status(subnets)

    def _delete_failure(self, reason: str, message: str) -> dict:
        return {"type": CONDITION_DELETE_FAILURE, "status": "True", "reason": reason, "message": message}

    def _set_conditions(self, db, subnetset, conditions: List[dict], status_subnets: Optional[List[dict]] = None):
        merged = subnetset.conditions or []
        changed = False
        for condition in conditions:
            merged, updated = merge_condition(merged, condition)
            changed = changed or updated
        if status_subnets is not None and status_subnets != (subnetset.status_subnets or []):
            changed = True
        if not changed:
            return subnetset
        return services.update_subnetset_status_logic(
            db, subnetset, conditions=merged, status_subnets=status_subnets
        )

    def _on_failure(self, db, namespace: str, name: str, result: ReconcileResult):
        error = result.error
        logger.error(f"Failed to reconcile SubnetSet {result.key}: {error}")
        if result.phase == PHASE_DELETE:
            record_delete(RES_TYPE_SUBNETSET, False)
            reason = REASON_FAILED_DELETE
        else:
            record_update(RES_TYPE_SUBNETSET, False)
            reason = REASON_FAILED_UPDATE
        self.recorder.event(KIND_SUBNETSET, result.key, EVENT_WARNING, reason, str(error))

        db.rollback()
        subnetset = services.get_subnetset_logic(db, namespace, name)
        if subnetset is None:
            return
        try:
            self._set_conditions(db, subnetset, [ready_condition(False, error)])
        except ControlPlaneError as e:
            # Status is rewritten on the next attempt
            logger.warning(f"Could not update status of SubnetSet {result.key}: {e}")

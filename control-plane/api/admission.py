#!/usr/bin/env python3
"""
SubnetSet admission checks.

Runs before a SubnetSet create, update or delete is committed and protects
what the reconciler relies on: only the system identity touches default
SubnetSets, the provisioning mode never flips, pre-created Subnets share one
VPC, and nothing still in use is removed.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from config import ACCESS_MODE_ERROR_MESSAGE, MIN_SUBNET_SIZE, SYSTEM_SERVICE_ACCOUNT
from errors import ControlPlaneError, ErrorKind

from . import shared_api_logic as services
from .models import (
    DEFAULT_POD_NETWORK,
    DEFAULT_VM_NETWORK,
    LABEL_DEFAULT_NETWORK,
    NETWORK_STACK_VLAN_BACKED,
    default_network_of,
    is_default_subnetset,
    provisioning_mode_of,
)
from backend.client import vpc_path_of_subnet
from backend.subnet_service import ANNOTATION_ASSOCIATED_RESOURCE

logger = logging.getLogger(__name__)

OPERATION_CREATE = "CREATE"
OPERATION_UPDATE = "UPDATE"
OPERATION_DELETE = "DELETE"

DHCP_RELAY = "DHCPRelay"
RESTRICTED_ACCESS_MODES = ("Private", "Project")


@dataclass
class SubnetSetObject:
    """The fields of a SubnetSet that admission looks at."""

    namespace: str
    name: str
    uid: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    access_mode: Optional[str] = None
    ipv4_subnet_size: Optional[int] = None
    dhcp_mode: Optional[str] = None
    subnet_names: Optional[List[str]] = None

    @classmethod
    def from_model(cls, model) -> "SubnetSetObject":
        return cls(
            namespace=model.namespace,
            name=model.name,
            uid=model.uid,
            labels=dict(model.labels or {}),
            access_mode=model.access_mode,
            ipv4_subnet_size=model.ipv4_subnet_size,
            dhcp_mode=model.dhcp_mode,
            subnet_names=list(model.subnet_names) if model.subnet_names is not None else None,
        )


@dataclass
class AdmissionDecision:
    allowed: bool
    reason: str = ""
    code: int = 200


def allowed() -> AdmissionDecision:
    return AdmissionDecision(True)


def denied(reason: str) -> AdmissionDecision:
    return AdmissionDecision(False, reason, 403)


def errored(code: int, err) -> AdmissionDecision:
    return AdmissionDecision(False, str(err), code)


class AdmissionError(ControlPlaneError):
    """A check could not be completed; reported with an HTTP status code."""

    def __init__(self, message: str, code: int = 400):
        super().__init__(message, ErrorKind.TRANSIENT)
        self.code = code


def has_exclusive_fields(subnetset) -> bool:
    return subnetset.subnet_names is not None and bool(
        subnetset.ipv4_subnet_size or subnetset.access_mode or subnetset.dhcp_mode
    )


def default_label_changed(old, new) -> bool:
    old_labels, new_labels = old.labels or {}, new.labels or {}
    return (LABEL_DEFAULT_NETWORK in old_labels) != (LABEL_DEFAULT_NETWORK in new_labels) or old_labels.get(
        LABEL_DEFAULT_NETWORK
    ) != new_labels.get(LABEL_DEFAULT_NETWORK)


def mode_switch_reason(old, new) -> Optional[str]:
    old_mode, new_mode = provisioning_mode_of(old), provisioning_mode_of(new)
    if old_mode is not None and new_mode is not None and old_mode != new_mode:
        return "SubnetSet type cannot be switched between Pre-created and Auto-created"
    if old.subnet_names is not None and new.subnet_names is None:
        return "SubnetName should at least have value like subnetNames:[]"
    return None


class SubnetSetValidator:
    def __init__(
        self,
        db_factory,
        subnet_service,
        subnetset_locks,
        allocator,
        system_identity: str = SYSTEM_SERVICE_ACCOUNT,
        min_subnet_size: int = MIN_SUBNET_SIZE,
        access_mode_message: str = ACCESS_MODE_ERROR_MESSAGE,
    ):
        self.db_factory = db_factory
        self.subnet_service = subnet_service
        self.subnetset_locks = subnetset_locks
        self.allocator = allocator
        self.system_identity = system_identity
        self.min_subnet_size = min_subnet_size
        self.access_mode_message = access_mode_message

    def decide(self, operation: str, old, new, requester: str) -> AdmissionDecision:
        db = self.db_factory()
        try:
            decision = self._decide(db, operation, old, new, requester)
        except AdmissionError as e:
            decision = errored(e.code, e)
        finally:
            db.close()
        if not decision.allowed:
            subject = new if new is not None else old
            logger.info(
                f"Rejected {operation} of SubnetSet {subject.namespace}/{subject.name} "
                f"by {requester}: {decision.reason}"
            )
        return decision

    def _decide(self, db, operation: str, old, new, requester: str) -> AdmissionDecision:
        is_system = requester == self.system_identity

        if operation == OPERATION_CREATE:
            if not self.valid_size(new.ipv4_subnet_size):
                return denied(
                    f"SubnetSet {new.namespace}/{new.name} has invalid size {new.ipv4_subnet_size}: "
                    f"ipv4SubnetSize must be a power of 2 and not less than {self.min_subnet_size}"
                )
            if is_default_subnetset(new) and not is_system:
                return denied("default SubnetSet only can be created by the system identity")
            if not self.same_vpc(db, new.namespace, new.subnet_names):
                return denied(f"Subnets under SubnetSet {new.namespace}/{new.name} should belong to the same VPC")

        elif operation == OPERATION_UPDATE:
            if (is_default_subnetset(new) or is_default_subnetset(old)) and not is_system:
                return denied("default SubnetSet only can be updated by the system identity")
            if default_label_changed(old, new) and not is_system:
                return denied(f"SubnetSet label {LABEL_DEFAULT_NETWORK} can only be updated by the system identity")
            if not self.same_vpc(db, new.namespace, new.subnet_names):
                return denied(f"Subnets under SubnetSet {new.namespace}/{new.name} should belong to the same VPC")
            reason = mode_switch_reason(old, new)
            if reason:
                return denied(reason)
            if new.subnet_names is not None and old.subnet_names is not None:
                removed = [n for n in old.subnet_names if n not in new.subnet_names]
                if removed:
                    with self.subnetset_locks.write_locked(new.uid or old.uid):
                        in_use = self.removed_subnets_in_use(db, new, removed)
                    if in_use:
                        return denied(
                            f"Subnets {removed} on SubnetSet {new.namespace}/{new.name} "
                            "used by SubnetPorts cannot be removed"
                        )

        elif operation == OPERATION_DELETE:
            if is_default_subnetset(old) and not is_system:
                return denied("default SubnetSet only can be deleted by the system identity")
            if self.consumer_uids(db, old):
                return denied(f"SubnetSet {old.namespace}/{old.name} with stale SubnetPorts cannot be deleted")
            return allowed()

        else:
            return errored(400, f"unsupported operation {operation}")

        if has_exclusive_fields(new):
            return denied(
                "SubnetSet spec.subnetNames is exclusive with spec.ipv4SubnetSize, "
                "spec.accessMode and spec.subnetDHCPConfig"
            )
        return self.check_access_mode(db, new.namespace, new.access_mode)

    def valid_size(self, size: Optional[int]) -> bool:
        if not size:
            return True
        return size >= self.min_subnet_size and size & (size - 1) == 0

    def namespace_vpc_path(self, namespace: str) -> str:
        vpcs = self.subnet_service.backend.list_vpc_candidates(namespace)
        if not vpcs:
            raise AdmissionError(f"failed to get VPC Info {namespace}")
        return vpcs[0].path

    def same_vpc(self, db, namespace: str, subnet_names: Optional[List[str]]) -> bool:
        if subnet_names is None:
            return True
        namespace_vpc = ""
        existing_vpc = ""
        for name in subnet_names:
            subnet_cr = services.get_subnet_logic(db, namespace, name)
            if subnet_cr is None:
                raise AdmissionError(f"failed to get Subnet {namespace}/{name}: not found")
            if subnet_cr.dhcp_mode == DHCP_RELAY:
                raise AdmissionError(f"DHCPRelay Subnet {namespace}/{name} is not supported in SubnetSet")
            associated = (subnet_cr.annotations or {}).get(ANNOTATION_ASSOCIATED_RESOURCE)
            if associated:
                subnet_vpc = vpc_path_of_subnet(associated)
            else:
                if not namespace_vpc:
                    namespace_vpc = self.namespace_vpc_path(namespace)
                subnet_vpc = namespace_vpc
            if not existing_vpc:
                existing_vpc = subnet_vpc
            if existing_vpc != subnet_vpc:
                logger.warning(f"Subnets under SubnetSet are from different VPCs: {existing_vpc}, {subnet_vpc}")
                return False
        return True

    def consumer_uids(self, db, subnetset) -> List[str]:
        """UIDs of the objects that take addresses from this SubnetSet."""
        ports = services.list_subnetports_logic(db, subnetset.namespace)
        uids = [p.uid for p in ports if p.subnetset == subnetset.name]
        if is_default_subnetset(subnetset):
            network = default_network_of(subnetset)
            if network == DEFAULT_POD_NETWORK:
                uids.extend(p.uid for p in services.list_pods_logic(db, subnetset.namespace))
            elif network == DEFAULT_VM_NETWORK:
                uids.extend(p.uid for p in ports if not p.subnetset and not p.subnet)
            else:
                logger.error(f"Unrecognized default SubnetSet label on {subnetset.namespace}/{subnetset.name}")
        return uids

    def removed_subnets_in_use(self, db, subnetset, removed: List[str]) -> bool:
        consumer_paths = self.allocator.consumer_paths()
        used: Set[str] = {
            consumer_paths[uid] for uid in self.consumer_uids(db, subnetset) if consumer_paths.get(uid)
        }
        for name in removed:
            subnet_cr = services.get_subnet_logic(db, subnetset.namespace, name)
            if subnet_cr is None:
                raise AdmissionError(f"failed to get Subnet {subnetset.namespace}/{name}: not found")
            try:
                subnet = self.subnet_service.get_subnet_for_cr(subnet_cr)
            except ControlPlaneError as e:
                raise AdmissionError(f"failed to get backend Subnet {subnetset.namespace}/{name}: {e}")
            if subnet.path in used:
                return True
        return False

    def check_access_mode(self, db, namespace: str, access_mode: Optional[str]) -> AdmissionDecision:
        try:
            infos = services.list_network_infos_logic(db, namespace)
        except SQLAlchemyError as e:
            return errored(503, f"failed to list NetworkInfo in namespace {namespace}: {e}")
        vlan_backed = any(i.network_stack == NETWORK_STACK_VLAN_BACKED for i in infos)
        if vlan_backed and access_mode in RESTRICTED_ACCESS_MODES:
            return denied(self.access_mode_message)
        return allowed()

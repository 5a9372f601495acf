#!/usr/bin/env python3
"""
Backend Subnet operations shared by the allocator, the SubnetSet reconciler
and the garbage collector.
"""

import logging
import uuid
from typing import Iterable, List, Optional, Set, Tuple

from errors import NotFoundError, aggregate
from metrics import METRICS

from .capacity import PortCapacityProbe
from .client import (
    TAG_SCOPE_NAMESPACE,
    TAG_SCOPE_SUBNET_UID,
    TAG_SCOPE_SUBNETSET_NAME,
    TAG_SCOPE_SUBNETSET_UID,
    BackendClient,
    Tag,
    VPCInfo,
    VpcSubnet,
)

logger = logging.getLogger(__name__)

ANNOTATION_ASSOCIATED_RESOURCE = "subnet-cp.io/associated-resource"
DHCP_DEACTIVATED = "DHCPDeactivated"


def subnet_status(subnets: Iterable[VpcSubnet]) -> List[dict]:
    return [{"path": s.path, "networkAddresses": list(s.network_addresses)} for s in subnets]


class SubnetService:
    def __init__(self, backend: BackendClient, subnet_locks, probe: PortCapacityProbe):
        self.backend = backend
        self.subnet_locks = subnet_locks
        self.probe = probe

    # Lookups

    def list_for_subnetset(self, subnetset_uid: str) -> List[VpcSubnet]:
        return self.backend.list_subnets_by_tag(TAG_SCOPE_SUBNETSET_UID, subnetset_uid)

    def list_by_subnetset_name(self, namespace: str, name: str) -> List[VpcSubnet]:
        return [
            s
            for s in self.backend.list_subnets_by_tag(TAG_SCOPE_SUBNETSET_NAME, name)
            if s.tag_value(TAG_SCOPE_NAMESPACE) == namespace
        ]

    def list_created_by_subnetset(self) -> List[VpcSubnet]:
        return [
            s for s in self.backend.list_subnets() if s.tag_value(TAG_SCOPE_SUBNETSET_UID)
        ]

    def list_subnetset_uids(self) -> Set[str]:
        return {s.tag_value(TAG_SCOPE_SUBNETSET_UID) for s in self.list_created_by_subnetset()}

    def get_subnet_for_cr(self, subnet_cr) -> VpcSubnet:
        """
        Resolve a pre-created Subnet object to its backend Subnet.

        Shared Subnets carry the backend path in an annotation; the rest are
        found through the tag holding the object's UID.
        """
        annotations = subnet_cr.annotations or {}
        associated = annotations.get(ANNOTATION_ASSOCIATED_RESOURCE)
        if associated:
            subnet = self.backend.get_subnet_by_path(associated)
            if subnet is None:
                raise NotFoundError("backend Subnet", associated)
            return subnet
        subnets = self.backend.list_subnets_by_tag(TAG_SCOPE_SUBNET_UID, subnet_cr.uid)
        if not subnets:
            raise NotFoundError(
                "backend Subnet for Subnet", f"{subnet_cr.namespace}/{subnet_cr.name}"
            )
        return subnets[0]

    # Mutations

    def build_subnet(self, subnetset, tags: List[Tag]) -> VpcSubnet:
        return VpcSubnet(
            id=f"{subnetset.name}_{uuid.uuid4().hex[:5]}",
            display_name=subnetset.name,
            ipv4_subnet_size=subnetset.ipv4_subnet_size or 0,
            access_mode=subnetset.access_mode or "Private",
            dhcp_mode=subnetset.dhcp_mode or DHCP_DEACTIVATED,
            tags=list(tags),
        )

    def create_subnet(self, subnetset, vpc_info: VPCInfo, tags: List[Tag]) -> VpcSubnet:
        subnet = self.backend.create_subnet(vpc_info, self.build_subnet(subnetset, tags))
        METRICS["backend_subnets_total"].inc()
        logger.info(
            f"Created Subnet {subnet.path} for SubnetSet {subnetset.namespace}/{subnetset.name}"
        )
        return subnet

    def update_tags(self, subnets: Iterable[VpcSubnet], tags: List[Tag], dhcp_mode: Optional[str]):
        """Push tags and DHCP mode to every Subnet whose values differ."""
        dhcp_mode = dhcp_mode or DHCP_DEACTIVATED
        errors = []
        for subnet in subnets:
            if set(subnet.tags) == set(tags) and subnet.dhcp_mode == dhcp_mode:
                continue
            subnet.tags = list(tags)
            subnet.dhcp_mode = dhcp_mode
            try:
                self.backend.update_subnet(subnet)
                logger.info(f"Updated tags of Subnet {subnet.path}")
            except Exception as e:
                errors.append(e)
        err = aggregate(errors)
        if err is not None:
            raise err

    def delete_subnets(
        self, subnets: Iterable[VpcSubnet], delete_dependencies: bool = False
    ) -> Tuple[bool, Optional[Exception]]:
        """
        Delete Subnets that have no ports.

        Each Subnet is handled under its own write lock. Subnets with ports
        are skipped and reported through the first return value; per-Subnet
        failures are collected into the second.
        """
        has_stale_port = False
        errors = []
        for subnet in subnets:
            lock = self.subnet_locks.acquire_write(subnet.path)
            try:
                if not self.probe.is_empty(subnet):
                    logger.info(f"Skipped deleting Subnet {subnet.path}: ports still attached")
                    has_stale_port = True
                    continue
                if delete_dependencies:
                    for binding in self.backend.list_bindings_of_subnet(subnet.path):
                        self.backend.delete_binding(binding)
                        logger.info(f"Deleted binding {binding.id} of Subnet {subnet.path}")
                self.backend.delete_subnet(subnet)
                self.probe.forget(subnet.path)
                METRICS["backend_subnets_total"].dec()
                logger.info(f"Deleted Subnet {subnet.path}")
            except Exception as e:
                logger.error(f"Failed to delete Subnet {subnet.path}: {e}")
                errors.append(e)
            finally:
                self.subnet_locks.release_write(subnet.path, lock)
        return has_stale_port, aggregate(errors)

    def has_bindings(self, subnets: Iterable[VpcSubnet]) -> List[str]:
        """Paths of the given Subnets that backend bindings still reference."""
        return [s.path for s in subnets if self.backend.list_bindings_of_subnet(s.path)]

    def is_orphan(self, subnet: VpcSubnet, live_uids: Set[str]) -> bool:
        uid = subnet.tag_value(TAG_SCOPE_SUBNETSET_UID)
        return bool(uid) and uid not in live_uids


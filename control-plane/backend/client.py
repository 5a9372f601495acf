#!/usr/bin/env python3
"""
Network backend client interface.

The backend owns IP space: VPCs, Subnets, ports and the bindings that
reference Subnets. The control plane only talks to it through BackendClient,
so the simulator in backend/simulator.py and a real HTTP client are
interchangeable.
"""

import ipaddress
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

# Tag scopes written on backend Subnets
TAG_SCOPE_CLUSTER = "subnet-cp/cluster"
TAG_SCOPE_VERSION = "subnet-cp/version"
TAG_SCOPE_NAMESPACE = "subnet-cp/namespace"
TAG_SCOPE_NAMESPACE_UID = "subnet-cp/namespace_uid"
TAG_SCOPE_SUBNETSET_NAME = "subnet-cp/subnetset_name"
TAG_SCOPE_SUBNETSET_UID = "subnet-cp/subnetset_uid"
TAG_SCOPE_SUBNET_NAME = "subnet-cp/subnet_name"
TAG_SCOPE_SUBNET_UID = "subnet-cp/subnet_uid"


@dataclass(frozen=True)
class Tag:
    scope: str
    value: str


@dataclass
class VPCInfo:
    """A VPC a namespace may place Subnets in."""

    org_id: str
    project_id: str
    vpc_id: str
    network_stack: str = "FullStackVPC"

    @property
    def path(self) -> str:
        return f"/orgs/{self.org_id}/projects/{self.project_id}/vpcs/{self.vpc_id}"

    @classmethod
    def from_path(cls, path: str, network_stack: str = "FullStackVPC") -> "VPCInfo":
        parts = path.strip("/").split("/")
        if len(parts) != 6 or parts[0] != "orgs" or parts[2] != "projects" or parts[4] != "vpcs":
            raise ValueError(f"invalid VPC path {path}")
        return cls(
            org_id=parts[1],
            project_id=parts[3],
            vpc_id=parts[5],
            network_stack=network_stack,
        )


@dataclass
class VpcSubnet:
    """A Subnet as the backend sees it."""

    id: str
    display_name: str
    ipv4_subnet_size: int = 0
    ip_addresses: List[str] = field(default_factory=list)
    access_mode: str = "Private"
    dhcp_mode: str = "DHCPDeactivated"
    tags: List[Tag] = field(default_factory=list)
    path: str = ""
    vpc_path: str = ""
    network_addresses: List[str] = field(default_factory=list)

    def tag_value(self, scope: str) -> Optional[str]:
        for tag in self.tags:
            if tag.scope == scope:
                return tag.value
        return None

    def total_addresses(self) -> int:
        """Address count: pinned CIDRs win over the requested size."""
        if self.ip_addresses:
            return sum(
                ipaddress.ip_network(cidr, strict=False).num_addresses
                for cidr in self.ip_addresses
            )
        return self.ipv4_subnet_size


@dataclass
class BackendPort:
    id: str
    subnet_id: str
    subnet_path: str
    owner_uid: str


@dataclass
class SubnetBinding:
    """Backend object that references a Subnet and blocks its removal."""

    id: str
    subnet_path: str
    parent_subnet_path: str
    vlan_traffic_tag: int = 0


def vpc_path_of_subnet(subnet_path: str) -> str:
    return subnet_path.split("/subnets/")[0]


class BackendClient(ABC):
    """Operations the control plane needs from the network backend."""

    @abstractmethod
    def list_subnets(self) -> List[VpcSubnet]:
        pass

    @abstractmethod
    def list_subnets_by_tag(self, scope: str, value: str) -> List[VpcSubnet]:
        pass

    @abstractmethod
    def get_subnet_by_path(self, path: str) -> Optional[VpcSubnet]:
        pass

    @abstractmethod
    def create_subnet(self, vpc_info: VPCInfo, subnet: VpcSubnet) -> VpcSubnet:
        pass

    @abstractmethod
    def update_subnet(self, subnet: VpcSubnet) -> VpcSubnet:
        pass

    @abstractmethod
    def delete_subnet(self, subnet: VpcSubnet):
        pass

    @abstractmethod
    def list_ports_of_subnet(self, subnet_id: str) -> List[BackendPort]:
        pass

    @abstractmethod
    def create_port(self, subnet_path: str, owner_uid: str) -> BackendPort:
        pass

    @abstractmethod
    def delete_port(self, port_id: str):
        pass

    @abstractmethod
    def list_vpc_candidates(self, namespace: str) -> List[VPCInfo]:
        pass

    @abstractmethod
    def list_bindings_of_subnet(self, subnet_path: str) -> List[SubnetBinding]:
        pass

    @abstractmethod
    def delete_binding(self, binding: SubnetBinding):
        pass

# file: models.py

import uuid

from sqlalchemy import Column, DateTime, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

# Labels marking the SubnetSets the system creates for every namespace
LABEL_DEFAULT_NETWORK = "subnet-cp.io/default-network"
LABEL_DEFAULT_SUBNETSET_FOR = "subnet-cp.io/default-subnetset-for"
DEFAULT_POD_NETWORK = "pod"
DEFAULT_VM_NETWORK = "vm"
DEFAULT_POD_SUBNETSET = "pod-default"
DEFAULT_VM_SUBNETSET = "vm-default"

ACCESS_MODES = ("Private", "Public", "Project", "L2Only")
DHCP_MODES = ("DHCPServer", "DHCPRelay", "DHCPDeactivated")
NETWORK_STACK_FULL = "FullStackVPC"
NETWORK_STACK_VLAN_BACKED = "VLANBackedVPC"

MODE_PRE_CREATED = "PreCreated"
MODE_AUTO_CREATED = "AutoCreated"


def new_uid() -> str:
    return str(uuid.uuid4())


def is_default_subnetset(subnetset) -> bool:
    labels = subnetset.labels or {}
    if LABEL_DEFAULT_NETWORK in labels or LABEL_DEFAULT_SUBNETSET_FOR in labels:
        return True
    return subnetset.name in (DEFAULT_POD_SUBNETSET, DEFAULT_VM_SUBNETSET)


def default_network_of(subnetset):
    """'pod' or 'vm' for the system default SubnetSets, else None."""
    labels = subnetset.labels or {}
    if LABEL_DEFAULT_NETWORK in labels:
        value = labels[LABEL_DEFAULT_NETWORK]
        return value if value in (DEFAULT_POD_NETWORK, DEFAULT_VM_NETWORK) else None
    legacy = labels.get(LABEL_DEFAULT_SUBNETSET_FOR)
    if legacy == "Pod":
        return DEFAULT_POD_NETWORK
    if legacy == "VirtualMachine":
        return DEFAULT_VM_NETWORK
    if subnetset.name == DEFAULT_POD_SUBNETSET:
        return DEFAULT_POD_NETWORK
    if subnetset.name == DEFAULT_VM_SUBNETSET:
        return DEFAULT_VM_NETWORK
    return None


def provisioning_mode_of(subnetset):
    if subnetset.subnet_names is not None:
        return MODE_PRE_CREATED
    if subnetset.ipv4_subnet_size or subnetset.access_mode or subnetset.dhcp_mode:
        return MODE_AUTO_CREATED
    return None


class Namespace(Base):
    __tablename__ = "namespaces"
    name = Column(String, primary_key=True)
    uid = Column(String, unique=True, nullable=False, default=new_uid)
    labels = Column(JSON, default=dict)
    created_at = Column(DateTime, server_default=func.now())


class VPCNetworkConfig(Base):
    """Per-namespace defaults for auto-provisioned Subnets."""

    __tablename__ = "vpc_network_configs"
    namespace = Column(String, primary_key=True)
    default_subnet_access_mode = Column(String, nullable=True)
    default_subnet_size = Column(Integer, nullable=False, default=32)


class NetworkInfo(Base):
    __tablename__ = "network_infos"
    namespace = Column(String, primary_key=True)
    vpc_path = Column(String, nullable=False)
    network_stack = Column(String, default=NETWORK_STACK_FULL)


class SubnetSet(Base):
    __tablename__ = "subnetsets"
    __table_args__ = (UniqueConstraint("namespace", "name"),)

    uid = Column(String, primary_key=True, default=new_uid)
    name = Column(String, nullable=False)
    namespace = Column(String, nullable=False)
    labels = Column(JSON, default=dict)
    access_mode = Column(String, nullable=True)
    ipv4_subnet_size = Column(Integer, nullable=True)
    dhcp_mode = Column(String, nullable=True)
    # None means auto-provisioned, [] is a pre-created set with no members yet
    subnet_names = Column(JSON(none_as_null=True), nullable=True)
    finalizers = Column(JSON, default=list)
    deletion_timestamp = Column(DateTime, nullable=True)
    conditions = Column(JSON, default=list)
    status_subnets = Column(JSON, default=list)
    resource_version = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    __mapper_args__ = {"version_id_col": resource_version}

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def default_network(self):
        return default_network_of(self)

    def is_default(self) -> bool:
        return is_default_subnetset(self)

    def provisioning_mode(self):
        return provisioning_mode_of(self)


class Subnet(Base):
    """A pre-created Subnet object, referenced by name from SubnetSets."""

    __tablename__ = "subnets"
    __table_args__ = (UniqueConstraint("namespace", "name"),)

    uid = Column(String, primary_key=True, default=new_uid)
    name = Column(String, nullable=False)
    namespace = Column(String, nullable=False)
    annotations = Column(JSON, default=dict)
    access_mode = Column(String, default="Private")
    ipv4_subnet_size = Column(Integer, nullable=True)
    ip_addresses = Column(JSON, default=list)
    dhcp_mode = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class SubnetPort(Base):
    __tablename__ = "subnetports"
    __table_args__ = (UniqueConstraint("namespace", "name"),)

    uid = Column(String, primary_key=True, default=new_uid)
    name = Column(String, nullable=False)
    namespace = Column(String, nullable=False)
    subnetset = Column(String, nullable=True)
    subnet = Column(String, nullable=True)
    subnet_path = Column(String, nullable=True)
    port_id = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class Pod(Base):
    __tablename__ = "pods"
    __table_args__ = (UniqueConstraint("namespace", "name"),)

    uid = Column(String, primary_key=True, default=new_uid)
    name = Column(String, nullable=False)
    namespace = Column(String, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class SubnetConnectionBindingMap(Base):
    __tablename__ = "subnet_connection_binding_maps"
    __table_args__ = (UniqueConstraint("namespace", "name"),)

    uid = Column(String, primary_key=True, default=new_uid)
    name = Column(String, nullable=False)
    namespace = Column(String, nullable=False)
    subnet_name = Column(String, nullable=False)
    target_subnetset_name = Column(String, nullable=True)
    target_subnet_name = Column(String, nullable=True)
    vlan_traffic_tag = Column(Integer, default=0)
    created_at = Column(DateTime, server_default=func.now())

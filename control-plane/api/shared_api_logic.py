# api/shared_api_logic.py
"""Cluster object store operations used by the REST API and the controllers."""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from errors import ConflictError, NotFoundError
from metrics import METRICS

from .models import (
    NetworkInfo as NetworkInfoModel,
    Namespace as NamespaceModel,
    Pod as PodModel,
    Subnet as SubnetModel,
    SubnetConnectionBindingMap as BindingMapModel,
    SubnetPort as SubnetPortModel,
    SubnetSet as SubnetSetModel,
    VPCNetworkConfig as VPCNetworkConfigModel,
    new_uid,
)


def commit(db: Session, obj=None):
    """Commit, turning a lost optimistic-concurrency race into ConflictError."""
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConflictError(f"object was modified concurrently: {e}")
    if obj is not None:
        db.refresh(obj)
    return obj


# Namespace Services
def create_namespace_logic(db: Session, name: str, labels: Optional[Dict[str, str]] = None):
    namespace = NamespaceModel(name=name, uid=new_uid(), labels=dict(labels or {}))
    db.add(namespace)
    return commit(db, namespace)


def get_namespace_logic(db: Session, name: str):
    return db.query(NamespaceModel).filter(NamespaceModel.name == name).first()


def update_namespace_labels_logic(db: Session, name: str, labels: Dict[str, str]):
    namespace = get_namespace_logic(db, name)
    if namespace is None:
        raise NotFoundError("Namespace", name)
    namespace.labels = dict(labels)
    return commit(db, namespace)


def set_vpc_network_config_logic(
    db: Session, namespace: str, default_subnet_size: int, default_subnet_access_mode: Optional[str] = None
):
    config = db.query(VPCNetworkConfigModel).filter(VPCNetworkConfigModel.namespace == namespace).first()
    if config is None:
        config = VPCNetworkConfigModel(namespace=namespace)
        db.add(config)
    config.default_subnet_size = default_subnet_size
    config.default_subnet_access_mode = default_subnet_access_mode
    return commit(db, config)


def get_vpc_network_config_logic(db: Session, namespace: str):
    return db.query(VPCNetworkConfigModel).filter(VPCNetworkConfigModel.namespace == namespace).first()


def set_network_info_logic(db: Session, namespace: str, vpc_path: str, network_stack: str):
    info = db.query(NetworkInfoModel).filter(NetworkInfoModel.namespace == namespace).first()
    if info is None:
        info = NetworkInfoModel(namespace=namespace)
        db.add(info)
    info.vpc_path = vpc_path
    info.network_stack = network_stack
    return commit(db, info)


def list_network_infos_logic(db: Session, namespace: str) -> List[NetworkInfoModel]:
    return db.query(NetworkInfoModel).filter(NetworkInfoModel.namespace == namespace).all()


# Subnet Services
def create_subnet_logic(
    db: Session,
    namespace: str,
    name: str,
    annotations: Optional[Dict[str, str]] = None,
    access_mode: str = "Private",
    ipv4_subnet_size: Optional[int] = None,
    ip_addresses: Optional[List[str]] = None,
    dhcp_mode: Optional[str] = None,
):
    subnet = SubnetModel(
        uid=new_uid(),
        name=name,
        namespace=namespace,
        annotations=dict(annotations or {}),
        access_mode=access_mode,
        ipv4_subnet_size=ipv4_subnet_size,
        ip_addresses=list(ip_addresses or []),
        dhcp_mode=dhcp_mode,
    )
    db.add(subnet)
    return commit(db, subnet)


def get_subnet_logic(db: Session, namespace: str, name: str):
    return (
        db.query(SubnetModel)
        .filter(SubnetModel.namespace == namespace, SubnetModel.name == name)
        .first()
    )


# SubnetSet Services
def create_subnetset_logic(
    db: Session,
    namespace: str,
    name: str,
    labels: Optional[Dict[str, str]] = None,
    access_mode: Optional[str] = None,
    ipv4_subnet_size: Optional[int] = None,
    dhcp_mode: Optional[str] = None,
    subnet_names: Optional[List[str]] = None,
):
    subnetset = SubnetSetModel(
        uid=new_uid(),
        name=name,
        namespace=namespace,
        labels=dict(labels or {}),
        access_mode=access_mode,
        ipv4_subnet_size=ipv4_subnet_size,
        dhcp_mode=dhcp_mode,
        subnet_names=list(subnet_names) if subnet_names is not None else None,
        finalizers=[],
        conditions=[],
        status_subnets=[],
    )
    db.add(subnetset)
    commit(db, subnetset)
    METRICS["subnetsets_total"].inc()
    return subnetset


def get_subnetset_logic(db: Session, namespace: str, name: str):
    return (
        db.query(SubnetSetModel)
        .filter(SubnetSetModel.namespace == namespace, SubnetSetModel.name == name)
        .first()
    )


def list_subnetsets_logic(db: Session, namespace: Optional[str] = None) -> List[SubnetSetModel]:
    query = db.query(SubnetSetModel)
    if namespace is not None:
        query = query.filter(SubnetSetModel.namespace == namespace)
    return query.all()


def update_subnetset_logic(db: Session, subnetset: SubnetSetModel, **fields):
    for key, value in fields.items():
        if key in ("labels", "subnet_names") and value is not None:
            value = type(value)(value)
        setattr(subnetset, key, value)
    return commit(db, subnetset)


def update_subnetset_status_logic(
    db: Session, subnetset: SubnetSetModel, conditions: List[dict] = None, status_subnets: List[dict] = None
):
    if conditions is not None:
        subnetset.conditions = [dict(c) for c in conditions]
    if status_subnets is not None:
        subnetset.status_subnets = [dict(s) for s in status_subnets]
    return commit(db, subnetset)


def add_finalizer_logic(db: Session, subnetset: SubnetSetModel, finalizer: str):
    if finalizer in (subnetset.finalizers or []):
        return subnetset
    subnetset.finalizers = list(subnetset.finalizers or []) + [finalizer]
    return commit(db, subnetset)


def remove_finalizer_logic(db: Session, subnetset: SubnetSetModel, finalizer: str):
    """Drop the finalizer; an object already marked for deletion is purged."""
    if finalizer not in (subnetset.finalizers or []):
        return subnetset
    subnetset.finalizers = [f for f in subnetset.finalizers if f != finalizer]
    if subnetset.deletion_timestamp is not None and not subnetset.finalizers:
        db.delete(subnetset)
        commit(db)
        METRICS["subnetsets_total"].dec()
        return None
    return commit(db, subnetset)


def delete_subnetset_logic(db: Session, namespace: str, name: str) -> bool:
    """
    Delete a SubnetSet.

    Objects holding finalizers are only marked for deletion. Returns True
    when the row is gone.
    """
    subnetset = get_subnetset_logic(db, namespace, name)
    if subnetset is None:
        raise NotFoundError("SubnetSet", f"{namespace}/{name}")
    if subnetset.finalizers:
        if subnetset.deletion_timestamp is None:
            subnetset.deletion_timestamp = datetime.utcnow()
            commit(db, subnetset)
        return False
    db.delete(subnetset)
    commit(db)
    METRICS["subnetsets_total"].dec()
    return True


# SubnetConnectionBindingMap Services
def create_binding_map_logic(
    db: Session,
    namespace: str,
    name: str,
    subnet_name: str,
    target_subnetset_name: Optional[str] = None,
    target_subnet_name: Optional[str] = None,
    vlan_traffic_tag: int = 0,
):
    binding_map = BindingMapModel(
        uid=new_uid(),
        name=name,
        namespace=namespace,
        subnet_name=subnet_name,
        target_subnetset_name=target_subnetset_name,
        target_subnet_name=target_subnet_name,
        vlan_traffic_tag=vlan_traffic_tag,
    )
    db.add(binding_map)
    return commit(db, binding_map)


def get_binding_map_logic(db: Session, namespace: str, name: str):
    return (
        db.query(BindingMapModel)
        .filter(BindingMapModel.namespace == namespace, BindingMapModel.name == name)
        .first()
    )


def update_binding_map_logic(db: Session, binding_map: BindingMapModel, **fields):
    for key, value in fields.items():
        setattr(binding_map, key, value)
    return commit(db, binding_map)


def delete_binding_map_logic(db: Session, namespace: str, name: str):
    binding_map = get_binding_map_logic(db, namespace, name)
    if binding_map is None:
        raise NotFoundError("SubnetConnectionBindingMap", f"{namespace}/{name}")
    db.delete(binding_map)
    commit(db)
    return binding_map


def list_binding_maps_for_subnetset_logic(db: Session, namespace: str, name: str) -> List[BindingMapModel]:
    return (
        db.query(BindingMapModel)
        .filter(
            BindingMapModel.namespace == namespace,
            BindingMapModel.target_subnetset_name == name,
        )
        .all()
    )


# SubnetPort and Pod Services
def create_subnetport_logic(
    db: Session, namespace: str, name: str, subnetset: Optional[str] = None, subnet: Optional[str] = None
):
    port = SubnetPortModel(
        uid=new_uid(), name=name, namespace=namespace, subnetset=subnetset, subnet=subnet
    )
    db.add(port)
    return commit(db, port)


def get_subnetport_logic(db: Session, namespace: str, name: str):
    return (
        db.query(SubnetPortModel)
        .filter(SubnetPortModel.namespace == namespace, SubnetPortModel.name == name)
        .first()
    )


def update_subnetport_logic(db: Session, port: SubnetPortModel, subnet_path: str, port_id: str):
    port.subnet_path = subnet_path
    port.port_id = port_id
    return commit(db, port)


def delete_subnetport_logic(db: Session, namespace: str, name: str):
    port = get_subnetport_logic(db, namespace, name)
    if port is None:
        raise NotFoundError("SubnetPort", f"{namespace}/{name}")
    db.delete(port)
    commit(db)
    return port


def list_subnetports_logic(db: Session, namespace: str) -> List[SubnetPortModel]:
    return db.query(SubnetPortModel).filter(SubnetPortModel.namespace == namespace).all()


def list_allocated_subnetports_logic(db: Session) -> List[SubnetPortModel]:
    """SubnetPorts placed through a SubnetSet, across all namespaces."""
    return (
        db.query(SubnetPortModel)
        .filter(SubnetPortModel.subnet_path.isnot(None), SubnetPortModel.subnet.is_(None))
        .all()
    )


def create_pod_logic(db: Session, namespace: str, name: str):
    pod = PodModel(uid=new_uid(), name=name, namespace=namespace)
    db.add(pod)
    return commit(db, pod)


def list_pods_logic(db: Session, namespace: str) -> List[PodModel]:
    return db.query(PodModel).filter(PodModel.namespace == namespace).all()


def delete_pod_logic(db: Session, namespace: str, name: str):
    pod = (
        db.query(PodModel)
        .filter(PodModel.namespace == namespace, PodModel.name == name)
        .first()
    )
    if pod is None:
        raise NotFoundError("Pod", f"{namespace}/{name}")
    db.delete(pod)
    commit(db)
    return pod

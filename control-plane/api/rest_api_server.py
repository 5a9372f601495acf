# File: control-plane/api/rest_api_server.py
#!/usr/bin/env python3
"""
Subnet Control Plane REST API Server

FastAPI-based REST API for the cluster objects the SubnetSet controller
watches:
- Namespaces, VPCNetworkConfigs and NetworkInfos
- Pre-created Subnets
- SubnetSets (admission checked)
- SubnetConnectionBindingMaps
- SubnetPorts and Pods (address consumers)

Writes are committed to the store and the affected SubnetSets are queued for
reconciliation.
"""

import logging
import time
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ControlPlaneError, ErrorKind, NotFoundError
from metrics import METRICS

from . import shared_api_logic as services
from .admission import (
    OPERATION_CREATE,
    OPERATION_DELETE,
    OPERATION_UPDATE,
    SubnetSetObject,
)
from .database import SessionLocal
from .models import NETWORK_STACK_FULL
from backend.client import VPCInfo
from backend.simulator import InMemoryBackend
from reconciler.controller import SubnetSetController, get_controller

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Subnet Control Plane API",
    description="SubnetSet lifecycle and Subnet allocation",
    version="1.0.0",
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class NamespaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=63)
    labels: Dict[str, str] = Field(default_factory=dict)

class NamespaceUpdate(BaseModel):
    labels: Dict[str, str] = Field(default_factory=dict)

class Namespace(BaseModel):
    name: str
    uid: str
    labels: Dict[str, str]

class VPCNetworkConfigUpdate(BaseModel):
    default_subnet_size: int = 32
    default_subnet_access_mode: Optional[str] = None

class VPCNetworkConfig(BaseModel):
    namespace: str
    default_subnet_size: int
    default_subnet_access_mode: Optional[str]

class NetworkInfoUpdate(BaseModel):
    vpc_path: str
    network_stack: str = NETWORK_STACK_FULL

class NetworkInfo(BaseModel):
    namespace: str
    vpc_path: str
    network_stack: str

class SubnetCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=63)
    annotations: Dict[str, str] = Field(default_factory=dict)
    access_mode: str = "Private"
    ipv4_subnet_size: Optional[int] = None
    ip_addresses: List[str] = Field(default_factory=list)
    dhcp_mode: Optional[str] = None

class Subnet(BaseModel):
    uid: str
    name: str
    namespace: str
    annotations: Dict[str, str]
    access_mode: str
    ipv4_subnet_size: Optional[int]
    ip_addresses: List[str]
    dhcp_mode: Optional[str]

class SubnetSetSpec(BaseModel):
    labels: Dict[str, str] = Field(default_factory=dict)
    access_mode: Optional[str] = None
    ipv4_subnet_size: Optional[int] = None
    dhcp_mode: Optional[str] = None
    subnet_names: Optional[List[str]] = None

class SubnetSetCreate(SubnetSetSpec):
    name: str = Field(..., min_length=1, max_length=63)

class SubnetSet(BaseModel):
    uid: str
    name: str
    namespace: str
    labels: Dict[str, str]
    access_mode: Optional[str]
    ipv4_subnet_size: Optional[int]
    dhcp_mode: Optional[str]
    subnet_names: Optional[List[str]]
    finalizers: List[str]
    deletion_timestamp: Optional[datetime]
    conditions: List[dict]
    status_subnets: List[dict]
    resource_version: int

class BindingMapCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=63)
    subnet_name: str
    target_subnetset_name: Optional[str] = None
    target_subnet_name: Optional[str] = None
    vlan_traffic_tag: int = 0

class BindingMapUpdate(BaseModel):
    target_subnetset_name: Optional[str] = None
    target_subnet_name: Optional[str] = None
    vlan_traffic_tag: int = 0

class BindingMap(BaseModel):
    uid: str
    name: str
    namespace: str
    subnet_name: str
    target_subnetset_name: Optional[str]
    target_subnet_name: Optional[str]
    vlan_traffic_tag: int

class SubnetPortCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=63)
    subnetset: Optional[str] = None
    subnet: Optional[str] = None

class SubnetPort(BaseModel):
    uid: str
    name: str
    namespace: str
    subnetset: Optional[str]
    subnet: Optional[str]
    subnet_path: Optional[str]
    port_id: Optional[str]

class PodCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=63)

class Pod(BaseModel):
    uid: str
    name: str
    namespace: str


def error_status(err: Exception) -> int:
    if isinstance(err, NotFoundError):
        return 404
    if isinstance(err, ControlPlaneError) and err.kind != ErrorKind.TRANSIENT:
        return 409
    return 503


def admit(controller: SubnetSetController, operation: str, old, new, requester: str):
    decision = controller.validator.decide(operation, old, new, requester)
    if not decision.allowed:
        raise HTTPException(status_code=decision.code, detail=decision.reason)


@app.get("/health")
def health():
    return {"status": "healthy"}

@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    METRICS["api_requests"].labels(method=request.method, endpoint=request.url.path).inc()
    start = time.time()
    response = await call_next(request)
    logger.debug(f"{request.method} {request.url.path} {response.status_code} {(time.time() - start) * 1000:.1f}ms")
    return response


# Namespaces

@app.post("/namespaces", response_model=Namespace, status_code=201)
def create_namespace(namespace: NamespaceCreate, db: Session = Depends(get_db)):
    if services.get_namespace_logic(db, namespace.name):
        raise HTTPException(status_code=409, detail="Namespace already exists")
    return services.create_namespace_logic(db, namespace.name, namespace.labels)

@app.get("/namespaces/{ns}", response_model=Namespace)
def get_namespace(ns: str, db: Session = Depends(get_db)):
    namespace = services.get_namespace_logic(db, ns)
    if not namespace:
        raise HTTPException(status_code=404, detail="Namespace not found")
    return namespace

@app.patch("/namespaces/{ns}", response_model=Namespace)
def update_namespace(
    ns: str,
    update: NamespaceUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
):
    try:
        namespace = services.update_namespace_labels_logic(db, ns, update.labels)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Namespace not found")
    background_tasks.add_task(controller.enqueue_namespace, ns)
    return namespace

@app.put("/namespaces/{ns}/vpcnetworkconfig", response_model=VPCNetworkConfig)
def set_vpc_network_config(ns: str, config: VPCNetworkConfigUpdate, db: Session = Depends(get_db)):
    return services.set_vpc_network_config_logic(
        db, ns, config.default_subnet_size, config.default_subnet_access_mode
    )

@app.put("/namespaces/{ns}/networkinfo", response_model=NetworkInfo)
def set_network_info(
    ns: str,
    info: NetworkInfoUpdate,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
):
    try:
        vpc_info = VPCInfo.from_path(info.vpc_path, info.network_stack)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if isinstance(controller.backend, InMemoryBackend):
        controller.backend.register_vpc(ns, vpc_info)
    return services.set_network_info_logic(db, ns, info.vpc_path, info.network_stack)


# Pre-created Subnets

@app.post("/namespaces/{ns}/subnets", response_model=Subnet, status_code=201)
def create_subnet(
    ns: str,
    subnet: SubnetCreate,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
):
    if services.get_subnet_logic(db, ns, subnet.name):
        raise HTTPException(status_code=409, detail="Subnet already exists")
    subnet_cr = services.create_subnet_logic(
        db, ns, subnet.name, subnet.annotations, subnet.access_mode,
        subnet.ipv4_subnet_size, subnet.ip_addresses, subnet.dhcp_mode,
    )
    try:
        controller.realize_subnet(subnet_cr)
    except ControlPlaneError as e:
        logger.warning(f"Subnet {ns}/{subnet.name} is not realized: {e}")
    return subnet_cr

@app.get("/namespaces/{ns}/subnets/{name}", response_model=Subnet)
def get_subnet(ns: str, name: str, db: Session = Depends(get_db)):
    subnet_cr = services.get_subnet_logic(db, ns, name)
    if not subnet_cr:
        raise HTTPException(status_code=404, detail="Subnet not found")
    return subnet_cr


# SubnetSets

@app.post("/namespaces/{ns}/subnetsets", response_model=SubnetSet, status_code=201)
def create_subnetset(
    ns: str,
    subnetset: SubnetSetCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
    x_remote_user: str = Header(default="anonymous"),
):
    if services.get_subnetset_logic(db, ns, subnetset.name):
        raise HTTPException(status_code=409, detail="SubnetSet already exists")
    candidate = SubnetSetObject(namespace=ns, **subnetset.model_dump())
    admit(controller, OPERATION_CREATE, None, candidate, x_remote_user)
    try:
        new_subnetset = services.create_subnetset_logic(db, ns, **subnetset.model_dump())
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="SubnetSet already exists")
    background_tasks.add_task(controller.enqueue_subnetset, ns, subnetset.name)
    return new_subnetset

@app.get("/namespaces/{ns}/subnetsets", response_model=List[SubnetSet])
def list_subnetsets(ns: str, db: Session = Depends(get_db)):
    return services.list_subnetsets_logic(db, ns)

@app.get("/namespaces/{ns}/subnetsets/{name}", response_model=SubnetSet)
def get_subnetset(ns: str, name: str, db: Session = Depends(get_db)):
    subnetset = services.get_subnetset_logic(db, ns, name)
    if not subnetset:
        raise HTTPException(status_code=404, detail="SubnetSet not found")
    return subnetset

@app.put("/namespaces/{ns}/subnetsets/{name}", response_model=SubnetSet)
def update_subnetset(
    ns: str,
    name: str,
    spec: SubnetSetSpec,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
    x_remote_user: str = Header(default="anonymous"),
):
    subnetset = services.get_subnetset_logic(db, ns, name)
    if not subnetset:
        raise HTTPException(status_code=404, detail="SubnetSet not found")
    candidate = SubnetSetObject(namespace=ns, name=name, uid=subnetset.uid, **spec.model_dump())
    admit(controller, OPERATION_UPDATE, SubnetSetObject.from_model(subnetset), candidate, x_remote_user)
    try:
        subnetset = services.update_subnetset_logic(db, subnetset, **spec.model_dump())
    except ControlPlaneError as e:
        raise HTTPException(status_code=409, detail=str(e))
    background_tasks.add_task(controller.enqueue_subnetset, ns, name)
    return subnetset

@app.delete("/namespaces/{ns}/subnetsets/{name}")
def delete_subnetset(
    ns: str,
    name: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
    x_remote_user: str = Header(default="anonymous"),
):
    subnetset = services.get_subnetset_logic(db, ns, name)
    if not subnetset:
        raise HTTPException(status_code=404, detail="SubnetSet not found")
    admit(controller, OPERATION_DELETE, SubnetSetObject.from_model(subnetset), None, x_remote_user)
    removed = services.delete_subnetset_logic(db, ns, name)
    background_tasks.add_task(controller.enqueue_subnetset, ns, name)
    if removed:
        return {"message": "SubnetSet deleted"}
    return {"message": "SubnetSet deletion initiated"}

@app.get("/namespaces/{ns}/subnetsets/{name}/events")
def list_subnetset_events(ns: str, name: str, controller: SubnetSetController = Depends(get_controller)):
    return controller.recorder.events(key=f"{ns}/{name}")


# SubnetConnectionBindingMaps

@app.post("/namespaces/{ns}/bindingmaps", response_model=BindingMap, status_code=201)
def create_binding_map(
    ns: str,
    binding_map: BindingMapCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
):
    if services.get_binding_map_logic(db, ns, binding_map.name):
        raise HTTPException(status_code=409, detail="SubnetConnectionBindingMap already exists")
    new_map = services.create_binding_map_logic(db, ns, **binding_map.model_dump())
    background_tasks.add_task(controller.enqueue_binding_map_targets, ns, new_map.target_subnetset_name)
    return new_map

@app.put("/namespaces/{ns}/bindingmaps/{name}", response_model=BindingMap)
def update_binding_map(
    ns: str,
    name: str,
    update: BindingMapUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
):
    binding_map = services.get_binding_map_logic(db, ns, name)
    if not binding_map:
        raise HTTPException(status_code=404, detail="SubnetConnectionBindingMap not found")
    old_target = binding_map.target_subnetset_name
    binding_map = services.update_binding_map_logic(db, binding_map, **update.model_dump())
    background_tasks.add_task(
        controller.enqueue_binding_map_targets, ns, old_target, binding_map.target_subnetset_name
    )
    return binding_map

@app.delete("/namespaces/{ns}/bindingmaps/{name}")
def delete_binding_map(
    ns: str,
    name: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
):
    try:
        binding_map = services.delete_binding_map_logic(db, ns, name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="SubnetConnectionBindingMap not found")
    background_tasks.add_task(controller.enqueue_binding_map_targets, ns, binding_map.target_subnetset_name)
    return {"message": "SubnetConnectionBindingMap deleted"}


# Consumers

@app.post("/namespaces/{ns}/subnetports", response_model=SubnetPort, status_code=201)
def create_subnetport(
    ns: str,
    port: SubnetPortCreate,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
):
    if services.get_subnetport_logic(db, ns, port.name):
        raise HTTPException(status_code=409, detail="SubnetPort already exists")
    new_port = services.create_subnetport_logic(db, ns, port.name, port.subnetset, port.subnet)
    try:
        return controller.attach_port(db, new_port)
    except ControlPlaneError as e:
        services.delete_subnetport_logic(db, ns, port.name)
        raise HTTPException(status_code=error_status(e), detail=str(e))

@app.get("/namespaces/{ns}/subnetports", response_model=List[SubnetPort])
def list_subnetports(ns: str, db: Session = Depends(get_db)):
    return services.list_subnetports_logic(db, ns)

@app.delete("/namespaces/{ns}/subnetports/{name}")
def delete_subnetport(
    ns: str,
    name: str,
    db: Session = Depends(get_db),
    controller: SubnetSetController = Depends(get_controller),
):
    port = services.get_subnetport_logic(db, ns, name)
    if not port:
        raise HTTPException(status_code=404, detail="SubnetPort not found")
    try:
        controller.detach_port(port)
    except ControlPlaneError as e:
        raise HTTPException(status_code=error_status(e), detail=str(e))
    services.delete_subnetport_logic(db, ns, name)
    return {"message": "SubnetPort deleted"}

@app.post("/namespaces/{ns}/pods", response_model=Pod, status_code=201)
def create_pod(ns: str, pod: PodCreate, db: Session = Depends(get_db)):
    return services.create_pod_logic(db, ns, pod.name)

@app.delete("/namespaces/{ns}/pods/{name}")
def delete_pod(ns: str, name: str, db: Session = Depends(get_db)):
    try:
        services.delete_pod_logic(db, ns, name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Pod not found")
    return {"message": "Pod deleted"}


# Operations

@app.post("/gc")
def run_garbage_collection(controller: SubnetSetController = Depends(get_controller)):
    result = controller.gc.collect_garbage()
    return {
        "success": result.success,
        "subnetsets_checked": result.subnetsets_checked,
        "orphan_subnets": result.orphan_subnets,
        "stale_ports": result.stale_ports,
        "locks_swept": result.locks_swept,
        "errors": result.errors,
    }

@app.get("/events")
def list_events(controller: SubnetSetController = Depends(get_controller)):
    return controller.recorder.generate_report()

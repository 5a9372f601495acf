"""Tests for Subnet allocation and capacity probing"""

import threading

import pytest

from api import shared_api_logic as services
from backend.capacity import has_capacity
from backend.client import TAG_SCOPE_SUBNETSET_UID, VPCInfo, VpcSubnet
from backend.simulator import InMemoryBackend
from errors import ControlPlaneError, ErrorKind, NotFoundError
from reconciler.controller import SubnetSetController

NS = "ns1"
VPC = VPCInfo(org_id="default", project_id="project-quality", vpc_id="ns1-vpc")


def auto_subnetset(db, name="web", size=16):
    return services.create_subnetset_logic(db, NS, name, access_mode="Private", ipv4_subnet_size=size)


def pre_created_subnetset(controller, db, names, size=16):
    for name in names:
        subnet_cr = services.create_subnet_logic(db, NS, name, ipv4_subnet_size=size)
        controller.realize_subnet(subnet_cr)
    return services.create_subnetset_logic(db, NS, "shared", subnet_names=names)


def test_capacity_boundary():
    # 16 addresses minus 4 reserved leaves room for 12 ports
    assert has_capacity(16, 11)
    assert not has_capacity(16, 12)
    assert not has_capacity(0, 0)


def test_pinned_addresses_override_size():
    subnet = VpcSubnet(id="s", display_name="s", ipv4_subnet_size=16, ip_addresses=["10.0.0.0/28", "10.0.1.0/28"])
    assert subnet.total_addresses() == 32


def test_auto_allocation_reuses_until_full(controller, db, namespace):
    subnetset = auto_subnetset(db)

    paths = {controller.allocator.allocate(subnetset) for _ in range(12)}
    assert len(paths) == 1
    assert len(controller.backend.list_subnets()) == 1

    overflow = controller.allocator.allocate(subnetset)
    assert overflow not in paths
    owned = controller.backend.list_subnets_by_tag(TAG_SCOPE_SUBNETSET_UID, subnetset.uid)
    assert len(owned) == 2


def test_auto_allocation_counts_backend_ports(controller, db, namespace):
    subnetset = auto_subnetset(db)
    path = controller.allocator.allocate(subnetset)
    controller.probe.release(path)
    for i in range(12):
        controller.backend.create_port(path, f"owner-{i}")

    assert controller.allocator.allocate(subnetset) != path


def test_concurrent_auto_allocation_creates_one_subnet(session_factory, namespace):
    backend = InMemoryBackend(latency_seconds=0.01)
    backend.register_vpc(NS, VPC)
    controller = SubnetSetController(session_factory, backend)
    db = session_factory()
    try:
        subnetset = auto_subnetset(db, size=64)
    finally:
        db.close()

    results, errors = [], []

    def allocate():
        try:
            results.append(controller.allocator.allocate(subnetset))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=allocate) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert len(set(results)) == 1
    assert backend.calls["create_subnet"] == 1


def test_auto_allocation_without_vpc_is_transient(controller, db):
    services.create_namespace_logic(db, NS)
    subnetset = auto_subnetset(db)

    with pytest.raises(ControlPlaneError) as exc:
        controller.allocator.allocate(subnetset)

    assert "no VPC found for namespace ns1" in str(exc.value)
    assert exc.value.kind == ErrorKind.TRANSIENT


def test_auto_allocation_without_namespace(controller, db):
    subnetset = auto_subnetset(db)
    with pytest.raises(NotFoundError):
        controller.allocator.allocate(subnetset)


def test_pre_created_walks_subnets_in_order(controller, db, namespace):
    subnetset = pre_created_subnetset(controller, db, ["subnet-a", "subnet-b"])
    first = services.get_subnet_logic(db, NS, "subnet-a")
    first_path = controller.subnet_service.get_subnet_for_cr(first).path

    paths = [controller.allocator.allocate(subnetset) for _ in range(12)]
    assert set(paths) == {first_path}

    second = controller.allocator.allocate(subnetset)
    assert second != first_path
    # Pre-created mode never creates backend Subnets
    assert controller.backend.calls["create_subnet"] == 2


def test_pre_created_exhausted(controller, db, namespace):
    subnetset = pre_created_subnetset(controller, db, ["subnet-a"])
    for _ in range(12):
        controller.allocator.allocate(subnetset)

    with pytest.raises(ControlPlaneError) as exc:
        controller.allocator.allocate(subnetset)
    assert "all Subnets for SubnetSet ns1/shared are not available" in str(exc.value)


def test_pre_created_missing_subnet_reports_error(controller, db, namespace):
    subnetset = services.create_subnetset_logic(db, NS, "shared", subnet_names=["missing"])
    with pytest.raises(NotFoundError):
        controller.allocator.allocate(subnetset)


def test_pre_created_skips_unavailable_subnet(controller, db, namespace):
    services.create_subnet_logic(db, NS, "unrealized", ipv4_subnet_size=16)
    subnetset = pre_created_subnetset(controller, db, ["subnet-a"])
    services.update_subnetset_logic(db, subnetset, subnet_names=["unrealized", "subnet-a"])

    path = controller.allocator.allocate(subnetset)

    subnet_cr = services.get_subnet_logic(db, NS, "subnet-a")
    assert path == controller.subnet_service.get_subnet_for_cr(subnet_cr).path


def test_pre_created_allocations_run_in_parallel(controller, db, namespace):
    subnetset = pre_created_subnetset(controller, db, ["subnet-a"])
    inside = threading.Event()
    finish = threading.Event()
    other_done = threading.Event()

    def holder():
        with controller.allocator.allocation(subnetset):
            inside.set()
            finish.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    assert inside.wait(5)
    assert controller.subnetset_locks._locks[subnetset.uid].readers == 1

    def other():
        controller.allocator.allocate(subnetset)
        other_done.set()

    other_thread = threading.Thread(target=other)
    other_thread.start()
    # A second reader is not blocked by the first
    assert other_done.wait(5)

    finish.set()
    thread.join(5)
    other_thread.join(5)


def test_auto_allocation_releases_lock(controller, db, namespace):
    subnetset = auto_subnetset(db)
    controller.allocator.allocate(subnetset)
    lock = controller.subnetset_locks._locks[subnetset.uid]
    assert not lock.write_held
    assert lock.readers == 0


def test_consumer_allocation_is_cached(controller, db, namespace):
    subnetset = auto_subnetset(db)
    created = []

    def create_port(path):
        created.append(controller.backend.create_port(path, "pod-uid"))

    assert controller.allocator.get_cached_path_for_consumer("pod-uid") == ""
    path = controller.allocator.allocate_for_consumer("pod-uid", subnetset, create_port)
    again = controller.allocator.allocate_for_consumer("pod-uid", subnetset, create_port)

    assert again == path
    assert len(created) == 1
    assert controller.allocator.get_cached_path_for_consumer("pod-uid") == path
    # The pending slot is handed back once the port exists
    assert controller.probe.pending(path) == 0

    controller.allocator.forget_consumer("pod-uid")
    assert controller.allocator.consumer_paths() == {}


def test_auto_allocation_skips_subnet_collected_after_listing(controller, db, namespace):
    subnetset = auto_subnetset(db)
    stale_path = controller.allocator.allocate(subnetset)
    controller.probe.release(stale_path)
    list_for_subnetset = controller.subnet_service.list_for_subnetset
    collected = []

    def list_then_collect(uid):
        subnets = list_for_subnetset(uid)
        if not collected:
            collected.append(controller.gc.collect_garbage())
        return subnets

    controller.subnet_service.list_for_subnetset = list_then_collect
    path = controller.allocator.allocate(subnetset)

    assert controller.backend.get_subnet_by_path(stale_path) is None
    assert path != stale_path
    assert controller.backend.get_subnet_by_path(path) is not None
    assert controller.probe.pending(stale_path) == 0

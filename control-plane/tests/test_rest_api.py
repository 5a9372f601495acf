import os
import tempfile

from fastapi.testclient import TestClient

from api.database import make_session_factory
from api.rest_api_server import app, get_db
from backend.simulator import InMemoryBackend
from config import SYSTEM_SERVICE_ACCOUNT
from reconciler.controller import SubnetSetController, get_controller

# Local test DB setup to avoid importing conftest internals
TestingSessionLocal = make_session_factory(os.path.join(tempfile.mkdtemp(), "rest_test.db"))
backend = InMemoryBackend()
controller = SubnetSetController(TestingSessionLocal, backend)

VPC_PATH = "/orgs/default/projects/project-quality/vpcs/{ns}-vpc"


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[get_controller] = lambda: controller
client = TestClient(app)


def setup_namespace(ns):
    assert client.post("/namespaces", json={"name": ns, "labels": {"team": "web"}}).status_code == 201
    assert client.put(f"/namespaces/{ns}/vpcnetworkconfig", json={"default_subnet_size": 32}).status_code == 200
    response = client.put(f"/namespaces/{ns}/networkinfo", json={"vpc_path": VPC_PATH.format(ns=ns)})
    assert response.status_code == 200


def reconcile(ns, name):
    return controller.reconciler.reconcile(ns, name)


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_metrics():
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "control_plane_api_requests_total" in response.text


def test_namespace_lifecycle():
    response = client.post("/namespaces", json={"name": "rest-ns"})
    assert response.status_code == 201
    assert response.json()["uid"]

    assert client.post("/namespaces", json={"name": "rest-ns"}).status_code == 409
    assert client.get("/namespaces/missing-ns").status_code == 404

    response = client.patch("/namespaces/rest-ns", json={"labels": {"env": "prod"}})
    assert response.status_code == 200
    assert response.json()["labels"] == {"env": "prod"}
    assert client.patch("/namespaces/missing-ns", json={"labels": {}}).status_code == 404


def test_network_info_rejects_bad_vpc_path():
    response = client.put("/namespaces/rest-bad/networkinfo", json={"vpc_path": "/not/a/vpc"})
    assert response.status_code == 422


def test_subnetset_create_and_reconcile():
    setup_namespace("rest-create")
    response = client.post("/namespaces/rest-create/subnetsets", json={"name": "web"})
    assert response.status_code == 201
    assert response.json()["subnet_names"] is None

    assert client.post("/namespaces/rest-create/subnetsets", json={"name": "web"}).status_code == 409

    assert reconcile("rest-create", "web").success
    data = client.get("/namespaces/rest-create/subnetsets/web").json()
    assert data["access_mode"] == "Private"
    assert data["ipv4_subnet_size"] == 32
    assert data["conditions"][0]["type"] == "Ready"
    assert data["conditions"][0]["status"] == "True"

    listed = client.get("/namespaces/rest-create/subnetsets").json()
    assert [s["name"] for s in listed] == ["web"]

    events = client.get("/namespaces/rest-create/subnetsets/web/events").json()
    assert events[-1]["reason"] == "SuccessfulCreateOrUpdate"


def test_subnetset_admission_denials():
    setup_namespace("rest-deny")
    response = client.post("/namespaces/rest-deny/subnetsets", json={"name": "web", "ipv4_subnet_size": 24})
    assert response.status_code == 403

    response = client.post("/namespaces/rest-deny/subnetsets", json={"name": "pod-default"})
    assert response.status_code == 403
    assert "system identity" in response.json()["detail"]

    response = client.post(
        "/namespaces/rest-deny/subnetsets",
        json={"name": "pod-default"},
        headers={"X-Remote-User": SYSTEM_SERVICE_ACCOUNT},
    )
    assert response.status_code == 201

    client.post("/namespaces/rest-deny/subnetsets", json={"name": "shared", "subnet_names": []})
    response = client.put("/namespaces/rest-deny/subnetsets/shared", json={"ipv4_subnet_size": 32})
    assert response.status_code == 403
    assert "cannot be switched" in response.json()["detail"]

    assert client.put("/namespaces/rest-deny/subnetsets/missing", json={}).status_code == 404


def test_subnetport_lifecycle():
    setup_namespace("rest-port")
    client.post("/namespaces/rest-port/subnetsets", json={"name": "web"})
    reconcile("rest-port", "web")

    response = client.post("/namespaces/rest-port/subnetports", json={"name": "port-1", "subnetset": "web"})
    assert response.status_code == 201
    port = response.json()
    assert port["subnet_path"].startswith(VPC_PATH.format(ns="rest-port"))
    assert port["port_id"]
    assert len(backend.list_ports_of_subnet(port["subnet_path"].rsplit("/", 1)[-1])) == 1

    # In use: deletion is refused
    response = client.delete("/namespaces/rest-port/subnetsets/web")
    assert response.status_code == 403
    assert "stale SubnetPorts" in response.json()["detail"]

    assert client.delete("/namespaces/rest-port/subnetports/port-1").status_code == 200
    assert client.get("/namespaces/rest-port/subnetports").json() == []

    response = client.delete("/namespaces/rest-port/subnetsets/web")
    assert response.status_code == 200
    assert response.json()["message"] == "SubnetSet deleted"

    assert reconcile("rest-port", "web").success
    assert backend.list_subnets_by_tag("subnet-cp/namespace", "rest-port") == []


def test_subnetport_with_unknown_subnetset():
    setup_namespace("rest-orphan-port")
    response = client.post("/namespaces/rest-orphan-port/subnetports", json={"name": "p", "subnetset": "nope"})
    assert response.status_code == 404
    assert client.get("/namespaces/rest-orphan-port/subnetports").json() == []


def test_pre_created_subnets():
    setup_namespace("rest-pre")
    response = client.post("/namespaces/rest-pre/subnets", json={"name": "subnet-a", "ipv4_subnet_size": 16})
    assert response.status_code == 201

    response = client.post("/namespaces/rest-pre/subnetsets", json={"name": "shared", "subnet_names": ["subnet-a"]})
    assert response.status_code == 201
    reconcile("rest-pre", "shared")
    status = client.get("/namespaces/rest-pre/subnetsets/shared").json()["status_subnets"]
    assert len(status) == 1

    response = client.post("/namespaces/rest-pre/subnetports", json={"name": "port-1", "subnetset": "shared"})
    assert response.status_code == 201
    assert response.json()["subnet_path"] == status[0]["path"]

    response = client.post("/namespaces/rest-pre/subnetports", json={"name": "port-2", "subnet": "subnet-a"})
    assert response.status_code == 201
    assert response.json()["subnet_path"] == status[0]["path"]


def test_binding_map_holds_subnetset():
    setup_namespace("rest-bind")
    client.post("/namespaces/rest-bind/subnetsets", json={"name": "web"})
    response = client.post(
        "/namespaces/rest-bind/bindingmaps",
        json={"name": "bind", "subnet_name": "child", "target_subnetset_name": "web"},
    )
    assert response.status_code == 201
    reconcile("rest-bind", "web")
    assert client.get("/namespaces/rest-bind/subnetsets/web").json()["finalizers"]

    response = client.delete("/namespaces/rest-bind/subnetsets/web")
    assert response.json()["message"] == "SubnetSet deletion initiated"
    reconcile("rest-bind", "web")
    assert client.get("/namespaces/rest-bind/subnetsets/web").json()["deletion_timestamp"] is not None

    assert client.delete("/namespaces/rest-bind/bindingmaps/bind").status_code == 200
    reconcile("rest-bind", "web")
    assert client.get("/namespaces/rest-bind/subnetsets/web").status_code == 404
    assert client.delete("/namespaces/rest-bind/bindingmaps/bind").status_code == 404


def test_pods():
    response = client.post("/namespaces/rest-pods/pods", json={"name": "pod-1"})
    assert response.status_code == 201
    assert client.delete("/namespaces/rest-pods/pods/pod-1").status_code == 200
    assert client.delete("/namespaces/rest-pods/pods/pod-1").status_code == 404


def test_garbage_collection_endpoint():
    response = client.post("/gc")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert "total_events" in client.get("/events").json()

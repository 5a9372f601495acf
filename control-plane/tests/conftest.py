import os
import sys
import tempfile

import pytest

# Keep the module-level session factory out of /app/data during tests
# Set these BEFORE importing any project modules
_db_dir = tempfile.mkdtemp(prefix="subnet-cp-test-")
os.environ["DB_DIR"] = _db_dir
os.environ["DB_PATH"] = os.path.join(_db_dir, "subnets_test.db")

# Add the control-plane directory to sys.path
base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.append(base_dir)

from api import shared_api_logic as services
from api.database import make_session_factory
from backend.client import VPCInfo
from backend.simulator import InMemoryBackend
from reconciler.controller import SubnetSetController

NAMESPACE = "ns1"
VPC = VPCInfo(org_id="default", project_id="project-quality", vpc_id="ns1-vpc")


@pytest.fixture
def session_factory(tmp_path):
    return make_session_factory(str(tmp_path / "subnets.db"))


@pytest.fixture
def db(session_factory):
    database = session_factory()
    try:
        yield database
    finally:
        database.close()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def controller(session_factory, backend):
    ctrl = SubnetSetController(
        session_factory, backend, workers=2, requeue_delay=0.05, gc_interval=3600
    )
    yield ctrl
    ctrl.stop()


@pytest.fixture
def namespace(db, backend):
    """A namespace with network config and a VPC, ready for allocation."""
    services.create_namespace_logic(db, NAMESPACE, {"team": "payments"})
    services.set_vpc_network_config_logic(db, NAMESPACE, 32)
    services.set_network_info_logic(db, NAMESPACE, VPC.path, VPC.network_stack)
    backend.register_vpc(NAMESPACE, VPC)
    return NAMESPACE


@pytest.fixture
def fetch(session_factory):
    """Read a SubnetSet through a fresh session so no cached state leaks in."""

    def _fetch(namespace, name):
        database = session_factory()
        try:
            return services.get_subnetset_logic(database, namespace, name)
        finally:
            database.close()

    return _fetch

# File: metrics.py

from prometheus_client import Counter, Gauge, Histogram

METRICS = {
    "subnetsets_total": Gauge(
        "control_plane_subnetsets_total", "Total count of SubnetSets"
    ),
    "backend_subnets_total": Gauge(
        "control_plane_backend_subnets_total", "Total count of backend Subnets"
    ),
    "reconciliation_latency": Histogram(
        "control_plane_reconciliation_duration_ms",
        "Time taken for reconciliation in milliseconds",
        buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000),
    ),
    "api_requests": Counter(
        "control_plane_api_requests_total",
        "Total REST API requests",
        ["method", "endpoint"],
    ),
    "controller_sync": Counter(
        "control_plane_controller_sync_total",
        "Count of reconcile invocations",
        ["res_type"],
    ),
    "controller_update": Counter(
        "control_plane_controller_update_total",
        "Count of create/update reconcile outcomes",
        ["res_type", "result"],
    ),
    "controller_delete": Counter(
        "control_plane_controller_delete_total",
        "Count of delete reconcile outcomes",
        ["res_type", "result"],
    ),
    "gc_deletions": Counter(
        "control_plane_gc_subnet_deletions_total",
        "Count of backend Subnet deletions attempted by garbage collection",
        ["result"],
    ),
    "allocations": Counter(
        "control_plane_subnet_allocations_total",
        "Count of Subnet allocations for consumers",
        ["mode", "result"],
    ),
}

RES_TYPE_SUBNETSET = "subnetset"


def record_update(res_type: str, success: bool):
    METRICS["controller_update"].labels(
        res_type=res_type, result="success" if success else "fail"
    ).inc()


def record_delete(res_type: str, success: bool):
    METRICS["controller_delete"].labels(
        res_type=res_type, result="success" if success else "fail"
    ).inc()

#!/usr/bin/env python3
"""
Subnet Control Plane - Main Entry Point

This is the central control plane for SubnetSet lifecycle management.
It runs:
- REST API for cluster objects (SubnetSets, Subnets, ports, bindings)
- SubnetSet reconciliation workers
- Periodic Subnet garbage collection
"""

import logging

import uvicorn

from config import BACKEND_LATENCY_SECONDS, GC_INTERVAL_SECONDS, MAX_CONCURRENT_RECONCILES, REST_PORT
from metrics import METRICS
from api import shared_api_logic as services
from api.rest_api_server import app, SessionLocal
from reconciler.controller import get_controller

logger = logging.getLogger("control_plane")


def start_rest_api():
    """Start the FastAPI REST API server."""
    logger.info(f"Starting REST API on port {REST_PORT}...")
    uvicorn.run(app, host="0.0.0.0", port=REST_PORT, log_level="info")


def initialize_metrics():
    """Initialize Prometheus gauges from the object store."""
    db = SessionLocal()
    try:
        METRICS["subnetsets_total"].set(len(services.list_subnetsets_logic(db)))
        logger.info("Metrics initialized")
    except Exception as e:
        logger.error(f"Error initializing metrics: {e}")
    finally:
        db.close()


def main():
    logger.info("=" * 60)
    logger.info("  Subnet Control Plane")
    logger.info("=" * 60)

    initialize_metrics()

    controller = get_controller()
    controller.start()
    logger.info(
        f"SubnetSet controller started: {MAX_CONCURRENT_RECONCILES} workers, "
        f"GC every {GC_INTERVAL_SECONDS}s, backend latency {BACKEND_LATENCY_SECONDS}s"
    )

    try:
        start_rest_api()
    finally:
        controller.stop()


if __name__ == "__main__":
    main()

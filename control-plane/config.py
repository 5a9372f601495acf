# File: config.py
"""
Control plane configuration.

Every knob is read from the environment once, at import time.
"""

import logging
import os

# Get log level from environment variable or default to INFO
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# Get dependencies log level from environment variable or default to WARNING
DEPENDENCIES_LOG_LEVEL = os.getenv("DEPENDENCIES_LOG_LEVEL", "WARNING").upper()

logging.basicConfig(
    level=getattr(logging, DEPENDENCIES_LOG_LEVEL, logging.WARNING),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

for _name in ("api", "backend", "reconciler", "control_plane"):
    logging.getLogger(_name).setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

# Storage
DB_DIR = os.getenv("DB_DIR", "/app/data")
DB_PATH = os.getenv("DB_PATH", f"{DB_DIR}/subnets.db")

# Cluster identity, used in backend tags
CLUSTER_NAME = os.getenv("CLUSTER_NAME", "subnet-cp")
VERSION = "1.0.0"

# Controllers
GC_INTERVAL_SECONDS = float(os.getenv("GC_INTERVAL_SECONDS", 600))
MAX_CONCURRENT_RECONCILES = int(os.getenv("MAX_CONCURRENT_RECONCILES", 8))
REQUEUE_DELAY_SECONDS = float(os.getenv("REQUEUE_DELAY_SECONDS", 5))

# Subnet sizing
MIN_SUBNET_SIZE = int(os.getenv("MIN_SUBNET_SIZE", 16))
DEFAULT_SUBNET_SIZE = int(os.getenv("DEFAULT_SUBNET_SIZE", 32))
# Network, broadcast, gateway and one address held back by the backend
RESERVED_IP_COUNT = int(os.getenv("RESERVED_IP_COUNT", 4))
TAGS_COUNT_MAX = int(os.getenv("TAGS_COUNT_MAX", 26))

# Admission
SYSTEM_SERVICE_ACCOUNT = os.getenv(
    "SYSTEM_SERVICE_ACCOUNT", "system:serviceaccount:subnet-cp-system:subnet-operator"
)
ACCESS_MODE_ERROR_MESSAGE = os.getenv(
    "ACCESS_MODE_ERROR_MESSAGE",
    "AccessMode other than Public/L2Only is not supported for VLANBackedVPC",
)

SUBNETSET_FINALIZER = "subnetset.subnet-cp.io/finalizer"

# Simulated backend
BACKEND_LATENCY_SECONDS = float(os.getenv("BACKEND_LATENCY_SECONDS", 0))
BACKEND_ORG = os.getenv("BACKEND_ORG", "default")
BACKEND_PROJECT = os.getenv("BACKEND_PROJECT", "project-quality")

REST_PORT = int(os.getenv("REST_PORT", 8000))

"""Prometheus metrics definitions for the Metahub Branch Service.

This module defines all Prometheus metrics used for observability:
- HTTP request metrics (count, duration, in-flight)
- Store query metrics (queries, duration, open connections)
- Branch lifecycle metrics (operations, creation latency, lock contention)
- Namespace compensation outcomes
- Resolution cache lookups
"""

import platform
import time
from prometheus_client import Counter, Histogram, Gauge, Info
from prometheus_client import ProcessCollector

# Register ProcessCollector for process_* metrics
# Note: ProcessCollector only works on Linux (uses /proc filesystem)
if platform.system() == "Linux":
    try:
        ProcessCollector()
    except ValueError:
        pass  # Already registered by prometheus_client itself

# =============================================================================
# Service Health Metrics
# =============================================================================

SERVICE_UP = Gauge(
    "metahub_branches_up",
    "Whether the branch service is up (1) or down (0)"
)

SERVICE_START_TIME = Gauge(
    "metahub_branches_start_time_seconds",
    "Unix timestamp when the service started"
)

_start_time = time.time()
SERVICE_START_TIME.set(_start_time)
SERVICE_UP.set(1)

# =============================================================================
# HTTP Request Metrics
# =============================================================================

REQUEST_COUNT = Counter(
    "metahub_branches_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_DURATION = Histogram(
    "metahub_branches_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

REQUEST_IN_FLIGHT = Gauge(
    "metahub_branches_requests_in_flight",
    "Number of HTTP requests currently being processed",
    ["method"]
)

ERROR_COUNT = Counter(
    "metahub_branches_errors_total",
    "Total number of errors by type",
    ["type", "endpoint"]
)

# =============================================================================
# Store Metrics
# =============================================================================

STORE_QUERIES_TOTAL = Counter(
    "metahub_store_queries_total",
    "Total queries against the shared store",
    ["operation"]  # read, write
)

STORE_QUERY_DURATION = Histogram(
    "metahub_store_query_duration_seconds",
    "Shared store query duration in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

STORE_CONNECTIONS_ACTIVE = Gauge(
    "metahub_store_connections_active",
    "Open connections to the shared store"
)

METAHUBS_TOTAL = Gauge(
    "metahub_metahubs_total",
    "Total number of metahubs"
)

# =============================================================================
# Branch Lifecycle Metrics
# =============================================================================

BRANCHES_TOTAL = Gauge(
    "metahub_branches_total",
    "Total number of branches across all metahubs"
)

BRANCH_OPERATIONS = Counter(
    "metahub_branch_operations_total",
    "Branch lifecycle operations",
    ["operation", "status"]  # operation: create_initial, create, update, activate, set_default, delete
)

BRANCH_CREATE_DURATION = Histogram(
    "metahub_branch_create_duration_seconds",
    "Branch creation duration in seconds (provisioning and cloning included)",
    ["cloned"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)

BRANCH_LOCK_CONTENTION = Counter(
    "metahub_branch_lock_contention_total",
    "Advisory lock acquisitions refused because the lock was held",
    ["scope"]  # branch-create, initial-branch, branch-delete
)

NAMESPACE_COMPENSATIONS = Counter(
    "metahub_namespace_compensations_total",
    "Compensating namespace drops after failed branch creation",
    ["outcome"]  # dropped, failed
)

# =============================================================================
# Resolution Cache Metrics
# =============================================================================

RESOLUTION_CACHE_LOOKUPS = Counter(
    "metahub_resolution_cache_lookups_total",
    "Active/default branch resolution cache lookups",
    ["kind", "result"]  # kind: user, default; result: hit, miss
)

# =============================================================================
# Service Info
# =============================================================================

SERVICE_INFO = Info(
    "metahub_branches_service",
    "Metahub Branch Service information"
)


def set_service_info(version: str, duckdb_version: str) -> None:
    """Set service info labels."""
    SERVICE_INFO.info({
        "version": version,
        "duckdb_version": duckdb_version
    })

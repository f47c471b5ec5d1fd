"""
Prometheus metrics for application monitoring.

This module defines all Prometheus metrics used throughout the application:
- API request metrics (requests, duration, in-progress)
- Upload metrics (files by outcome, bytes stored, limit rejections)
- Object storage backend metrics (operations, latency)
- Lifecycle metrics (signed references, deletion tasks, sweeps)
- Storage metrics (per-tenant usage, quota)
"""
from prometheus_client import Counter, Gauge, Histogram


# ============================================================================
# API Metrics
# ============================================================================

api_requests_total = Counter(
    "api_requests_total",
    "Total number of API requests",
    ["method", "endpoint", "status"],
)

api_request_duration_seconds = Histogram(
    "api_request_duration_seconds",
    "API request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

api_requests_in_progress = Gauge(
    "api_requests_in_progress",
    "Number of API requests currently being processed",
    ["method", "endpoint"],
)


# ============================================================================
# Upload Metrics
# ============================================================================

uploads_total = Counter(
    "uploads_total",
    "Total number of uploaded files by outcome",
    ["visibility", "status"],
)

upload_bytes_total = Counter(
    "upload_bytes_total",
    "Total number of bytes stored by successful uploads",
    ["visibility"],
)

upload_file_size_bytes = Histogram(
    "upload_file_size_bytes",
    "Size distribution of uploaded files",
    buckets=[1024, 10 * 1024, 100 * 1024, 1024 ** 2, 10 * 1024 ** 2, 50 * 1024 ** 2, 200 * 1024 ** 2],
)

plan_limit_rejections_total = Counter(
    "plan_limit_rejections_total",
    "Number of requests rejected by a plan limit",
    ["limit_type"],  # limit_type: file_size, storage, requests
)


# ============================================================================
# Backend Metrics
# ============================================================================

backend_operations_total = Counter(
    "backend_operations_total",
    "Total number of object storage operations",
    ["operation", "status"],
)

backend_operation_duration_seconds = Histogram(
    "backend_operation_duration_seconds",
    "Object storage operation duration in seconds",
    ["operation"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

backend_reauthentications_total = Counter(
    "backend_reauthentications_total",
    "Number of times the object storage session was re-established",
)


# ============================================================================
# Lifecycle Metrics
# ============================================================================

signed_references_total = Counter(
    "signed_references_total",
    "Private references handed out by source",
    ["source"],  # source: cached, issued, renewed
)

deletion_tasks_processed_total = Counter(
    "deletion_tasks_processed_total",
    "Deletion tasks handled by the reconciler by outcome",
    ["outcome"],  # outcome: purged, absent, failed
)

deletion_tasks_enqueued_total = Counter(
    "deletion_tasks_enqueued_total",
    "Deletion tasks enqueued by reason",
    ["reason"],  # reason: delete, overwrite, expired, orphan, stale_upload, rollback
)

sweep_runs_total = Counter(
    "sweep_runs_total",
    "Background sweep runs by job and status",
    ["job", "status"],  # status: success, failed, skipped, backoff
)

sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Background sweep duration in seconds",
    ["job"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)


# ============================================================================
# Storage Metrics
# ============================================================================

storage_used_bytes = Gauge(
    "storage_used_bytes",
    "Committed storage per tenant in bytes",
    ["tenant_id"],
)

storage_quota_bytes = Gauge(
    "storage_quota_bytes",
    "Storage cap per tenant in bytes (0 = unlimited)",
    ["tenant_id"],
)


# ============================================================================
# System Metrics (Application Level)
# ============================================================================

app_info = Gauge(
    "app_info",
    "Application information",
    ["version", "environment"],
)

app_uptime_seconds = Gauge(
    "app_uptime_seconds",
    "Application uptime in seconds",
)


# ============================================================================
# Helper Functions
# ============================================================================

def record_api_request(method: str, endpoint: str, status_code: int, duration: float):
    """Record API request metrics."""
    api_requests_total.labels(method=method, endpoint=endpoint, status=status_code).inc()
    api_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)


def record_upload(visibility: str, success: bool, size_bytes: int = 0):
    """Record the outcome of one uploaded file."""
    status = "success" if success else "failed"
    uploads_total.labels(visibility=visibility, status=status).inc()
    if success:
        upload_bytes_total.labels(visibility=visibility).inc(size_bytes)
        upload_file_size_bytes.observe(size_bytes)


def record_limit_rejection(limit_type: str):
    """Record a plan limit rejection."""
    plan_limit_rejections_total.labels(limit_type=limit_type).inc()


def record_backend_operation(operation: str, success: bool, duration: float):
    """Record object storage operation metrics."""
    status = "success" if success else "failed"
    backend_operations_total.labels(operation=operation, status=status).inc()
    backend_operation_duration_seconds.labels(operation=operation).observe(duration)


def record_signed_reference(source: str):
    """Record a private reference hand-out."""
    signed_references_total.labels(source=source).inc()


def record_deletion_task(outcome: str):
    """Record a processed deletion task."""
    deletion_tasks_processed_total.labels(outcome=outcome).inc()


def record_deletion_enqueued(reason: str):
    """Record an enqueued deletion task."""
    deletion_tasks_enqueued_total.labels(reason=reason).inc()


def record_sweep(job: str, status: str, duration: float = 0.0):
    """Record a background sweep run."""
    sweep_runs_total.labels(job=job, status=status).inc()
    if status in ("success", "failed"):
        sweep_duration_seconds.labels(job=job).observe(duration)


def update_storage_metrics(tenant_id: str, used_bytes: int, quota_bytes: int):
    """Update storage usage metrics."""
    storage_used_bytes.labels(tenant_id=tenant_id).set(used_bytes)
    storage_quota_bytes.labels(tenant_id=tenant_id).set(quota_bytes)

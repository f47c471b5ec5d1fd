"""
Metrics module for application monitoring.

This module provides Prometheus metrics collection and helper functions.
"""
from stashbox.metrics.prometheus import (
    # API Metrics
    api_requests_total,
    api_request_duration_seconds,
    api_requests_in_progress,

    # Upload Metrics
    uploads_total,
    upload_bytes_total,
    upload_file_size_bytes,
    plan_limit_rejections_total,

    # Backend Metrics
    backend_operations_total,
    backend_operation_duration_seconds,
    backend_reauthentications_total,

    # Lifecycle Metrics
    signed_references_total,
    deletion_tasks_processed_total,
    deletion_tasks_enqueued_total,
    sweep_runs_total,
    sweep_duration_seconds,

    # Storage Metrics
    storage_used_bytes,
    storage_quota_bytes,

    # System Metrics
    app_info,
    app_uptime_seconds,

    # Helper Functions
    record_api_request,
    record_upload,
    record_limit_rejection,
    record_backend_operation,
    record_signed_reference,
    record_deletion_task,
    record_deletion_enqueued,
    record_sweep,
    update_storage_metrics,
)

__all__ = [
    # API Metrics
    "api_requests_total",
    "api_request_duration_seconds",
    "api_requests_in_progress",

    # Upload Metrics
    "uploads_total",
    "upload_bytes_total",
    "upload_file_size_bytes",
    "plan_limit_rejections_total",

    # Backend Metrics
    "backend_operations_total",
    "backend_operation_duration_seconds",
    "backend_reauthentications_total",

    # Lifecycle Metrics
    "signed_references_total",
    "deletion_tasks_processed_total",
    "deletion_tasks_enqueued_total",
    "sweep_runs_total",
    "sweep_duration_seconds",

    # Storage Metrics
    "storage_used_bytes",
    "storage_quota_bytes",

    # System Metrics
    "app_info",
    "app_uptime_seconds",

    # Helper Functions
    "record_api_request",
    "record_upload",
    "record_limit_rejection",
    "record_backend_operation",
    "record_signed_reference",
    "record_deletion_task",
    "record_deletion_enqueued",
    "record_sweep",
    "update_storage_metrics",
]

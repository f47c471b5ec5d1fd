"""
Middleware module for FastAPI application.

This module contains custom middleware for:
- Prometheus metrics collection
"""
from stashbox.middleware.metrics import MetricsMiddleware, normalize_path

__all__ = ["MetricsMiddleware", "normalize_path"]

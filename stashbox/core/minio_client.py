"""
MinIO Client Module

Provides MinIO client configuration and initialization.
"""
from typing import Optional

import urllib3
from minio import Minio

from stashbox.core.config import settings


def build_http_client(timeout_seconds: Optional[float] = None) -> urllib3.PoolManager:
    """
    Create the urllib3 pool used by MinIO with a bounded timeout.

    Args:
        timeout_seconds: Connect/read timeout (default: BACKEND_TIMEOUT_SECONDS)

    Returns:
        urllib3.PoolManager: HTTP pool for the MinIO client
    """
    timeout = timeout_seconds or settings.BACKEND_TIMEOUT_SECONDS
    return urllib3.PoolManager(
        timeout=urllib3.Timeout(connect=timeout, read=timeout),
        maxsize=max(10, settings.UPLOAD_MAX_PARALLEL_FILES * 2),
        retries=urllib3.Retry(
            total=2,
            backoff_factor=0.2,
            status_forcelist=[500, 502, 503, 504],
        ),
    )


def get_minio_client(
    access_key: Optional[str] = None,
    secret_key: Optional[str] = None,
    session_token: Optional[str] = None,
) -> Minio:
    """
    Create and return a MinIO client instance.

    Credentials default to the configured ones; callers refreshing an
    expired session pass the new credentials explicitly.

    Returns:
        Minio: Configured MinIO client
    """
    return Minio(
        endpoint=settings.minio_endpoint,
        access_key=access_key or settings.MINIO_ACCESS_KEY,
        secret_key=secret_key or settings.MINIO_SECRET_KEY,
        session_token=session_token or settings.MINIO_SESSION_TOKEN,
        secure=settings.MINIO_SECURE,
        region=settings.MINIO_REGION,
        http_client=build_http_client(),
    )

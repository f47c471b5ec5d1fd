"""
Pydantic schemas for request/response validation.
"""
from stashbox.schemas.files import (
    UploadedFile,
    FailedFile,
    UploadResponse,
    FileItem,
    FileListResponse,
    FileLocatorResponse,
    FileDeleteResponse,
    PlanLimits,
    UsageResponse,
)

__all__ = [
    # Upload schemas
    "UploadedFile",
    "FailedFile",
    "UploadResponse",
    # File schemas
    "FileItem",
    "FileListResponse",
    "FileLocatorResponse",
    "FileDeleteResponse",
    # Usage schemas
    "PlanLimits",
    "UsageResponse",
]

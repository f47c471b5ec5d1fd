"""
Pydantic schemas for upload, file and usage responses.
"""
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field


# ========================================
# Upload
# ========================================

class UploadedFile(BaseModel):
    """A file stored by an upload request."""
    id: str
    filename: str
    path: str
    size: int = Field(..., ge=0, description="Size in bytes")
    private: bool
    url: str = Field(..., description="Public URL, or signed URL for private files")
    expires_in: Optional[int] = Field(None, description="Seconds until a private URL expires")


class FailedFile(BaseModel):
    """A file an upload request could not store."""
    filename: str
    error: str
    code: str = Field(..., description="Machine-readable error code")
    status_code: int


class UploadResponse(BaseModel):
    """
    Multi-file upload result.

    HTTP status is 200 when at least one file was stored, otherwise the
    status of the first failure.
    """
    success: bool
    uploaded: int
    failed: int
    files: List[Union[UploadedFile, FailedFile]]
    took_ms: int


# ========================================
# Files
# ========================================

class FileItem(BaseModel):
    id: str
    filename: str
    path: str
    size: int
    content_type: Optional[str] = None
    private: bool
    url: Optional[str] = Field(None, description="Public URL; null for private files")
    created_at: Optional[datetime] = None
    scheduled_delete_at: Optional[datetime] = None


class FileListResponse(BaseModel):
    files: List[FileItem]
    page: int
    limit: int
    total: int
    has_more: bool


class FileLocatorResponse(BaseModel):
    """Locator of one file."""
    id: str
    url: str
    private: bool
    expires_in: Optional[int] = None
    expires_at: Optional[datetime] = None


class FileDeleteResponse(BaseModel):
    id: str
    deleted: bool
    freed_bytes: int
    purge_after: Optional[datetime] = Field(None, description="Earliest purge of the stored object")


# ========================================
# Usage
# ========================================

class PlanLimits(BaseModel):
    plan_id: str
    price_text: str
    storage_limit: Optional[int] = None
    max_file_size: Optional[int] = None
    max_requests_per_day: Optional[int] = None
    max_signed_url_expiry_seconds: int
    custom: bool = False


class UsageResponse(BaseModel):
    """Storage and request usage of the calling tenant."""
    tenant_id: str
    plan: str
    storage_used: int
    storage_reserved: int
    storage_limit: Optional[int] = None
    storage_available: Optional[int] = None
    usage_percentage: float
    file_count: int
    requests_today: int
    requests_limit: Optional[int] = None
    window_resets_at: Optional[datetime] = None
    limits: PlanLimits

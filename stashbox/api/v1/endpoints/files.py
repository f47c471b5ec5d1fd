"""
File Endpoints
List, locate and delete the caller's files.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from stashbox.core.security import get_current_tenant
from stashbox.db import get_db
from stashbox.models import Tenant
from stashbox.schemas import FileDeleteResponse, FileListResponse, FileLocatorResponse
from stashbox.services import Services, get_services

router = APIRouter(prefix="/files")


@router.get("", response_model=FileListResponse)
def list_files(
    q: Optional[str] = Query(None, description="Search filenames and folders"),
    sort: str = Query("created_at_desc", description="created_at_desc, created_at_asc, size_desc or size_asc"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """List active files, newest first by default."""
    return services.files.list_files(db, tenant, q=q, sort=sort, page=page, limit=limit)


@router.get("/{file_id}/url", response_model=FileLocatorResponse)
def get_file_url(
    file_id: str,
    expire_seconds: Optional[int] = Query(None, ge=1, description="Requested lifetime of a private URL"),
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    URL of a file.

    Private files get a signed URL, reused while it stays valid long enough
    and reissued otherwise.
    """
    reference = services.files.get_locator(db, tenant, file_id, expire_seconds)
    return {"id": file_id, **reference.to_dict()}


@router.delete("/{file_id}", response_model=FileDeleteResponse)
def delete_file(
    file_id: str,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Delete a file; its storage is released immediately."""
    return services.files.delete_file(db, tenant, file_id)

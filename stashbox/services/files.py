"""
File Service

Tenant-facing operations on stored files outside the upload path:
listing, locator lookup, deletion and usage reporting.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stashbox.core.clock import utcnow
from stashbox.core.config import settings
from stashbox.core.errors import FileNotFound, InvalidUpload, MetadataStoreError
from stashbox.models import FileObject, FileStatus, Tenant
from stashbox.storage.plans import PlanCatalog
from stashbox.storage.quota import QuotaLedger
from stashbox.storage.reconciler import DeletionReconciler
from stashbox.storage.references import IssuedReference, ReferenceIssuer

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50

SORT_ORDERS = {
    "created_at_desc": (FileObject.created_at.desc(), FileObject.id.desc()),
    "created_at_asc": (FileObject.created_at.asc(), FileObject.id.asc()),
    "size_desc": (FileObject.size.desc(), FileObject.id.desc()),
    "size_asc": (FileObject.size.asc(), FileObject.id.asc()),
}


class FileService:
    """Listing, locating and deleting a tenant's files"""

    def __init__(
        self,
        catalog: PlanCatalog,
        ledger: QuotaLedger,
        issuer: ReferenceIssuer,
        reconciler: DeletionReconciler,
        delete_grace_seconds: Optional[int] = None,
    ):
        self.catalog = catalog
        self.ledger = ledger
        self.issuer = issuer
        self.reconciler = reconciler
        self.delete_grace_seconds = (
            delete_grace_seconds if delete_grace_seconds is not None else settings.DELETE_GRACE_SECONDS
        )

    def _owned_file(self, db: Session, tenant: Tenant, file_id: str) -> FileObject:
        try:
            file = db.execute(
                select(FileObject).where(
                    FileObject.id == file_id,
                    FileObject.tenant_id == tenant.id,
                    FileObject.status == FileStatus.ACTIVE,
                )
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("File lookup failed") from e

        if file is None:
            raise FileNotFound(f"File {file_id} not found")
        return file

    def list_files(
        self,
        db: Session,
        tenant: Tenant,
        q: Optional[str] = None,
        sort: str = "created_at_desc",
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """
        List a tenant's active files.

        Args:
            db: Database session
            tenant: Owning tenant
            q: Case-insensitive substring of the filename or folder
            sort: created_at_desc, created_at_asc, size_desc or size_asc
            page: 1-based page number
            limit: Page size (max 50)

        Returns:
            Dict with files, pagination info and total count
        """
        if sort not in SORT_ORDERS:
            raise InvalidUpload(
                f"sort must be one of {', '.join(SORT_ORDERS)}",
                details={"sort": sort},
            )
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        conditions = [FileObject.tenant_id == tenant.id, FileObject.status == FileStatus.ACTIVE]
        if q:
            pattern = f"%{q.strip().lower()}%"
            conditions.append(or_(
                func.lower(FileObject.filename).like(pattern),
                func.lower(FileObject.folder).like(pattern),
            ))

        try:
            total = db.execute(select(func.count(FileObject.id)).where(*conditions)).scalar_one()
            files = db.execute(
                select(FileObject)
                .where(*conditions)
                .order_by(*SORT_ORDERS[sort])
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("File listing failed") from e

        items = []
        for file in files:
            item = {
                "id": file.id,
                "filename": file.filename,
                "path": file.path,
                "size": file.size,
                "content_type": file.content_type,
                "private": file.is_private,
                "created_at": file.created_at.isoformat() if file.created_at else None,
                "scheduled_delete_at": file.scheduled_delete_at.isoformat() if file.scheduled_delete_at else None,
            }
            # Private files get their URL from /files/{id}/url
            item["url"] = None if file.is_private else self.issuer.public_url(file, tenant.domain)
            items.append(item)

        return {
            "files": items,
            "page": page,
            "limit": limit,
            "total": total,
            "has_more": page * limit < total,
        }

    def get_locator(
        self,
        db: Session,
        tenant: Tenant,
        file_id: str,
        expire_seconds: Optional[int] = None,
    ) -> IssuedReference:
        """Locator of one file, reissuing a private token if needed."""
        file = self._owned_file(db, tenant, file_id)
        limits = self.catalog.resolve(db, tenant)
        return self.issuer.locator_for(db, file, expire_seconds, limits, tenant.domain)

    def delete_file(self, db: Session, tenant: Tenant, file_id: str) -> Dict[str, Any]:
        """
        Delete a file.

        The metadata row and its storage charge go immediately; the stored
        object is purged by the deletion sweep once the grace period ends.

        Raises:
            FileNotFound: No active file with this id belongs to the tenant
        """
        file = self._owned_file(db, tenant, file_id)
        expire_at = utcnow() + timedelta(seconds=self.delete_grace_seconds) if self.delete_grace_seconds > 0 else None

        retired = self.reconciler.retire_file(db, file, reason="delete", expire_at=expire_at)
        if retired is None:
            raise FileNotFound(f"File {file_id} not found")

        logger.info(f"Tenant {tenant.id} deleted file {file_id} ({retired.size} bytes)")
        return {
            "id": retired.file_id,
            "deleted": True,
            "freed_bytes": retired.size,
            "purge_after": expire_at.isoformat() if expire_at else None,
        }

    def usage(self, db: Session, tenant: Tenant) -> Dict[str, Any]:
        limits = self.catalog.resolve(db, tenant)
        snapshot = self.ledger.usage(db, tenant, limits)
        data = snapshot.to_dict()
        data["limits"] = limits.to_dict()
        return data

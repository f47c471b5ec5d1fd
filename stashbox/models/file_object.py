"""
SQLAlchemy model for stored files.
Represents the file_objects table in the database.
"""
import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    BigInteger,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from stashbox.core.clock import utcnow
from stashbox.models.base import Base, new_uuid


class Visibility(str, enum.Enum):
    """File visibility enumeration."""
    PUBLIC = "public"
    PRIVATE = "private"


class FileStatus(str, enum.Enum):
    """
    File lifecycle status.

    PENDING rows claim an identity while bytes are in flight; ACTIVE rows are
    stored and charged. Pending-deletion and purged files have no row, only a
    DeletionTask.
    """
    PENDING = "pending"
    ACTIVE = "active"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class FileObject(Base):
    """
    Stored file owned by a tenant.
    Maps to the 'file_objects' table.

    (tenant_id, folder, filename, visibility) is unique. An overwrite's pending
    row holds a placeholder filename until activation retires the prior row.
    """
    __tablename__ = "file_objects"
    __table_args__ = (
        UniqueConstraint("tenant_id", "folder", "filename", "visibility", name="uq_file_identity"),
        Index("idx_file_objects_tenant_created", "tenant_id", "created_at"),
    )

    # Primary Key
    id = Column(String(36), primary_key=True, default=new_uuid)

    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    # Identity
    folder = Column(String(1024), nullable=False, default="")
    filename = Column(String(255), nullable=False)
    original_filename = Column(String(512), nullable=True)
    visibility = Column(
        Enum(Visibility, name="file_visibility", values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
        default=Visibility.PUBLIC,
    )

    # Content
    content_type = Column(String(255), nullable=False, default="application/octet-stream")
    size = Column(BigInteger, nullable=False, default=0)
    description = Column(String(2048), nullable=True)

    # Backend location
    bucket = Column(String(255), nullable=False)
    storage_key = Column(String(2048), nullable=False)
    backend_object_id = Column(String(255), nullable=True)

    # Lifecycle
    status = Column(
        Enum(FileStatus, name="file_status", values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
        default=FileStatus.PENDING,
        index=True,
    )
    expire_token_seconds = Column(Integer, nullable=True)
    scheduled_delete_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Timestamps
    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self):
        return f"<FileObject(id={self.id}, key={self.storage_key}, status={self.status})>"

    @property
    def is_private(self) -> bool:
        return self.visibility == Visibility.PRIVATE

    @property
    def path(self) -> str:
        """Logical path of the file inside the tenant's space."""
        return f"{self.folder}/{self.filename}" if self.folder else self.filename

"""
SQLAlchemy model for deferred deletions.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from stashbox.core.clock import utcnow
from stashbox.models.base import Base, new_uuid
from stashbox.models.file_object import Visibility, _enum_values


class DeletionTask(Base):
    """
    Durable intent to remove a backend object.

    At most one task exists per (tenant_id, bucket, storage_key); a newer
    enqueue for the same key replaces the older row. expire_at null means the
    task is due on the next sweep.
    """
    __tablename__ = "deletion_tasks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "bucket", "storage_key", name="uq_deletion_task_key"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)

    # Not a foreign key: tasks outlive their tenant's rows and orphan keys
    # may name a tenant that no longer exists.
    tenant_id = Column(String(36), nullable=False, index=True)

    bucket = Column(String(255), nullable=False)
    storage_key = Column(String(2048), nullable=False)
    path = Column(String(2048), nullable=True)
    visibility = Column(
        Enum(Visibility, name="file_visibility", values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
    )
    backend_object_id = Column(String(255), nullable=True)
    reason = Column(String(32), nullable=False, default="delete")

    enqueued_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    expire_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Failure bookkeeping
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(String(1024), nullable=True)

    def __repr__(self):
        return f"<DeletionTask(id={self.id}, key={self.bucket}/{self.storage_key})>"

"""
SQLAlchemy model for cached private download grants.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
)
from sqlalchemy.sql import func

from stashbox.core.clock import utcnow
from stashbox.models.base import Base, new_uuid


class SignedReference(Base):
    """
    Cached backend authorization token for one private file.
    """
    __tablename__ = "signed_references"

    id = Column(String(36), primary_key=True, default=new_uuid)

    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    file_id = Column(String(36), ForeignKey("file_objects.id", ondelete="CASCADE"), nullable=False, unique=True)

    # Validity window the caller asked for (before clamping)
    requested_ttl_seconds = Column(Integer, nullable=True)
    granted_ttl_seconds = Column(Integer, nullable=False)

    token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    renewed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<SignedReference(file_id={self.file_id}, expires={self.token_expires_at})>"

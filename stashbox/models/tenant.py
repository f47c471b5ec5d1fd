"""
SQLAlchemy model for tenants.
Represents the tenants table in the database.
"""
from sqlalchemy import (
    Column,
    String,
    DateTime,
    Boolean,
    BigInteger,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from stashbox.core.clock import utcnow
from stashbox.models.base import Base, new_uuid


class Tenant(Base):
    """
    Tenant account owning files and API keys.
    Maps to the 'tenants' table.

    storage_used holds bytes committed by stored files; storage_reserved holds
    bytes held by uploads still in flight. Both are only ever changed through
    atomic SQL updates issued by the quota ledger.
    """
    __tablename__ = "tenants"

    # Primary Key
    id = Column(String(36), primary_key=True, default=new_uuid)

    name = Column(String(255), nullable=False)
    plan_id = Column(String(64), nullable=False, default="free", index=True)

    # Storage Accounting
    storage_used = Column(BigInteger, default=0, nullable=False)
    storage_reserved = Column(BigInteger, default=0, nullable=False)

    # Locator rendering
    domain = Column(String(255), nullable=True)

    # Trusted tenants skip request counting
    is_internal = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    api_keys = relationship("APIKey", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tenant(id={self.id}, name={self.name}, plan={self.plan_id})>"

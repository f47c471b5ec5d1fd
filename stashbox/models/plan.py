"""
SQLAlchemy models for the plan catalog and per-tenant overrides.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    BigInteger,
    ForeignKey,
)
from sqlalchemy.sql import func

from stashbox.core.clock import utcnow
from stashbox.models.base import Base


class Plan(Base):
    """
    Catalog plan. Seeded at boot and treated as immutable.
    Null limits mean unlimited.
    """
    __tablename__ = "plans"

    id = Column(String(64), primary_key=True)
    price_text = Column(String(64), nullable=False, default="")

    # Limits
    storage_limit = Column(BigInteger, nullable=True)
    max_file_size = Column(BigInteger, nullable=True)
    max_requests_per_day = Column(Integer, nullable=True)
    max_signed_url_expiry_seconds = Column(Integer, nullable=True)

    custom = Column(Boolean, default=False, nullable=False)

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self):
        return f"<Plan(id={self.id}, price={self.price_text})>"


class PlanOverride(Base):
    """
    Per-tenant limit override. Any non-null column wins over the base plan.
    """
    __tablename__ = "plan_overrides"

    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)

    price_text = Column(String(64), nullable=True)
    storage_limit = Column(BigInteger, nullable=True)
    max_file_size = Column(BigInteger, nullable=True)
    max_requests_per_day = Column(Integer, nullable=True)
    max_signed_url_expiry_seconds = Column(Integer, nullable=True)
    custom = Column(Boolean, nullable=True)

    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self):
        return f"<PlanOverride(tenant_id={self.tenant_id})>"

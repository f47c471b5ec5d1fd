"""
SQLAlchemy model for the rolling daily request counter.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from stashbox.core.clock import utcnow
from stashbox.models.base import Base


class RequestCounter(Base):
    """
    Requests counted in the current 24h window of a tenant.
    The window restarts once 24h have elapsed since window_start.
    """
    __tablename__ = "request_counters"

    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)
    count = Column(Integer, default=0, nullable=False)
    window_start = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<RequestCounter(tenant_id={self.tenant_id}, count={self.count})>"

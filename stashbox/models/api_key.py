"""
SQLAlchemy model for tenant API keys.
A tenant may hold several keys; revoking one leaves the others working.
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
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from stashbox.core.clock import ensure_utc, utcnow
from stashbox.models.base import Base


class APIKey(Base):
    """
    API key resolving to a tenant.
    Maps to the 'api_keys' table. Only the SHA-256 hash of a key is stored.
    """
    __tablename__ = "api_keys"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # API Key
    key_hash = Column(String(128), unique=True, nullable=False, index=True)
    key_prefix = Column(String(16), nullable=False)  # First chars for identification

    # Owner
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Status
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # Usage Statistics
    total_requests = Column(BigInteger, default=0, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    # Expiration
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    tenant = relationship("Tenant", back_populates="api_keys")

    def __repr__(self):
        return f"<APIKey(id={self.id}, name={self.name}, prefix={self.key_prefix})>"

    @property
    def is_expired(self) -> bool:
        """Check if the API key is expired."""
        if self.expires_at is None:
            return False
        return utcnow() > ensure_utc(self.expires_at)

    @property
    def is_valid(self) -> bool:
        """Check if the API key is valid (active and not expired)."""
        return self.is_active and not self.is_expired

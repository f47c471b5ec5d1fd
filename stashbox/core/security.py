"""
Security module for API key authentication and trusted-origin detection.
"""
import hashlib
import secrets
from typing import Mapping, Optional

from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stashbox.core.clock import utcnow
from stashbox.core.config import settings
from stashbox.core.errors import AuthInvalid, MetadataStoreError
from stashbox.db import get_db
from stashbox.models import APIKey, Tenant

API_KEY_PREFIX = "sbx_"

# API Key header scheme (missing key is reported as AuthInvalid, not 403)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

TRUSTED_HEADERS = ("X-Internal-Call", "X-Platform-Request")


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        tuple: (full_key, key_hash, key_prefix)
            - full_key: The complete API key to give to the user (show only once)
            - key_hash: SHA256 hash to store in database
            - key_prefix: First 12 characters for identification
    """
    full_key = f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"
    return full_key, hash_api_key(full_key), full_key[:12]


def hash_api_key(api_key: str) -> str:
    """
    Hash an API key using SHA256.

    Args:
        api_key: The plain text API key

    Returns:
        str: Hexadecimal hash of the API key
    """
    return hashlib.sha256(api_key.encode()).hexdigest()


def verify_api_key(db: Session, api_key: Optional[str]) -> Optional[APIKey]:
    """
    Verify an API key and return the associated APIKey object.

    Args:
        db: Database session
        api_key: The API key to verify

    Returns:
        APIKey object if valid, None otherwise
    """
    if not api_key:
        return None

    key_hash = hash_api_key(api_key)

    try:
        api_key_obj = db.query(APIKey).filter(
            APIKey.key_hash == key_hash,
            APIKey.is_active.is_(True),
        ).first()

        if not api_key_obj or not api_key_obj.is_valid:
            return None

        db.query(APIKey).filter(APIKey.id == api_key_obj.id).update(
            {
                APIKey.total_requests: APIKey.total_requests + 1,
                APIKey.last_used_at: utcnow(),
            },
            synchronize_session=False,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise MetadataStoreError("API key lookup failed") from e

    return api_key_obj


def resolve_tenant(db: Session, api_key: Optional[str]) -> Tenant:
    """
    Resolve an API key to its tenant, failing closed.

    Raises:
        AuthInvalid: If the key is missing, unknown, inactive or expired
    """
    api_key_obj = verify_api_key(db, api_key)
    if api_key_obj is None:
        raise AuthInvalid("Invalid or expired API key")

    tenant = db.get(Tenant, api_key_obj.tenant_id)
    if tenant is None:
        raise AuthInvalid("Invalid or expired API key")
    return tenant


def is_trusted_request(headers: Mapping[str, str], tenant: Optional[Tenant] = None) -> bool:
    """
    Whether a request comes from a trusted origin and skips request counting.

    Trusted when flagged by an internal header, sent from a configured
    trusted Origin, or made by an internal tenant.
    """
    for header in TRUSTED_HEADERS:
        if (headers.get(header) or "").lower() == "true":
            return True

    origin = (headers.get("Origin") or "").rstrip("/").lower()
    if origin and origin in settings.TRUSTED_ORIGINS:
        return True

    return bool(tenant is not None and tenant.is_internal)


async def get_current_tenant(
    api_key: Optional[str] = Security(api_key_header),
    db: Session = Depends(get_db),
) -> Tenant:
    """
    FastAPI dependency for API key authentication.

    Usage in endpoints:
        @router.get("/usage")
        def usage(tenant: Tenant = Depends(get_current_tenant)):
            ...
    """
    return resolve_tenant(db, api_key)


def trusted_request(request: Request) -> bool:
    """FastAPI dependency flagging trusted-origin requests (header/origin part)."""
    return is_trusted_request(request.headers)

"""
Plan Catalog

Resolves a tenant's effective limits: the tenant's base plan merged
field-wise with its optional override (any non-null override value wins).

- Plan table cached in memory with a TTL (default 7 days), force-refreshable
- Unknown plan ids fall back to the default plan, then to a built-in free plan
- Once warm, plan-store failures are logged and the stale table is served
- Overrides cached per tenant with a short TTL
"""
import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stashbox.core.config import settings
from stashbox.core.errors import MetadataStoreError
from stashbox.models import Plan, PlanOverride, Tenant

logger = logging.getLogger(__name__)

GIB = 1024 ** 3
MIB = 1024 ** 2

# Catalog rows seeded at boot
SEED_PLANS = [
    {
        "id": "free",
        "price_text": "Free",
        "storage_limit": 5 * GIB,
        "max_file_size": 10 * MIB,
        "max_requests_per_day": 500,
        "max_signed_url_expiry_seconds": 7 * 24 * 3600,
        "custom": False,
    },
    {
        "id": "paid",
        "price_text": "₹499/month",
        "storage_limit": 100 * GIB,
        "max_file_size": 50 * MIB,
        "max_requests_per_day": 100000,
        "max_signed_url_expiry_seconds": 7 * 24 * 3600,
        "custom": False,
    },
]

LIMIT_FIELDS = (
    "price_text",
    "storage_limit",
    "max_file_size",
    "max_requests_per_day",
    "max_signed_url_expiry_seconds",
    "custom",
)

# Delay before retrying a failed refresh while serving a stale table
STALE_RETRY_SECONDS = 60.0


@dataclass(frozen=True)
class EffectiveLimits:
    """
    A tenant's plan merged with its override. Null limits mean unlimited.
    """
    plan_id: str
    price_text: str
    storage_limit: Optional[int]
    max_file_size: Optional[int]
    max_requests_per_day: Optional[int]
    max_signed_url_expiry_seconds: int
    custom: bool = False

    @classmethod
    def from_plan(cls, plan: Plan) -> "EffectiveLimits":
        return cls(
            plan_id=plan.id,
            price_text=plan.price_text or "",
            storage_limit=plan.storage_limit,
            max_file_size=plan.max_file_size,
            max_requests_per_day=plan.max_requests_per_day,
            max_signed_url_expiry_seconds=plan.max_signed_url_expiry_seconds or settings.MAX_SIGNED_URL_SECONDS,
            custom=bool(plan.custom),
        )

    def merge(self, override: Optional[Dict[str, Any]]) -> "EffectiveLimits":
        """Field-wise merge; non-null override values win."""
        if not override:
            return self
        changes = {field: value for field, value in override.items() if value is not None}
        return replace(self, **changes) if changes else self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def builtin_free_plan() -> EffectiveLimits:
    """Last-resort plan used when the catalog has neither the tenant's plan nor the default."""
    seed = next(p for p in SEED_PLANS if p["id"] == "free")
    return EffectiveLimits(
        plan_id=seed["id"],
        price_text=seed["price_text"],
        storage_limit=seed["storage_limit"],
        max_file_size=seed["max_file_size"],
        max_requests_per_day=seed["max_requests_per_day"],
        max_signed_url_expiry_seconds=seed["max_signed_url_expiry_seconds"],
        custom=False,
    )


class PlanCatalog:
    """
    In-memory plan catalog with TTL refresh and per-tenant override merge.

    One instance is shared by the whole process.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        override_ttl_seconds: Optional[float] = None,
        default_plan: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the catalog.

        Args:
            ttl_seconds: Plan table refresh interval (default: PLAN_CACHE_TTL_SECONDS)
            override_ttl_seconds: Per-tenant override cache lifetime
            default_plan: Plan id used for unknown plan ids (default: DEFAULT_PLAN)
            clock: Monotonic time source
        """
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.PLAN_CACHE_TTL_SECONDS
        self.override_ttl_seconds = (
            override_ttl_seconds if override_ttl_seconds is not None
            else settings.PLAN_OVERRIDE_CACHE_TTL_SECONDS
        )
        self.default_plan = default_plan or settings.DEFAULT_PLAN
        self._clock = clock

        self._plans: Dict[str, EffectiveLimits] = {}
        self._loaded = False
        self._next_refresh_at = 0.0
        self._overrides: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}
        self._lock = threading.Lock()

    @property
    def is_warm(self) -> bool:
        return self._loaded

    def refresh(self, db: Session, force: bool = False) -> Dict[str, EffectiveLimits]:
        """
        Reload the plan table if the cache expired (or when forced).

        Returns:
            Dict mapping plan id to its limits

        Raises:
            MetadataStoreError: If the store fails while the cache is cold
        """
        with self._lock:
            now = self._clock()
            if self._loaded and not force and now < self._next_refresh_at:
                return self._plans

            try:
                rows = db.query(Plan).all()
            except SQLAlchemyError as e:
                db.rollback()
                if not self._loaded:
                    raise MetadataStoreError("Plan catalog unavailable") from e
                logger.warning(f"Plan catalog refresh failed, serving cached plans: {e}")
                self._next_refresh_at = now + STALE_RETRY_SECONDS
                return self._plans

            self._plans = {row.id: EffectiveLimits.from_plan(row) for row in rows}
            self._loaded = True
            self._next_refresh_at = now + self.ttl_seconds
            logger.info(f"Plan catalog loaded: {len(self._plans)} plans")
            return self._plans

    def base_plan(self, db: Session, plan_id: Optional[str]) -> EffectiveLimits:
        """Base limits for a plan id, never failing on an unknown id."""
        plans = self.refresh(db)
        plan = plans.get(plan_id or "")
        if plan is not None:
            return plan

        fallback = plans.get(self.default_plan)
        if fallback is None:
            logger.warning(f"Default plan '{self.default_plan}' missing from catalog, using built-in free plan")
            return builtin_free_plan()
        if plan_id:
            logger.warning(f"Unknown plan '{plan_id}', falling back to '{self.default_plan}'")
        return fallback

    def _override_for(self, db: Session, tenant_id: str) -> Optional[Dict[str, Any]]:
        now = self._clock()
        with self._lock:
            cached = self._overrides.get(tenant_id)
        if cached is not None and now - cached[0] < self.override_ttl_seconds:
            return cached[1]

        try:
            row = db.get(PlanOverride, tenant_id)
        except SQLAlchemyError as e:
            db.rollback()
            if cached is not None:
                logger.warning(f"Plan override lookup failed for tenant {tenant_id}, serving cached override: {e}")
                return cached[1]
            raise MetadataStoreError("Plan override lookup failed") from e

        values = {field: getattr(row, field) for field in LIMIT_FIELDS} if row is not None else None
        with self._lock:
            self._overrides[tenant_id] = (now, values)
        return values

    def resolve(self, db: Session, tenant: Tenant) -> EffectiveLimits:
        """
        Resolve a tenant's effective limits.

        Args:
            db: Database session
            tenant: Tenant whose limits are needed

        Returns:
            EffectiveLimits: Base plan merged with the tenant's override
        """
        base = self.base_plan(db, tenant.plan_id)
        return base.merge(self._override_for(db, tenant.id))

    def invalidate_override(self, tenant_id: str) -> None:
        """Forget the cached override of one tenant."""
        with self._lock:
            self._overrides.pop(tenant_id, None)

"""
Quota Ledger

Per-tenant storage accounting and the rolling daily request counter.

Every mutation is a single SQL statement evaluated by the database
(conditional UPDATE, atomic increment), never a read-modify-write from a
cached value, so concurrent uploads of one tenant cannot lose updates or
overshoot the storage cap:

- reserve_storage: storage_reserved += n only if used + reserved + n <= cap
- commit_storage: storage_used += delta, converting reserved bytes
- release_reservation: storage_reserved -= n
- check_and_count_request: count += 1 within the window, or restart the
  window once 24h have elapsed
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stashbox.core.clock import ensure_utc, utcnow
from stashbox.core.errors import MetadataStoreError, PlanLimitExceeded
from stashbox.metrics import record_limit_rejection, update_storage_metrics
from stashbox.models import FileObject, FileStatus, RequestCounter, Tenant

logger = logging.getLogger(__name__)

REQUEST_WINDOW = timedelta(hours=24)


@dataclass
class UsageSnapshot:
    """
    Point-in-time usage of one tenant
    """
    tenant_id: str
    plan_id: str
    storage_used: int
    storage_reserved: int
    storage_limit: Optional[int]
    file_count: int
    requests_today: int
    requests_limit: Optional[int]
    window_resets_at: Optional[datetime]

    @property
    def usage_percentage(self) -> float:
        """Get usage percentage (0 for unlimited plans)"""
        if not self.storage_limit:
            return 0.0
        return (self.storage_used / self.storage_limit) * 100

    @property
    def available_bytes(self) -> Optional[int]:
        """Get available space in bytes (None = unlimited)"""
        if self.storage_limit is None:
            return None
        return max(0, self.storage_limit - self.storage_used - self.storage_reserved)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "plan": self.plan_id,
            "storage_used": self.storage_used,
            "storage_reserved": self.storage_reserved,
            "storage_limit": self.storage_limit,
            "storage_available": self.available_bytes,
            "usage_percentage": round(self.usage_percentage, 2),
            "file_count": self.file_count,
            "requests_today": self.requests_today,
            "requests_limit": self.requests_limit,
            "window_resets_at": self.window_resets_at.isoformat() if self.window_resets_at else None,
        }


def _non_negative(expression):
    return case((expression < 0, 0), else_=expression)


class QuotaLedger:
    """
    Storage and request accounting backed by the tenants and
    request_counters tables.

    Methods taking `commit` leave the transaction open when commit=False so
    callers can fold the mutation into a larger unit of work.
    """

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def reserve_storage(
        self,
        db: Session,
        tenant_id: str,
        additional_bytes: int,
        cap: Optional[int],
    ) -> None:
        """
        Reserve storage for in-flight uploads.

        Args:
            db: Database session
            tenant_id: Tenant to charge
            additional_bytes: Bytes about to be stored
            cap: Storage limit (None = unlimited)

        Raises:
            PlanLimitExceeded: If used + reserved + additional_bytes > cap
        """
        if additional_bytes <= 0:
            return

        stmt = update(Tenant).where(Tenant.id == tenant_id)
        if cap is not None:
            stmt = stmt.where(Tenant.storage_used + Tenant.storage_reserved + additional_bytes <= cap)
        stmt = stmt.values(storage_reserved=Tenant.storage_reserved + additional_bytes)

        try:
            result = db.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount == 0:
                db.rollback()
                record_limit_rejection("storage")
                raise PlanLimitExceeded(
                    "Storage limit exceeded",
                    limit="storage",
                    details={"requested_bytes": additional_bytes, "storage_limit": cap},
                )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Storage reservation failed") from e

        logger.debug(f"Reserved {additional_bytes} bytes for tenant {tenant_id}")

    def commit_storage(
        self,
        db: Session,
        tenant_id: str,
        delta: int,
        reserved: int = 0,
        commit: bool = True,
    ) -> None:
        """
        Apply a signed delta to the committed storage counter.

        Args:
            db: Database session
            tenant_id: Tenant to update
            delta: Bytes added (positive) or removed (negative)
            reserved: Bytes of reservation converted by this commit
            commit: Commit the transaction
        """
        values = {"storage_used": _non_negative(Tenant.storage_used + delta)}
        if reserved:
            values["storage_reserved"] = _non_negative(Tenant.storage_reserved - reserved)

        try:
            db.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if commit:
                db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Storage commit failed") from e

    def release_reservation(
        self,
        db: Session,
        tenant_id: str,
        released_bytes: int,
        commit: bool = True,
    ) -> None:
        """Give back reserved bytes of an upload that will not be stored."""
        if released_bytes <= 0:
            return
        try:
            db.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(storage_reserved=_non_negative(Tenant.storage_reserved - released_bytes))
                .execution_options(synchronize_session=False)
            )
            if commit:
                db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Reservation release failed") from e

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def check_and_count_request(
        self,
        db: Session,
        tenant_id: str,
        limit: Optional[int],
        trusted: bool = False,
    ) -> None:
        """
        Count one billable request against the rolling daily window.

        Args:
            db: Database session
            tenant_id: Tenant making the request
            limit: Requests allowed per window (None = unlimited)
            trusted: Internal / trusted-origin request, not counted

        Raises:
            PlanLimitExceeded: If the window's count already reached the limit
        """
        if trusted:
            return

        try:
            for _ in range(2):
                now = utcnow()
                if self._increment_counter(db, tenant_id, limit, now):
                    db.commit()
                    return

                exists = db.execute(
                    select(RequestCounter.tenant_id).where(RequestCounter.tenant_id == tenant_id)
                ).first()
                if exists is not None:
                    db.rollback()
                    record_limit_rejection("requests")
                    raise PlanLimitExceeded(
                        "Daily request limit exceeded",
                        limit="requests",
                        details={"max_requests_per_day": limit},
                    )

                if limit is not None and limit <= 0:
                    db.rollback()
                    record_limit_rejection("requests")
                    raise PlanLimitExceeded(
                        "Daily request limit exceeded",
                        limit="requests",
                        details={"max_requests_per_day": limit},
                    )

                try:
                    db.add(RequestCounter(tenant_id=tenant_id, count=1, window_start=now))
                    db.commit()
                    return
                except IntegrityError:
                    # Another request created the row first; count against it
                    db.rollback()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Request counter update failed") from e

        raise MetadataStoreError("Request counter update failed")

    def _increment_counter(self, db: Session, tenant_id: str, limit: Optional[int], now: datetime) -> bool:
        window_elapsed = RequestCounter.window_start <= now - REQUEST_WINDOW
        stmt = update(RequestCounter).where(RequestCounter.tenant_id == tenant_id)
        if limit is not None:
            stmt = stmt.where(or_(window_elapsed, RequestCounter.count < limit))
        stmt = stmt.values(
            count=case((window_elapsed, 1), else_=RequestCounter.count + 1),
            window_start=case((window_elapsed, now), else_=RequestCounter.window_start),
        ).execution_options(synchronize_session=False)
        return db.execute(stmt).rowcount > 0

    # ------------------------------------------------------------------
    # Reporting / reconciliation
    # ------------------------------------------------------------------

    def usage(self, db: Session, tenant: Tenant, limits) -> UsageSnapshot:
        """
        Usage snapshot for a tenant.

        Args:
            db: Database session
            tenant: Tenant to report on
            limits: The tenant's EffectiveLimits
        """
        try:
            db.refresh(tenant)
            file_count = db.execute(
                select(func.count(FileObject.id)).where(
                    FileObject.tenant_id == tenant.id,
                    FileObject.status == FileStatus.ACTIVE,
                )
            ).scalar_one()
            counter = db.get(RequestCounter, tenant.id)
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Usage lookup failed") from e

        requests_today = 0
        resets_at = None
        if counter is not None:
            window_start = ensure_utc(counter.window_start)
            if window_start + REQUEST_WINDOW > utcnow():
                requests_today = counter.count
                resets_at = window_start + REQUEST_WINDOW

        update_storage_metrics(tenant.id, tenant.storage_used, limits.storage_limit or 0)

        return UsageSnapshot(
            tenant_id=tenant.id,
            plan_id=limits.plan_id,
            storage_used=tenant.storage_used,
            storage_reserved=tenant.storage_reserved,
            storage_limit=limits.storage_limit,
            file_count=file_count,
            requests_today=requests_today,
            requests_limit=limits.max_requests_per_day,
            window_resets_at=resets_at,
        )

    def reconcile_usage(self, db: Session, tenant_id: str) -> Dict[str, int]:
        """
        Recompute a tenant's counters from its file rows.

        storage_used becomes the sum of active file sizes. storage_reserved is
        only raised to cover pending rows, never lowered: a batch reserves its
        whole size before its files are claimed, so bytes reserved for files
        not yet claimed have no row to count. Reservations are given back by
        the paths that took them (failed claims, discarded claims, activation
        and the stale pending-upload sweep).

        Returns:
            Dict with the counters before and after reconciliation
        """
        def _sum_sizes(status: FileStatus):
            return (
                select(func.coalesce(func.sum(FileObject.size), 0))
                .where(FileObject.tenant_id == tenant_id, FileObject.status == status)
                .scalar_subquery()
            )

        try:
            before = db.execute(
                select(Tenant.storage_used, Tenant.storage_reserved).where(Tenant.id == tenant_id)
            ).first()
            if before is None:
                return {}

            pending = _sum_sizes(FileStatus.PENDING)
            db.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(
                    storage_used=_sum_sizes(FileStatus.ACTIVE),
                    storage_reserved=case(
                        (pending > Tenant.storage_reserved, pending),
                        else_=Tenant.storage_reserved,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()

            after = db.execute(
                select(Tenant.storage_used, Tenant.storage_reserved).where(Tenant.id == tenant_id)
            ).first()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Usage reconciliation failed") from e

        result = {
            "used_before": before.storage_used,
            "used_after": after.storage_used,
            "reserved_before": before.storage_reserved,
            "reserved_after": after.storage_reserved,
        }
        if before.storage_used != after.storage_used or before.storage_reserved != after.storage_reserved:
            logger.warning(f"Reconciled usage of tenant {tenant_id}: {result}")
        return result

    def reconcile_all(self, db: Session) -> List[str]:
        """
        Reconcile every tenant.

        Returns:
            Ids of tenants whose counters changed
        """
        try:
            tenant_ids = db.execute(select(Tenant.id)).scalars().all()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Tenant listing failed") from e

        changed = []
        for tenant_id in tenant_ids:
            result = self.reconcile_usage(db, tenant_id)
            if result and (
                result["used_before"] != result["used_after"]
                or result["reserved_before"] != result["reserved_after"]
            ):
                changed.append(tenant_id)

        logger.info(f"Usage reconciliation finished: {len(tenant_ids)} tenants, {len(changed)} corrected")
        return changed

"""
Deletion Reconciler

Retires stored objects asynchronously and keeps the object store and the
metadata store eventually consistent:

- enqueue: durable deletion intent, one live task per (tenant, bucket, key)
- retire_file: remove a file row and queue its object, rolling back its
  storage charge exactly once
- run_sweep: FIFO batch of due tasks; every stored version of the key is
  deleted, then the task; "not found" counts as done
- expire_scheduled: files past scheduled_delete_at become deletion tasks
- sweep_orphans: backend objects without metadata, and stale pending
  uploads, are queued for deletion
- purge_now: administrative purge bypassing the queue

Per file: pending -> active -> pending deletion (task) -> purged.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stashbox.core.clock import ensure_utc, utcnow
from stashbox.core.config import settings
from stashbox.core.errors import BackendUnavailable, MetadataStoreError, StashboxError
from stashbox.core.object_store import ObjectStore
from stashbox.metrics import record_deletion_enqueued, record_deletion_task
from stashbox.models import DeletionTask, FileObject, FileStatus, Visibility
from stashbox.storage.quota import QuotaLedger
from stashbox.storage.references import forget_references

logger = logging.getLogger(__name__)

ORPHAN_KEY_CHUNK = 500


@dataclass
class SweepResult:
    """
    Outcome of one reconciler pass
    """
    job: str
    scanned: int = 0
    completed: int = 0
    versions_deleted: int = 0
    bytes_freed: int = 0
    failures: int = 0
    backend_failures: int = 0
    timed_out: bool = False
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def backend_unavailable(self) -> bool:
        """Every attempted item failed on the object store."""
        return self.backend_failures > 0 and self.backend_failures == self.failures and self.completed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "scanned": self.scanned,
            "completed": self.completed,
            "versions_deleted": self.versions_deleted,
            "bytes_freed": self.bytes_freed,
            "failures": self.failures,
            "timed_out": self.timed_out,
            "errors": self.errors,
            "duration_seconds": round(self.duration_seconds, 2),
        }


@dataclass
class RetiredFile:
    """Snapshot of a file removed from the metadata store"""
    file_id: str
    tenant_id: str
    bucket: str
    storage_key: str
    size: int
    status: FileStatus


class DeletionReconciler:
    """
    Deferred deletion pipeline shared by explicit deletes, overwrites,
    expiry and orphan cleanup.
    """

    def __init__(
        self,
        store: ObjectStore,
        ledger: QuotaLedger,
        buckets: Optional[Iterable[str]] = None,
        batch_size: Optional[int] = None,
        batch_timeout_seconds: Optional[float] = None,
        orphan_min_age_seconds: Optional[int] = None,
        pending_timeout_seconds: Optional[int] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            store: Object store holding the objects
            ledger: Quota ledger for storage rollbacks
            buckets: Buckets scanned for orphans (default: public and private)
            batch_size: Tasks per sweep (default: DELETION_BATCH_SIZE)
            batch_timeout_seconds: Overall time budget of one sweep
            orphan_min_age_seconds: Minimum age of an unreferenced object
            pending_timeout_seconds: Age after which a pending upload is abandoned
        """
        self.store = store
        self.ledger = ledger
        self.buckets = list(buckets or (settings.PUBLIC_BUCKET, settings.PRIVATE_BUCKET))
        self.batch_size = batch_size or settings.DELETION_BATCH_SIZE
        self.batch_timeout_seconds = batch_timeout_seconds or settings.DELETION_BATCH_TIMEOUT_SECONDS
        self.orphan_min_age = timedelta(
            seconds=orphan_min_age_seconds if orphan_min_age_seconds is not None
            else settings.ORPHAN_MIN_AGE_SECONDS
        )
        self.pending_timeout = timedelta(
            seconds=pending_timeout_seconds if pending_timeout_seconds is not None
            else settings.PENDING_UPLOAD_TIMEOUT_SECONDS
        )

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def enqueue(
        self,
        db: Session,
        tenant_id: str,
        bucket: str,
        storage_key: str,
        visibility: Visibility,
        path: Optional[str] = None,
        backend_object_id: Optional[str] = None,
        expire_at: Optional[datetime] = None,
        reason: str = "delete",
        commit: bool = True,
    ) -> DeletionTask:
        """
        Queue a backend object for deletion, replacing any task for the same key.

        Args:
            expire_at: Earliest processing time (None = next sweep)
            reason: Why the object is retired (delete, overwrite, expired, ...)
            commit: Commit the transaction (False to join the caller's)
        """
        for attempt in (1, 2):
            try:
                db.execute(
                    delete(DeletionTask)
                    .where(
                        DeletionTask.tenant_id == tenant_id,
                        DeletionTask.bucket == bucket,
                        DeletionTask.storage_key == storage_key,
                    )
                    .execution_options(synchronize_session=False)
                )
                task = DeletionTask(
                    tenant_id=tenant_id,
                    bucket=bucket,
                    storage_key=storage_key,
                    path=path,
                    visibility=visibility,
                    backend_object_id=backend_object_id,
                    expire_at=expire_at,
                    reason=reason,
                    enqueued_at=utcnow(),
                )
                db.add(task)
                if commit:
                    db.commit()
                else:
                    db.flush()
                break
            except IntegrityError as e:
                db.rollback()
                if not commit or attempt == 2:
                    raise MetadataStoreError("Deletion task enqueue conflicted") from e
            except SQLAlchemyError as e:
                db.rollback()
                raise MetadataStoreError("Deletion task enqueue failed") from e

        record_deletion_enqueued(reason)
        logger.debug(f"Queued {bucket}/{storage_key} for deletion ({reason})")
        return task

    def retire_file(
        self,
        db: Session,
        file: FileObject,
        reason: str,
        expire_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> Optional[RetiredFile]:
        """
        Remove a file row and queue its object, in one transaction.

        Active files give back their committed storage; pending files give
        back their reservation. The row delete is guarded so a file retired
        concurrently by another path is rolled back only once.

        Returns:
            RetiredFile, or None if the row was already gone
        """
        snapshot = RetiredFile(
            file_id=file.id,
            tenant_id=file.tenant_id,
            bucket=file.bucket,
            storage_key=file.storage_key,
            size=file.size or 0,
            status=file.status,
        )
        visibility, path, backend_object_id = file.visibility, file.path, file.backend_object_id

        try:
            if file in db:
                db.expunge(file)
            forget_references(db, snapshot.file_id)
            removed = db.execute(
                delete(FileObject)
                .where(FileObject.id == snapshot.file_id, FileObject.status == snapshot.status)
                .execution_options(synchronize_session=False)
            ).rowcount
            if removed != 1:
                if commit:
                    db.rollback()
                return None

            self.enqueue(
                db,
                tenant_id=snapshot.tenant_id,
                bucket=snapshot.bucket,
                storage_key=snapshot.storage_key,
                visibility=visibility,
                path=path,
                backend_object_id=backend_object_id,
                expire_at=expire_at,
                reason=reason,
                commit=False,
            )
            if snapshot.status == FileStatus.ACTIVE:
                self.ledger.commit_storage(db, snapshot.tenant_id, -snapshot.size, commit=False)
            else:
                self.ledger.release_reservation(db, snapshot.tenant_id, snapshot.size, commit=False)
            if commit:
                db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Could not retire file") from e

        logger.info(f"Retired file {snapshot.file_id} ({reason}), {snapshot.bucket}/{snapshot.storage_key} queued")
        return snapshot

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def _live_file_at(self, db: Session, bucket: str, storage_key: str) -> bool:
        return db.execute(
            select(FileObject.id).where(FileObject.bucket == bucket, FileObject.storage_key == storage_key)
        ).first() is not None

    def _task_still_queued(self, db: Session, task_id: str) -> bool:
        return db.execute(select(DeletionTask.id).where(DeletionTask.id == task_id)).first() is not None

    def _process_task(self, db: Session, task, result: SweepResult) -> None:
        """Purge one task given as an (id, bucket, storage_key, backend_object_id) row."""
        task_id, bucket, key = task.id, task.bucket, task.storage_key
        backend_object_id = task.backend_object_id

        versions = [v for v in self.store.list_object_versions(bucket, key) if v.key == key]

        # A live file at the same key (overwrite in place) keeps its bytes;
        # only the superseded version is removed.
        if self._live_file_at(db, bucket, key):
            targets = [v for v in versions if v.version_id and v.version_id == backend_object_id]
        else:
            targets = versions

        deleted = 0
        for version in targets:
            if not self._task_still_queued(db, task_id):
                logger.info(f"Deletion task {task_id} was superseded, leaving it to its replacement")
                return
            if self.store.delete_object_version(bucket, key, version.version_id):
                deleted += 1
                result.bytes_freed += version.size

        db.execute(
            delete(DeletionTask)
            .where(DeletionTask.id == task_id)
            .execution_options(synchronize_session=False)
        )
        db.commit()

        result.versions_deleted += deleted
        result.completed += 1
        outcome = "purged" if deleted else "absent"
        record_deletion_task(outcome)
        logger.info(f"Deletion task {task_id} done: {bucket}/{key} {outcome} ({deleted} versions)")

    def _record_failure(self, db: Session, task_id: str, error: Exception, result: SweepResult) -> None:
        result.failures += 1
        result.errors.append(f"{task_id}: {error}")
        record_deletion_task("failed")
        logger.error(f"Deletion task {task_id} failed, retrying next sweep: {error}")
        try:
            task = db.get(DeletionTask, task_id)
            if task is not None:
                task.attempts = (task.attempts or 0) + 1
                task.last_error = str(error)[:1024]
                db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not record failure of deletion task {task_id}: {e}")

    def run_sweep(self, db: Session) -> SweepResult:
        """
        Process due deletion tasks, oldest first.

        Tasks that fail stay queued for the next sweep; the sweep stops early
        once its time budget is spent.

        Raises:
            BackendUnavailable: If every attempted task failed on the backend
        """
        result = SweepResult(job="deletion_sweep")
        start = time.monotonic()
        now = utcnow()

        try:
            tasks = db.execute(
                select(
                    DeletionTask.id,
                    DeletionTask.bucket,
                    DeletionTask.storage_key,
                    DeletionTask.backend_object_id,
                )
                .where(or_(DeletionTask.expire_at.is_(None), DeletionTask.expire_at <= now))
                .order_by(DeletionTask.enqueued_at, DeletionTask.id)
                .limit(self.batch_size)
            ).all()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Deletion queue scan failed") from e

        last_backend_error = None

        for task in tasks:
            task_id = task.id
            if time.monotonic() - start > self.batch_timeout_seconds:
                result.timed_out = True
                logger.warning(f"Deletion sweep time budget spent, {len(tasks) - result.scanned} tasks deferred")
                break
            result.scanned += 1
            try:
                self._process_task(db, task, result)
            except BackendUnavailable as e:
                db.rollback()
                result.backend_failures += 1
                last_backend_error = e
                self._record_failure(db, task_id, e, result)
            except (StashboxError, SQLAlchemyError) as e:
                db.rollback()
                self._record_failure(db, task_id, e, result)

        result.duration_seconds = time.monotonic() - start
        if tasks:
            logger.info(
                f"Deletion sweep: {result.completed}/{result.scanned} tasks done, "
                f"{result.versions_deleted} versions deleted, {result.failures} failed"
            )
        if result.backend_unavailable:
            raise last_backend_error
        return result

    def expire_scheduled(self, db: Session) -> SweepResult:
        """Queue every active file whose scheduled deletion time has passed."""
        result = SweepResult(job="expiry_scan")
        start = time.monotonic()

        try:
            files = db.execute(
                select(FileObject)
                .where(
                    FileObject.status == FileStatus.ACTIVE,
                    FileObject.scheduled_delete_at.is_not(None),
                    FileObject.scheduled_delete_at <= utcnow(),
                )
                .order_by(FileObject.scheduled_delete_at)
                .limit(self.batch_size)
            ).scalars().all()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Expiry scan failed") from e

        for file in files:
            file_id = file.id
            result.scanned += 1
            try:
                if self.retire_file(db, file, reason="expired") is not None:
                    result.completed += 1
            except StashboxError as e:
                result.failures += 1
                result.errors.append(f"{file_id}: {e}")
                logger.error(f"Could not expire file {file_id}: {e}")

        result.duration_seconds = time.monotonic() - start
        if files:
            logger.info(f"Expiry scan: {result.completed} of {result.scanned} files queued for deletion")
        return result

    def sweep_orphans(self, db: Session) -> SweepResult:
        """
        Queue backend objects nothing references, and abandon stale uploads.

        An object is an orphan when no file row and no deletion task name its
        key and its newest version is older than the orphan minimum age. The
        tenant is read from the key's first segment.
        """
        result = SweepResult(job="orphan_sweep")
        start = time.monotonic()
        now = utcnow()
        cutoff = now - self.orphan_min_age

        for bucket in self.buckets:
            newest: Dict[str, datetime] = {}
            for version in self.store.list_object_versions(bucket, ""):
                modified = ensure_utc(version.last_modified) or now
                if version.key not in newest or modified > newest[version.key]:
                    newest[version.key] = modified

            candidates = [key for key, modified in newest.items() if modified <= cutoff]
            result.scanned += len(candidates)
            visibility = Visibility.PRIVATE if bucket == settings.PRIVATE_BUCKET else Visibility.PUBLIC

            for offset in range(0, len(candidates), ORPHAN_KEY_CHUNK):
                chunk = candidates[offset:offset + ORPHAN_KEY_CHUNK]
                try:
                    known = set(db.execute(
                        select(FileObject.storage_key)
                        .where(FileObject.bucket == bucket, FileObject.storage_key.in_(chunk))
                    ).scalars())
                    known.update(db.execute(
                        select(DeletionTask.storage_key)
                        .where(DeletionTask.bucket == bucket, DeletionTask.storage_key.in_(chunk))
                    ).scalars())
                except SQLAlchemyError as e:
                    db.rollback()
                    raise MetadataStoreError("Orphan lookup failed") from e

                for key in chunk:
                    if key in known:
                        continue
                    tenant_id = key.split("/", 1)[0]
                    try:
                        self.enqueue(
                            db,
                            tenant_id=tenant_id,
                            bucket=bucket,
                            storage_key=key,
                            visibility=visibility,
                            reason="orphan",
                        )
                        result.completed += 1
                    except StashboxError as e:
                        result.failures += 1
                        result.errors.append(f"{bucket}/{key}: {e}")
                        logger.error(f"Could not queue orphan {bucket}/{key}: {e}")

        stale_cutoff = now - self.pending_timeout
        try:
            stale = db.execute(
                select(FileObject).where(
                    FileObject.status == FileStatus.PENDING,
                    FileObject.created_at <= stale_cutoff,
                )
            ).scalars().all()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Stale upload scan failed") from e

        for file in stale:
            file_id = file.id
            try:
                if self.retire_file(db, file, reason="stale_upload") is not None:
                    result.completed += 1
            except StashboxError as e:
                result.failures += 1
                result.errors.append(f"{file_id}: {e}")
                logger.error(f"Could not abandon stale upload {file_id}: {e}")

        result.duration_seconds = time.monotonic() - start
        logger.info(f"Orphan sweep: {result.completed} objects queued, {result.failures} failed")
        return result

    # ------------------------------------------------------------------
    # Administrative purge
    # ------------------------------------------------------------------

    def purge_now(self, db: Session, file: FileObject) -> RetiredFile:
        """
        Delete a file's stored versions immediately, then its metadata.

        Bypasses the deletion queue. Nothing changes in the metadata store if
        the backend deletion fails.

        Raises:
            BackendUnavailable: Backend deletion failed
        """
        bucket, key = file.bucket, file.storage_key
        versions = [v for v in self.store.list_object_versions(bucket, key) if v.key == key]
        for version in versions:
            self.store.delete_object_version(bucket, key, version.version_id)

        snapshot = RetiredFile(
            file_id=file.id,
            tenant_id=file.tenant_id,
            bucket=bucket,
            storage_key=key,
            size=file.size or 0,
            status=file.status,
        )
        try:
            if file in db:
                db.expunge(file)
            forget_references(db, snapshot.file_id)
            removed = db.execute(
                delete(FileObject)
                .where(FileObject.id == snapshot.file_id, FileObject.status == snapshot.status)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.execute(
                delete(DeletionTask)
                .where(
                    DeletionTask.tenant_id == snapshot.tenant_id,
                    DeletionTask.bucket == bucket,
                    DeletionTask.storage_key == key,
                )
                .execution_options(synchronize_session=False)
            )
            if removed == 1:
                if snapshot.status == FileStatus.ACTIVE:
                    self.ledger.commit_storage(db, snapshot.tenant_id, -snapshot.size, commit=False)
                else:
                    self.ledger.release_reservation(db, snapshot.tenant_id, snapshot.size, commit=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Purge metadata cleanup failed") from e

        record_deletion_task("purged")
        logger.warning(f"Purged {bucket}/{key} ({len(versions)} versions) for file {snapshot.file_id}")
        return snapshot

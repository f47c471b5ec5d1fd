"""
Upload Orchestrator

Request-scoped coordinator of a multi-file upload:

    resolve tenant -> resolve limits -> validate every file -> count request
    -> reserve batch storage -> per file: claim name -> transfer bytes
    -> activate row + issue reference + commit storage

Every file of a batch is checked against the plan before the object store
is touched; after that, files succeed or fail independently and committed
files are never rolled back because a sibling failed.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stashbox.core.clock import utcnow
from stashbox.core.config import settings
from stashbox.core.errors import (
    BackendUnavailable,
    InvalidUpload,
    MetadataStoreError,
    PlanLimitExceeded,
    StashboxError,
)
from stashbox.core.logging import get_logger
from stashbox.core.security import resolve_tenant
from stashbox.metrics import record_limit_rejection, record_upload
from stashbox.models import Visibility
from stashbox.storage.placement import CollisionPolicy, ObjectPlacer, sanitize_filename, with_suffix
from stashbox.storage.plans import EffectiveLimits, PlanCatalog
from stashbox.storage.quota import QuotaLedger
from stashbox.storage.references import IssuedReference, ReferenceIssuer

logger = logging.getLogger(__name__)

CONFLICT_MODES = ("suffix", "reject")


@dataclass
class UploadFile:
    """One file part of an upload request"""
    filename: Optional[str]
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class UploadOptions:
    """
    Form fields and query flags of an upload request
    """
    path: str = ""
    private: bool = False
    filename: Optional[str] = None
    expire_delete: int = 0
    expire_token_seconds: Optional[int] = None
    override: bool = False
    on_conflict: Optional[str] = None

    @property
    def visibility(self) -> Visibility:
        return Visibility.PRIVATE if self.private else Visibility.PUBLIC

    @property
    def policy(self) -> CollisionPolicy:
        if self.override:
            return CollisionPolicy.OVERWRITE
        if self.on_conflict == "reject":
            return CollisionPolicy.REJECT
        return CollisionPolicy.AUTO_SUFFIX

    def validate(self) -> None:
        if self.on_conflict and self.on_conflict not in CONFLICT_MODES:
            raise InvalidUpload(
                f"on_conflict must be one of {', '.join(CONFLICT_MODES)}",
                details={"on_conflict": self.on_conflict},
            )
        if self.expire_token_seconds is not None and not self.private:
            logger.debug("expire_token_seconds ignored for a public upload")


@dataclass
class FileResult:
    """Per-file outcome reported to the caller"""
    filename: str
    success: bool
    file_id: Optional[str] = None
    path: Optional[str] = None
    size: int = 0
    private: bool = False
    url: Optional[str] = None
    expires_in: Optional[int] = None
    error: Optional[str] = None
    code: Optional[str] = None
    status_code: int = 200

    @classmethod
    def failed(cls, filename: str, error: StashboxError) -> "FileResult":
        return cls(
            filename=filename,
            success=False,
            error=error.message,
            code=error.code,
            status_code=error.status_code,
        )

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {
                "filename": self.filename,
                "error": self.error,
                "code": self.code,
                "status_code": self.status_code,
            }
        data = {
            "id": self.file_id,
            "filename": self.filename,
            "path": self.path,
            "size": self.size,
            "private": self.private,
            "url": self.url,
        }
        if self.private:
            data["expires_in"] = self.expires_in
        return data


@dataclass
class UploadBatchResult:
    """Outcome of a whole upload request"""
    files: List[FileResult] = field(default_factory=list)
    took_ms: int = 0

    @property
    def uploaded(self) -> int:
        return sum(1 for f in self.files if f.success)

    @property
    def failed(self) -> int:
        return len(self.files) - self.uploaded

    @property
    def status_code(self) -> int:
        """200 if any file was stored, otherwise the first failure's status."""
        if self.uploaded or not self.files:
            return 200
        return self.files[0].status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.uploaded > 0,
            "uploaded": self.uploaded,
            "failed": self.failed,
            "files": [f.to_dict() for f in self.files],
            "took_ms": self.took_ms,
        }


class UploadOrchestrator:
    """
    Sequences plan resolution, quota, placement and reference issuance for
    one upload request.
    """

    def __init__(
        self,
        catalog: PlanCatalog,
        ledger: QuotaLedger,
        placer: ObjectPlacer,
        issuer: ReferenceIssuer,
        session_factory: Callable[[], Session],
        max_parallel_files: Optional[int] = None,
        allowed_content_types: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            catalog: Plan catalog
            ledger: Quota ledger
            placer: Object placer
            issuer: Reference issuer
            session_factory: Opens a database session per file processed in parallel
            max_parallel_files: Files processed concurrently (default: UPLOAD_MAX_PARALLEL_FILES)
            allowed_content_types: Accepted MIME types (empty = any)
        """
        self.catalog = catalog
        self.ledger = ledger
        self.placer = placer
        self.issuer = issuer
        self.session_factory = session_factory
        self.max_parallel_files = max(1, max_parallel_files or settings.UPLOAD_MAX_PARALLEL_FILES)
        self.allowed_content_types = [
            t.lower() for t in (
                allowed_content_types if allowed_content_types is not None
                else settings.ALLOWED_CONTENT_TYPES
            )
        ]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _content_type_allowed(self, content_type: str) -> bool:
        if not self.allowed_content_types:
            return True
        base = (content_type or "").split(";")[0].strip().lower()
        return any(
            base == allowed or (allowed.endswith("/*") and base.startswith(allowed[:-1]))
            for allowed in self.allowed_content_types
        )

    def validate_files(self, files: Sequence[UploadFile], limits: EffectiveLimits) -> None:
        """
        Reject the whole request if any file breaks a rule.

        Raises:
            InvalidUpload: No files, or a disallowed content type
            PlanLimitExceeded: A file is larger than the plan or hard limit
        """
        if not files:
            raise InvalidUpload("No files in upload request")

        for upload in files:
            if not self._content_type_allowed(upload.content_type):
                raise InvalidUpload(
                    f"Content type '{upload.content_type}' is not allowed",
                    details={"filename": upload.filename, "content_type": upload.content_type},
                )

            max_size = settings.MULTIPART_MAX_FILE_SIZE
            if limits.max_file_size is not None:
                max_size = min(max_size, limits.max_file_size)
            if upload.size > max_size:
                record_limit_rejection("file_size")
                raise PlanLimitExceeded(
                    f"File '{upload.filename}' exceeds the maximum file size of {max_size} bytes",
                    limit="file_size",
                    details={"filename": upload.filename, "size": upload.size, "max_file_size": max_size},
                )

    def scheduled_delete_at(
        self,
        options: UploadOptions,
        limits: EffectiveLimits,
        now: datetime,
    ) -> Optional[datetime]:
        """
        When uploaded files should expire.

        expire_delete (clamped to 0..MAX_EXPIRE_DELETE_SECONDS) wins; otherwise a
        private upload with an explicit token lifetime expires with its token.
        """
        expire_delete = max(0, min(options.expire_delete or 0, settings.MAX_EXPIRE_DELETE_SECONDS))
        if expire_delete > 0:
            return now + timedelta(seconds=expire_delete)
        if options.private and options.expire_token_seconds and options.expire_token_seconds > 0:
            return now + timedelta(seconds=self.issuer.grant_ttl(options.expire_token_seconds, limits))
        return None

    @staticmethod
    def target_names(files: Sequence[UploadFile], options: UploadOptions) -> List[str]:
        """
        Desired name of every file.

        A shared filename given for several files is numbered -1, -2, ...
        unless the request overwrites.
        """
        names = []
        for index, upload in enumerate(files):
            if options.filename:
                name = sanitize_filename(options.filename, upload.content_type)
                if len(files) > 1 and not options.override:
                    name = with_suffix(name, str(index + 1))
            else:
                name = sanitize_filename(upload.filename, upload.content_type)
            names.append(name)
        return names

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def handle_upload(
        self,
        db: Session,
        api_key: Optional[str],
        files: Sequence[UploadFile],
        options: UploadOptions,
        trusted: bool = False,
    ) -> UploadBatchResult:
        """
        Handle one upload request.

        Args:
            db: Database session of the request
            api_key: Caller's API key
            files: File parts
            options: Form fields and query flags
            trusted: Request comes from a trusted origin (not counted)

        Returns:
            UploadBatchResult with one entry per file, in request order

        Raises:
            AuthInvalid: Key cannot be resolved to a tenant
            InvalidUpload: Malformed request
            PlanLimitExceeded: File too large, request rate or storage cap hit
            MetadataStoreError: Metadata store failed before any file was processed
        """
        start = time.time()
        tenant = resolve_tenant(db, api_key)
        tenant_id, domain = tenant.id, tenant.domain

        log = get_logger(__name__, with_context=True)
        log.set_context(tenant_id=tenant_id, files=len(files))

        limits = self.catalog.resolve(db, tenant)
        options.validate()
        self.validate_files(files, limits)

        self.ledger.check_and_count_request(
            db, tenant_id, limits.max_requests_per_day, trusted=trusted or tenant.is_internal
        )
        self.ledger.reserve_storage(db, tenant_id, sum(f.size for f in files), limits.storage_limit)

        names = self.target_names(files, options)
        delete_at = self.scheduled_delete_at(options, limits, utcnow())

        def process(index: int, session: Session) -> FileResult:
            return self._process_file(
                session, tenant_id, domain, limits, files[index], names[index], options, delete_at
            )

        if self.max_parallel_files == 1 or len(files) == 1:
            results = [process(index, db) for index in range(len(files))]
        else:
            unclaimed: List[int] = []

            def run_isolated(index: int) -> FileResult:
                upload = files[index]
                try:
                    session = self.session_factory()
                except Exception:
                    logger.exception(f"Could not open a database session for '{upload.filename}'")
                    unclaimed.append(index)
                    return self._failed(upload, names[index], options.visibility,
                                        MetadataStoreError("Could not process file"))
                try:
                    return process(index, session)
                except Exception:
                    # A claimed row is left pending; the stale pending-upload sweep releases it
                    logger.exception(f"Unexpected failure while processing '{upload.filename}'")
                    return self._failed(upload, names[index], options.visibility,
                                        MetadataStoreError("Could not process file"))
                finally:
                    session.close()

            with ThreadPoolExecutor(max_workers=min(self.max_parallel_files, len(files))) as pool:
                results = list(pool.map(run_isolated, range(len(files))))

            if unclaimed:
                self._release(db, tenant_id, sum(files[index].size for index in unclaimed))

        batch = UploadBatchResult(files=results, took_ms=int((time.time() - start) * 1000))
        log.info(f"Upload batch finished: {batch.uploaded} stored, {batch.failed} failed in {batch.took_ms}ms")
        return batch

    def _process_file(
        self,
        db: Session,
        tenant_id: str,
        domain: Optional[str],
        limits: EffectiveLimits,
        upload: UploadFile,
        name: str,
        options: UploadOptions,
        delete_at: Optional[datetime],
    ) -> FileResult:
        """Claim, transfer and activate one file. Never raises StashboxError."""
        size = upload.size
        visibility = options.visibility

        try:
            claim = self.placer.claim(
                db,
                tenant_id,
                options.path,
                name,
                size,
                upload.content_type,
                visibility,
                options.policy,
                original_filename=upload.filename,
                expire_token_seconds=options.expire_token_seconds if options.private else None,
                scheduled_delete_at=delete_at,
            )
        except StashboxError as e:
            self._release(db, tenant_id, size)
            return self._failed(upload, name, visibility, e)

        try:
            placed = self.placer.transfer(db, claim, upload.content, reserved_bytes=size)
        except BackendUnavailable as e:
            return self._failed(upload, claim.filename, visibility, e)

        try:
            reference = self._activate(db, placed, limits, domain, options)
        except StashboxError as e:
            logger.error(f"Metadata write for {placed.bucket}/{placed.storage_key} failed, removing upload: {e}")
            self._remove_uploaded(placed)
            self.placer.discard_claim(db, placed.file_id, release_bytes=size)
            return self._failed(upload, placed.filename, visibility, e)

        record_upload(visibility.value, True, size)
        return FileResult(
            filename=placed.filename,
            success=True,
            file_id=placed.file_id,
            path=placed.path,
            size=size,
            private=visibility == Visibility.PRIVATE,
            url=reference.url,
            expires_in=reference.ttl_seconds,
        )

    def _activate(self, db: Session, placed, limits: EffectiveLimits, domain: Optional[str],
                  options: UploadOptions) -> IssuedReference:
        """Activate the row, charge storage and cache the reference, in one transaction."""
        try:
            row = self.placer.activate(db, placed)
            self.ledger.commit_storage(db, placed.tenant_id, placed.size, reserved=placed.size, commit=False)
            reference = self.issuer.locator_for(
                db, row, options.expire_token_seconds, limits, domain, commit=False
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Could not record uploaded file") from e
        except StashboxError:
            db.rollback()
            raise
        return reference

    def _remove_uploaded(self, placed) -> None:
        # Best effort; the orphan sweep catches what is left
        try:
            self.placer.store.delete_object_version(
                placed.bucket, placed.storage_key, placed.stored.version_id
            )
        except BackendUnavailable as e:
            logger.warning(f"Could not remove {placed.bucket}/{placed.storage_key} after failed activation: {e}")

    def _release(self, db: Session, tenant_id: str, size: int) -> None:
        try:
            self.ledger.release_reservation(db, tenant_id, size)
        except MetadataStoreError as e:
            logger.error(f"Could not release {size} reserved bytes of tenant {tenant_id}: {e}")

    @staticmethod
    def _failed(upload: UploadFile, name: str, visibility: Visibility, error: StashboxError) -> FileResult:
        record_upload(visibility.value, False)
        logger.warning(f"Upload of '{upload.filename}' failed: {error.code} {error.message}")
        return FileResult.failed(name or upload.filename or "", error)

"""
Object Placement Service

Decides the final storage key of an upload and transfers its bytes:
- Name sanitization (restricted charset, derived extension)
- Per-tenant key scoping: tenant_id/folder/filename
- Collision policies: overwrite, auto-suffix (default), reject
- Identity claim through a pending metadata row before the transfer, so the
  unique constraint arbitrates concurrent uploads of the same name
"""
import enum
import logging
import mimetypes
import posixpath
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stashbox.core.config import settings
from stashbox.core.errors import BackendUnavailable, MetadataStoreError, NameConflict
from stashbox.core.object_store import ObjectStore, StoredObject
from stashbox.models import DeletionTask, FileObject, FileStatus, Visibility
from stashbox.models.base import new_uuid
from stashbox.storage.quota import QuotaLedger
from stashbox.storage.reconciler import DeletionReconciler

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-z0-9._-]")
_RANDOM_ALPHABET = string.ascii_lowercase + string.digits

MAX_SUFFIX_ATTEMPTS = 8
MAX_OVERWRITE_ATTEMPTS = 3


class CollisionPolicy(str, enum.Enum):
    """What to do when the target name is already taken."""
    OVERWRITE = "overwrite"
    AUTO_SUFFIX = "auto_suffix"
    REJECT = "reject"


def random_name(length: int = 12) -> str:
    return "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(length))


def ensure_extension(filename: str, content_type: Optional[str]) -> str:
    """Append an extension derived from the content type if the name has none."""
    if posixpath.splitext(filename)[1] or not content_type:
        return filename
    extension = mimetypes.guess_extension(content_type.split(";")[0].strip().lower())
    return filename + (extension or "")


def sanitize_filename(name: Optional[str], content_type: Optional[str] = None) -> str:
    """
    Reduce a client-supplied name to a safe filename.

    Keeps the basename only, lower-cased, restricted to [a-z0-9._-]. An empty
    result becomes a random 12-character name.
    """
    base = posixpath.basename((name or "").replace("\\", "/")).lower()
    cleaned = _UNSAFE_CHARS.sub("", base).strip(".")
    if not cleaned:
        cleaned = random_name(12)
    return ensure_extension(cleaned, content_type)


def sanitize_folder(path: Optional[str]) -> str:
    """
    Reduce a client-supplied folder path to safe segments joined by '/'.

    '.', '..' and empty segments are dropped so a folder can never escape
    the tenant's root.
    """
    segments = []
    for raw in (path or "").replace("\\", "/").split("/"):
        segment = _UNSAFE_CHARS.sub("", raw.strip().lower())
        if segment and segment not in (".", ".."):
            segments.append(segment)
    return "/".join(segments)


def build_key(tenant_id: str, folder: str, filename: str) -> str:
    return "/".join(part for part in (tenant_id, folder, filename) if part)


def placeholder_name(file_id: str) -> str:
    """Name held by an overwrite's pending row until it is activated."""
    return f".overwrite-{file_id}"


def with_suffix(filename: str, suffix: str) -> str:
    """Insert `-suffix` before the extension."""
    base, ext = posixpath.splitext(filename)
    return f"{base}-{suffix}{ext}"


@dataclass
class ReplacedObject:
    """Prior file superseded by an overwrite"""
    file_id: str
    size: int
    storage_key: str
    backend_object_id: Optional[str]


@dataclass
class NameClaim:
    """A final name held by a pending file row"""
    file_id: str
    tenant_id: str
    bucket: str
    storage_key: str
    folder: str
    filename: str
    visibility: Visibility
    content_type: str
    replaced: Optional[ReplacedObject] = None


@dataclass
class PlacedObject:
    """
    Result of a placement: bytes are stored, the metadata row is still pending
    """
    file_id: str
    tenant_id: str
    bucket: str
    storage_key: str
    folder: str
    filename: str
    visibility: Visibility
    size: int
    content_type: str
    stored: StoredObject
    replaced: Optional[ReplacedObject] = None

    @property
    def backend_object_id(self) -> Optional[str]:
        return self.stored.backend_object_id

    @property
    def path(self) -> str:
        return f"{self.folder}/{self.filename}" if self.folder else self.filename

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_id": self.file_id,
            "bucket": self.bucket,
            "key": self.storage_key,
            "path": self.path,
            "size": self.size,
            "visibility": self.visibility.value,
            "backend_object_id": self.backend_object_id,
            "replaced": self.replaced.file_id if self.replaced else None,
        }


class ObjectPlacer:
    """
    Chooses storage keys and delegates the byte transfer to the object store.

    place() = claim() + transfer(). Callers that need to know whether a name
    was claimed before a failure (the upload orchestrator) call both steps.
    The placed row stays pending until activate() joins the caller's
    transaction.
    """

    def __init__(
        self,
        store: ObjectStore,
        ledger: QuotaLedger,
        reconciler: DeletionReconciler,
        public_bucket: Optional[str] = None,
        private_bucket: Optional[str] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.reconciler = reconciler
        self.public_bucket = public_bucket or settings.PUBLIC_BUCKET
        self.private_bucket = private_bucket or settings.PRIVATE_BUCKET

    def bucket_for(self, visibility: Visibility) -> str:
        return self.private_bucket if visibility == Visibility.PRIVATE else self.public_bucket

    def place(
        self,
        db: Session,
        tenant_id: str,
        folder: str,
        desired_name: str,
        content: bytes,
        content_type: str,
        visibility: Visibility,
        policy: CollisionPolicy = CollisionPolicy.AUTO_SUFFIX,
        reserved_bytes: int = 0,
        **row_options,
    ) -> PlacedObject:
        """
        Place one object.

        Args:
            db: Database session (committed by this call)
            tenant_id: Owning tenant
            folder: Logical folder (sanitized here)
            desired_name: Requested filename (sanitized here)
            content: Bytes to store
            content_type: MIME type
            visibility: public or private
            policy: Collision policy
            reserved_bytes: Reservation released if the transfer fails
            **row_options: original_filename, expire_token_seconds,
                scheduled_delete_at stored on the file row

        Returns:
            PlacedObject with the pending row id and backend confirmation

        Raises:
            NameConflict: Name taken under the reject policy, or no free name found
            BackendUnavailable: Transfer failed (the pending row is removed)
            MetadataStoreError: Metadata store failed before the transfer
        """
        claim = self.claim(db, tenant_id, folder, desired_name, len(content), content_type,
                           visibility, policy, **row_options)
        return self.transfer(db, claim, content, reserved_bytes=reserved_bytes)

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim(
        self,
        db: Session,
        tenant_id: str,
        folder: str,
        desired_name: str,
        size: int,
        content_type: str,
        visibility: Visibility,
        policy: CollisionPolicy = CollisionPolicy.AUTO_SUFFIX,
        original_filename: Optional[str] = None,
        expire_token_seconds: Optional[int] = None,
        scheduled_delete_at: Optional[datetime] = None,
    ) -> NameClaim:
        """
        Reserve a final name by inserting a pending file row.

        Under the overwrite policy an active file at the identity stays live:
        the pending row holds a placeholder name and the prior file is retired
        by activate().
        """
        folder = sanitize_folder(folder)
        filename = sanitize_filename(desired_name, content_type)
        bucket = self.bucket_for(visibility)

        row_values = dict(
            tenant_id=tenant_id,
            folder=folder,
            visibility=visibility,
            original_filename=original_filename,
            content_type=content_type,
            size=size,
            bucket=bucket,
            status=FileStatus.PENDING,
            expire_token_seconds=expire_token_seconds,
            scheduled_delete_at=scheduled_delete_at,
        )

        try:
            if policy == CollisionPolicy.OVERWRITE:
                row, replaced = self._claim_overwrite(db, row_values, filename)
            else:
                row, replaced = self._claim_new_name(db, row_values, filename, policy), None
                filename = row.filename
        except SQLAlchemyError as e:
            db.rollback()
            raise MetadataStoreError("Could not claim file name") from e

        return NameClaim(
            file_id=row.id,
            tenant_id=tenant_id,
            bucket=bucket,
            storage_key=row.storage_key,
            folder=folder,
            filename=filename,
            visibility=visibility,
            content_type=content_type,
            replaced=replaced,
        )

    def transfer(self, db: Session, claim: NameClaim, content: bytes, reserved_bytes: int = 0) -> PlacedObject:
        """
        Upload the bytes of a claimed name.

        Raises:
            BackendUnavailable: Transfer failed; the claim is discarded and
                `reserved_bytes` released
        """
        try:
            target = self.store.get_upload_target(claim.bucket, claim.storage_key)
            stored = self.store.upload_bytes(target, content, claim.content_type)
        except BackendUnavailable:
            logger.error(f"Upload of {claim.bucket}/{claim.storage_key} failed, releasing name claim")
            self.discard_claim(db, claim.file_id, release_bytes=reserved_bytes)
            raise

        logger.info(
            f"Placed {claim.bucket}/{claim.storage_key} ({len(content)} bytes)"
            + (f", replacing file {claim.replaced.file_id}" if claim.replaced else "")
        )

        return PlacedObject(
            file_id=claim.file_id,
            tenant_id=claim.tenant_id,
            bucket=claim.bucket,
            storage_key=claim.storage_key,
            folder=claim.folder,
            filename=claim.filename,
            visibility=claim.visibility,
            size=len(content),
            content_type=claim.content_type,
            stored=stored,
            replaced=claim.replaced,
        )

    def _find_identity(self, db: Session, tenant_id: str, folder: str, filename: str, visibility: Visibility):
        return db.execute(
            select(FileObject).where(
                FileObject.tenant_id == tenant_id,
                FileObject.folder == folder,
                FileObject.filename == filename,
                FileObject.visibility == visibility,
            )
        ).scalar_one_or_none()

    def _name_is_free(self, db: Session, row_values: Dict[str, Any], filename: str) -> bool:
        tenant_id, bucket = row_values["tenant_id"], row_values["bucket"]
        key = build_key(tenant_id, row_values["folder"], filename)

        if self._find_identity(db, tenant_id, row_values["folder"], filename, row_values["visibility"]):
            return False

        # A key still queued for deletion is not reusable until purged
        pending_delete = db.execute(
            select(DeletionTask.id).where(
                DeletionTask.tenant_id == tenant_id,
                DeletionTask.bucket == bucket,
                DeletionTask.storage_key == key,
            )
        ).first()
        if pending_delete is not None:
            return False

        return not self.store.key_exists(bucket, key)

    def _insert_pending(
        self,
        db: Session,
        row_values: Dict[str, Any],
        filename: str,
        storage_key: Optional[str] = None,
        **fields,
    ) -> Optional[FileObject]:
        row = FileObject(
            filename=filename,
            storage_key=storage_key or build_key(row_values["tenant_id"], row_values["folder"], filename),
            **row_values,
            **fields,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return None
        return row

    def _claim_new_name(
        self,
        db: Session,
        row_values: Dict[str, Any],
        filename: str,
        policy: CollisionPolicy,
    ) -> FileObject:
        for attempt in range(MAX_SUFFIX_ATTEMPTS):
            candidate = filename if attempt == 0 else with_suffix(filename, secrets.token_hex(3))

            if self._name_is_free(db, row_values, candidate):
                row = self._insert_pending(db, row_values, candidate)
                if row is not None:
                    return row

            if policy == CollisionPolicy.REJECT:
                raise NameConflict(
                    f"A file named '{candidate}' already exists",
                    details={"filename": candidate, "folder": row_values["folder"]},
                )
            logger.debug(f"Name '{candidate}' taken, trying a suffixed name")

        raise NameConflict(
            f"Could not find a free name for '{filename}'",
            details={"filename": filename, "folder": row_values["folder"]},
        )

    def _claim_overwrite(self, db: Session, row_values: Dict[str, Any], filename: str):
        tenant_id, folder = row_values["tenant_id"], row_values["folder"]
        for _ in range(MAX_OVERWRITE_ATTEMPTS):
            prior = self._find_identity(db, tenant_id, folder, filename, row_values["visibility"])

            if prior is None:
                row = self._insert_pending(db, row_values, filename)
                if row is not None:
                    return row, None
            elif prior.status != FileStatus.ACTIVE:
                raise NameConflict(
                    f"An upload of '{filename}' is already in progress",
                    details={"filename": filename, "folder": folder},
                )
            else:
                replaced = ReplacedObject(
                    file_id=prior.id,
                    size=prior.size,
                    storage_key=prior.storage_key,
                    backend_object_id=prior.backend_object_id,
                )
                # The prior file keeps the identity until activate()
                file_id = new_uuid()
                row = self._insert_pending(
                    db,
                    row_values,
                    placeholder_name(file_id),
                    storage_key=build_key(tenant_id, folder, filename),
                    id=file_id,
                )
                if row is not None:
                    return row, replaced

            logger.debug(f"Concurrent claim on '{filename}', retrying overwrite")

        raise NameConflict(
            f"Could not overwrite '{filename}' because of concurrent uploads",
            details={"filename": filename, "folder": folder},
        )

    def activate(self, db: Session, placed: PlacedObject) -> FileObject:
        """
        Make a placed upload the active file at its final name.

        An active file still holding the name is retired (queued for
        deletion, charge rolled back) in the same transaction, so an
        overwritten file stays in place until the new bytes are live.
        Nothing is committed; the caller commits or rolls back.

        Returns:
            The activated FileObject

        Raises:
            MetadataStoreError: The pending row is gone (abandoned as stale)
            NameConflict: The name is held by another upload still in flight
        """
        activated = db.execute(
            update(FileObject)
            .where(FileObject.id == placed.file_id, FileObject.status == FileStatus.PENDING)
            .values(
                status=FileStatus.ACTIVE,
                backend_object_id=placed.backend_object_id,
                size=placed.size,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if activated != 1:
            raise MetadataStoreError("Upload claim expired before activation")

        current = self._find_identity(db, placed.tenant_id, placed.folder, placed.filename, placed.visibility)
        if current is not None and current.id != placed.file_id:
            if current.status != FileStatus.ACTIVE:
                raise NameConflict(
                    f"An upload of '{placed.filename}' is already in progress",
                    details={"filename": placed.filename, "folder": placed.folder},
                )
            self.reconciler.retire_file(db, current, reason="overwrite", expire_at=None, commit=False)

        db.execute(
            update(FileObject)
            .where(FileObject.id == placed.file_id)
            .values(filename=placed.filename)
            .execution_options(synchronize_session=False)
        )

        row = db.get(FileObject, placed.file_id)
        db.refresh(row)
        return row

    def discard_claim(self, db: Session, file_id: str, release_bytes: int = 0) -> bool:
        """
        Remove a pending row whose upload will not complete, releasing its
        reservation in the same transaction.

        Returns:
            bool: True if the row was removed here, False if it was already gone
        """
        try:
            tenant_id = db.execute(
                select(FileObject.tenant_id).where(FileObject.id == file_id)
            ).scalar_one_or_none()
            removed = db.execute(
                delete(FileObject)
                .where(FileObject.id == file_id, FileObject.status == FileStatus.PENDING)
                .execution_options(synchronize_session=False)
            ).rowcount
            if removed == 1:
                self.ledger.release_reservation(db, tenant_id, release_bytes, commit=False)
            db.commit()
            return removed == 1
        except (SQLAlchemyError, MetadataStoreError) as e:
            db.rollback()
            # The stale pending-row sweep retires it later
            logger.error(f"Could not discard pending file {file_id}: {e}")
            return False

"""
Object storage collaborator.

The lifecycle engine talks to remote object storage only through the
ObjectStore interface below. MinioObjectStore implements it on top of the
MinIO client (any S3-compatible endpoint works):

- Session handling: the client is rebuilt when the backend reports an
  expired session and proactively after BACKEND_SESSION_TTL_SECONDS; the
  failed call is retried once on the fresh session
- Error wrapping: S3 and transport errors surface as BackendUnavailable,
  "not found" answers are reported as absence where absence is acceptable
- Metrics: every call is counted and timed per operation
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

import urllib3
from minio import Minio
from minio.error import MinioException, S3Error

from stashbox.core.config import settings
from stashbox.core.errors import BackendUnavailable
from stashbox.core.minio_client import get_minio_client
from stashbox.metrics import backend_reauthentications_total, record_backend_operation

logger = logging.getLogger(__name__)


NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchVersion", "NoSuchObject", "ResourceNotFound"})
SESSION_EXPIRED_CODES = frozenset({"ExpiredToken", "TokenRefreshRequired", "InvalidToken"})


@dataclass
class UploadTarget:
    """Where the next upload for a key goes."""
    bucket: str
    key: str
    endpoint: str


@dataclass
class StoredObject:
    """Backend confirmation of a stored blob."""
    bucket: str
    key: str
    size: int
    version_id: Optional[str] = None
    etag: Optional[str] = None

    @property
    def backend_object_id(self) -> Optional[str]:
        """Opaque id of the stored blob: its version id, or the etag on unversioned buckets."""
        return self.version_id or self.etag


@dataclass
class ObjectVersion:
    """One stored version of a key."""
    key: str
    version_id: Optional[str] = None
    size: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    is_delete_marker: bool = False


@dataclass
class DownloadAuthorization:
    """Time-limited read grant for a private object."""
    bucket: str
    key: str
    token: str
    ttl_seconds: int
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "ttl_seconds": self.ttl_seconds,
            "expires_at": self.expires_at.isoformat(),
        }


class ObjectStore(ABC):
    """Operations the lifecycle engine needs from object storage."""

    @abstractmethod
    def authenticate(self) -> None:
        """Establish or refresh the backend session."""

    @abstractmethod
    def get_upload_target(self, bucket: str, key: str) -> UploadTarget:
        """Resolve where bytes for `key` should be sent."""

    @abstractmethod
    def upload_bytes(self, target: UploadTarget, content: bytes, content_type: str) -> StoredObject:
        """Store `content` at the target and return the backend confirmation."""

    @abstractmethod
    def list_object_versions(self, bucket: str, prefix: str) -> List[ObjectVersion]:
        """List every stored version whose key starts with `prefix`."""

    @abstractmethod
    def delete_object_version(self, bucket: str, key: str, version_id: Optional[str]) -> bool:
        """Delete one version. Returns False if the backend reports it absent."""

    @abstractmethod
    def get_download_authorization(self, bucket: str, key: str, ttl_seconds: int) -> DownloadAuthorization:
        """Grant read access to a private object for `ttl_seconds`."""

    @abstractmethod
    def public_base_url(self, bucket: str) -> str:
        """Base URL objects of `bucket` are served under (no trailing slash)."""

    def key_exists(self, bucket: str, key: str) -> bool:
        """True if any live version is stored under exactly `key`."""
        return any(
            v.key == key and not v.is_delete_marker
            for v in self.list_object_versions(bucket, key)
        )


def _normalize_version_id(version_id: Optional[str]) -> Optional[str]:
    # Unversioned buckets report the literal "null"
    if not version_id or version_id == "null":
        return None
    return version_id


CredentialsProvider = Callable[[], Tuple[str, str, Optional[str]]]


class MinioObjectStore(ObjectStore):
    """
    ObjectStore backed by a MinIO / S3-compatible endpoint.

    Features:
    - Lazy session with proactive refresh
    - Transparent re-authentication on expired session tokens
    - Bounded timeouts through the shared urllib3 pool
    - Per-operation Prometheus metrics
    """

    def __init__(
        self,
        credentials_provider: Optional[CredentialsProvider] = None,
        session_ttl_seconds: Optional[int] = None,
        client_factory: Callable[..., Minio] = get_minio_client,
    ):
        """
        Initialize the store.

        Args:
            credentials_provider: Callable returning (access_key, secret_key,
                session_token); defaults to the configured credentials
            session_ttl_seconds: Age after which the session is refreshed
                before the next call (default: BACKEND_SESSION_TTL_SECONDS)
            client_factory: Builds a Minio client from credentials
        """
        self._credentials_provider = credentials_provider
        self._session_ttl = session_ttl_seconds or settings.BACKEND_SESSION_TTL_SECONDS
        self._client_factory = client_factory
        self._client: Optional[Minio] = None
        self._authenticated_at = 0.0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def authenticate(self) -> None:
        start = time.time()
        if self._credentials_provider is not None:
            access_key, secret_key, session_token = self._credentials_provider()
            client = self._client_factory(
                access_key=access_key,
                secret_key=secret_key,
                session_token=session_token,
            )
        else:
            client = self._client_factory()

        with self._lock:
            self._client = client
            self._authenticated_at = time.monotonic()

        record_backend_operation("authenticate", True, time.time() - start)
        logger.info(f"Object storage session established for {settings.minio_endpoint}")

    def _session(self) -> Minio:
        with self._lock:
            client = self._client
            age = time.monotonic() - self._authenticated_at
        if client is None or age >= self._session_ttl:
            if client is not None:
                logger.info(f"Object storage session is {age:.0f}s old, refreshing")
                backend_reauthentications_total.inc()
            self.authenticate()
            with self._lock:
                client = self._client
        return client

    def _call(self, operation: str, fn: Callable[[Minio], Any], absent_ok: bool = False) -> Any:
        """
        Run one backend call with re-authentication, error wrapping and metrics.

        Returns None if `absent_ok` and the backend reports the object absent.
        """
        start = time.time()
        for attempt in (1, 2):
            client = self._session()
            try:
                result = fn(client)
                record_backend_operation(operation, True, time.time() - start)
                return result
            except S3Error as e:
                if e.code in SESSION_EXPIRED_CODES and attempt == 1:
                    logger.warning(f"Object storage session expired during {operation} ({e.code}), re-authenticating")
                    backend_reauthentications_total.inc()
                    self.authenticate()
                    continue
                if absent_ok and e.code in NOT_FOUND_CODES:
                    record_backend_operation(operation, True, time.time() - start)
                    return None
                record_backend_operation(operation, False, time.time() - start)
                logger.error(f"Object storage {operation} failed: {e.code} {e.message}")
                raise BackendUnavailable(
                    f"Object storage {operation} failed",
                    details={"operation": operation, "backend_code": e.code},
                ) from e
            except (MinioException, urllib3.exceptions.HTTPError, OSError) as e:
                record_backend_operation(operation, False, time.time() - start)
                logger.error(f"Object storage {operation} failed: {e}")
                raise BackendUnavailable(
                    f"Object storage {operation} failed",
                    details={"operation": operation},
                ) from e
        raise BackendUnavailable(
            f"Object storage {operation} failed after re-authentication",
            details={"operation": operation},
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_upload_target(self, bucket: str, key: str) -> UploadTarget:
        return UploadTarget(bucket=bucket, key=key, endpoint=settings.minio_endpoint)

    def upload_bytes(self, target: UploadTarget, content: bytes, content_type: str) -> StoredObject:
        result = self._call(
            "upload",
            lambda client: client.put_object(
                bucket_name=target.bucket,
                object_name=target.key,
                data=BytesIO(content),
                length=len(content),
                content_type=content_type,
            ),
        )
        stored = StoredObject(
            bucket=target.bucket,
            key=target.key,
            size=len(content),
            version_id=_normalize_version_id(result.version_id),
            etag=result.etag,
        )
        logger.debug(f"Stored {target.bucket}/{target.key} ({stored.size} bytes, id={stored.backend_object_id})")
        return stored

    def list_object_versions(self, bucket: str, prefix: str) -> List[ObjectVersion]:
        def _list(client: Minio) -> List[ObjectVersion]:
            objects = client.list_objects(
                bucket_name=bucket,
                prefix=prefix or None,
                recursive=True,
                include_version=True,
            )
            return [
                ObjectVersion(
                    key=obj.object_name,
                    version_id=_normalize_version_id(obj.version_id),
                    size=obj.size or 0,
                    last_modified=obj.last_modified,
                    etag=obj.etag,
                    is_delete_marker=bool(obj.is_delete_marker),
                )
                for obj in objects
            ]

        return self._call("list_versions", _list, absent_ok=True) or []

    def delete_object_version(self, bucket: str, key: str, version_id: Optional[str]) -> bool:
        result = self._call(
            "delete_version",
            lambda client: client.remove_object(
                bucket_name=bucket,
                object_name=key,
                version_id=version_id,
            ) or True,
            absent_ok=True,
        )
        return result is not None

    def get_download_authorization(self, bucket: str, key: str, ttl_seconds: int) -> DownloadAuthorization:
        issued_at = datetime.now(timezone.utc)
        url = self._call(
            "download_authorization",
            lambda client: client.presigned_get_object(
                bucket_name=bucket,
                object_name=key,
                expires=timedelta(seconds=ttl_seconds),
            ),
        )
        return DownloadAuthorization(
            bucket=bucket,
            key=key,
            token=urlsplit(url).query,
            ttl_seconds=ttl_seconds,
            expires_at=issued_at + timedelta(seconds=ttl_seconds),
        )

    def public_base_url(self, bucket: str) -> str:
        if bucket == settings.PRIVATE_BUCKET and settings.PRIVATE_HOST:
            host = settings.PRIVATE_HOST
        elif bucket == settings.PUBLIC_BUCKET and settings.PUBLIC_HOST:
            host = settings.PUBLIC_HOST
        else:
            host = settings.minio_endpoint
        if "://" not in host:
            scheme = "https" if settings.MINIO_SECURE else "http"
            host = f"{scheme}://{host}"
        return host.rstrip("/")

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def ensure_buckets(self, buckets: Iterable[str]) -> None:
        """Create any missing bucket."""
        for bucket in buckets:
            exists = self._call("bucket_exists", lambda client, b=bucket: client.bucket_exists(bucket_name=b))
            if not exists:
                self._call("make_bucket", lambda client, b=bucket: client.make_bucket(bucket_name=b))
                logger.info(f"Created bucket '{bucket}'")

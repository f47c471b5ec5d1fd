"""
Pytest configuration and shared fixtures for Stashbox tests.
"""
import hashlib
import itertools
import os
from datetime import timedelta
from typing import Dict, Generator, List, Optional, Tuple

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["UPLOAD_MAX_PARALLEL_FILES"] = "1"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from stashbox.core.clock import utcnow
from stashbox.core.errors import BackendUnavailable
from stashbox.core.object_store import (
    DownloadAuthorization,
    ObjectStore,
    ObjectVersion,
    StoredObject,
    UploadTarget,
)
from stashbox.core.security import generate_api_key
from stashbox.db import SessionLocal, engine, get_db, seed_plans
from stashbox.main import app
from stashbox.models import APIKey, Base, Tenant
from stashbox.services import Services, UploadFile, build_services


class FakeObjectStore(ObjectStore):
    """
    In-memory object store.

    Versioned by default (every upload gets a new version id). Operations
    named in `failing` raise BackendUnavailable.
    """

    def __init__(self, versioned: bool = True):
        self.versioned = versioned
        self.objects: Dict[Tuple[str, str], List[ObjectVersion]] = {}
        self.contents: Dict[Tuple[str, str, Optional[str]], bytes] = {}
        self.failing: set = set()
        self.calls: List[str] = []
        self.authentications = 0
        self.authorizations_issued = 0
        self._versions = itertools.count(1)

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.failing:
            raise BackendUnavailable(f"Object store {operation} failed")

    def authenticate(self) -> None:
        self._check("authenticate")
        self.authentications += 1

    def get_upload_target(self, bucket: str, key: str) -> UploadTarget:
        self._check("get_upload_target")
        return UploadTarget(bucket=bucket, key=key, endpoint="fake://store")

    def upload_bytes(self, target: UploadTarget, content: bytes, content_type: str) -> StoredObject:
        self._check("upload_bytes")
        return self.put(target.bucket, target.key, content)

    def list_object_versions(self, bucket: str, prefix: str) -> List[ObjectVersion]:
        self._check("list_object_versions")
        return [
            version
            for (stored_bucket, key), versions in self.objects.items()
            if stored_bucket == bucket and key.startswith(prefix)
            for version in versions
        ]

    def delete_object_version(self, bucket: str, key: str, version_id: Optional[str]) -> bool:
        self._check("delete_object_version")
        versions = self.objects.get((bucket, key), [])
        for version in versions:
            if version.version_id == version_id:
                versions.remove(version)
                self.contents.pop((bucket, key, version_id), None)
                if not versions:
                    self.objects.pop((bucket, key), None)
                return True
        return False

    def get_download_authorization(self, bucket: str, key: str, ttl_seconds: int) -> DownloadAuthorization:
        self._check("get_download_authorization")
        self.authorizations_issued += 1
        return DownloadAuthorization(
            bucket=bucket,
            key=key,
            token=f"X-Amz-Expires={ttl_seconds}&X-Amz-Signature=sig{self.authorizations_issued}",
            ttl_seconds=ttl_seconds,
            expires_at=utcnow() + timedelta(seconds=ttl_seconds),
        )

    def public_base_url(self, bucket: str) -> str:
        return "https://files.example.test"

    # Test helpers

    def put(self, bucket: str, key: str, content: bytes, age_seconds: int = 0) -> StoredObject:
        """Store bytes directly, optionally backdated."""
        version_id = f"v{next(self._versions)}" if self.versioned else None
        etag = hashlib.md5(content).hexdigest()
        version = ObjectVersion(
            key=key,
            version_id=version_id,
            size=len(content),
            last_modified=utcnow() - timedelta(seconds=age_seconds),
            etag=etag,
        )
        if self.versioned:
            self.objects.setdefault((bucket, key), []).append(version)
        else:
            self.objects[(bucket, key)] = [version]
        self.contents[(bucket, key, version_id)] = content
        return StoredObject(bucket=bucket, key=key, size=len(content), version_id=version_id, etag=etag)

    def versions(self, bucket: str, key: str) -> List[ObjectVersion]:
        return list(self.objects.get((bucket, key), []))

    def has(self, bucket: str, key: str) -> bool:
        return bool(self.objects.get((bucket, key)))

    def ensure_buckets(self, buckets) -> None:
        self._check("ensure_buckets")


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database with the seeded plan catalog for each test."""
    Base.metadata.create_all(bind=engine)
    db_session = SessionLocal()
    seed_plans(db_session)
    try:
        yield db_session
    finally:
        db_session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def services(store: FakeObjectStore, db: Session) -> Services:
    return build_services(store=store, session_factory=SessionLocal)


@pytest.fixture
def tenant_factory(db: Session):
    """Create tenants with one active API key; returns (tenant, raw key)."""
    counter = itertools.count(1)

    def _create(
        plan_id: str = "free",
        domain: Optional[str] = None,
        is_internal: bool = False,
        **fields,
    ) -> Tuple[Tenant, str]:
        n = next(counter)
        tenant = Tenant(name=f"tenant-{n}", plan_id=plan_id, domain=domain, is_internal=is_internal, **fields)
        db.add(tenant)
        db.flush()

        full_key, key_hash, key_prefix = generate_api_key()
        db.add(APIKey(tenant_id=tenant.id, key_hash=key_hash, key_prefix=key_prefix, name=f"key-{n}"))
        db.commit()
        db.refresh(tenant)
        return tenant, full_key

    return _create


@pytest.fixture
def tenant(tenant_factory) -> Tenant:
    tenant, key = tenant_factory()
    tenant._test_key = key
    return tenant


@pytest.fixture
def api_key(tenant: Tenant) -> str:
    return tenant._test_key


@pytest.fixture(scope="function")
def client(db: Session, services: Services) -> Generator[TestClient, None, None]:
    """Create a test client wired to the test database and fake store."""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    app.state.services = None


@pytest.fixture
def authenticated_client(client: TestClient, api_key: str) -> TestClient:
    client.headers.update({"X-API-Key": api_key})
    return client


def make_files(*parts) -> List[UploadFile]:
    """Build upload parts from (filename, content[, content_type]) tuples."""
    files = []
    for part in parts:
        filename, content = part[0], part[1]
        content_type = part[2] if len(part) > 2 else "application/octet-stream"
        files.append(UploadFile(filename=filename, content=content, content_type=content_type))
    return files


@pytest.fixture
def files():
    """Factory fixture wrapping make_files."""
    return make_files

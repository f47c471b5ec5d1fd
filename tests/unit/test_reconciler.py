"""
Unit tests for the deletion reconciler.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from stashbox.core.clock import utcnow
from stashbox.core.errors import BackendUnavailable
from stashbox.models import DeletionTask, FileObject, FileStatus, SignedReference, Visibility
from stashbox.storage.placement import CollisionPolicy
from stashbox.storage.plans import PlanCatalog

PUBLIC = "stashbox-public"
PRIVATE = "stashbox-private"


def _stored_file(db, store, tenant, name="a.txt", content=b"hello", visibility=Visibility.PUBLIC, **fields):
    """An active file whose bytes are in the store and whose size is charged."""
    bucket = PRIVATE if visibility == Visibility.PRIVATE else PUBLIC
    key = f"{tenant.id}/{name}"
    stored = store.put(bucket, key, content)
    row = FileObject(
        tenant_id=tenant.id,
        folder="",
        filename=name,
        visibility=visibility,
        size=len(content),
        bucket=bucket,
        storage_key=key,
        backend_object_id=stored.backend_object_id,
        status=FileStatus.ACTIVE,
        **fields,
    )
    db.add(row)
    tenant.storage_used += len(content)
    db.commit()
    return row


def _tasks(db):
    return db.execute(select(DeletionTask)).scalars().all()


@pytest.mark.unit
class TestRetireFile:
    """Test removing file rows into the deletion queue."""

    def test_retire_active_file(self, db, services, store, tenant):
        file = _stored_file(db, store, tenant)
        file_id = file.id

        retired = services.reconciler.retire_file(db, file, reason="delete")

        assert retired.size == 5
        assert db.get(FileObject, file_id) is None
        db.refresh(tenant)
        assert tenant.storage_used == 0
        [task] = _tasks(db)
        assert task.storage_key == f"{tenant.id}/a.txt"
        assert task.reason == "delete"

    def test_retire_twice_rolls_back_once(self, db, services, store, tenant):
        file = _stored_file(db, store, tenant)
        stale_copy = db.get(FileObject, file.id)
        services.reconciler.retire_file(db, file, reason="delete")

        assert services.reconciler.retire_file(db, stale_copy, reason="expired") is None
        db.refresh(tenant)
        assert tenant.storage_used == 0
        assert len(_tasks(db)) == 1

    def test_retire_forgets_signed_references(self, db, services, store, tenant):
        file = _stored_file(db, store, tenant, visibility=Visibility.PRIVATE)
        services.issuer.locator_for(db, file, None, PlanCatalog().resolve(db, tenant))
        assert db.execute(select(SignedReference)).first() is not None

        services.reconciler.retire_file(db, file, reason="delete")
        assert db.execute(select(SignedReference)).first() is None

    def test_enqueue_replaces_task_for_same_key(self, db, services, tenant):
        reconciler = services.reconciler
        reconciler.enqueue(db, tenant.id, PUBLIC, "k", Visibility.PUBLIC, reason="delete")
        reconciler.enqueue(db, tenant.id, PUBLIC, "k", Visibility.PUBLIC, reason="expired")

        [task] = _tasks(db)
        assert task.reason == "expired"


@pytest.mark.unit
class TestDeletionSweep:
    """Test processing the deletion queue."""

    def test_sweep_purges_every_version(self, db, services, store, tenant):
        file = _stored_file(db, store, tenant)
        store.put(PUBLIC, file.storage_key, b"older")
        services.reconciler.retire_file(db, file, reason="delete")

        result = services.reconciler.run_sweep(db)

        assert result.completed == 1
        assert result.versions_deleted == 2
        assert not store.has(PUBLIC, f"{tenant.id}/a.txt")
        assert _tasks(db) == []

    def test_absent_object_still_clears_task(self, db, services, store, tenant):
        services.reconciler.enqueue(db, tenant.id, PUBLIC, f"{tenant.id}/gone.txt", Visibility.PUBLIC)

        result = services.reconciler.run_sweep(db)

        assert result.completed == 1
        assert result.versions_deleted == 0
        assert _tasks(db) == []

    def test_grace_period_defers_purge(self, db, services, store, tenant):
        file = _stored_file(db, store, tenant)
        services.reconciler.retire_file(db, file, reason="delete", expire_at=utcnow() + timedelta(hours=1))

        result = services.reconciler.run_sweep(db)

        assert result.scanned == 0
        assert store.has(PUBLIC, f"{tenant.id}/a.txt")
        assert len(_tasks(db)) == 1

    def test_overwrite_keeps_new_version(self, db, services, store, tenant):
        file = _stored_file(db, store, tenant, content=b"old")
        claim = services.placer.claim(
            db, tenant.id, "", "a.txt", 3, "text/plain", Visibility.PUBLIC, CollisionPolicy.OVERWRITE
        )
        placed = services.placer.transfer(db, claim, b"new")
        services.placer.activate(db, placed)
        db.commit()

        services.reconciler.run_sweep(db)

        [remaining] = store.versions(PUBLIC, f"{tenant.id}/a.txt")
        assert remaining.version_id == placed.backend_object_id
        assert _tasks(db) == []

    def test_backend_outage_keeps_tasks_and_raises(self, db, services, store, tenant):
        file = _stored_file(db, store, tenant)
        services.reconciler.retire_file(db, file, reason="delete")
        store.failing.add("list_object_versions")

        with pytest.raises(BackendUnavailable):
            services.reconciler.run_sweep(db)

        [task] = _tasks(db)
        assert task.attempts == 1
        assert "list_object_versions" in task.last_error

    def test_batch_size_limits_sweep(self, db, services, tenant):
        for i in range(3):
            services.reconciler.enqueue(db, tenant.id, PUBLIC, f"{tenant.id}/{i}", Visibility.PUBLIC)
        services.reconciler.batch_size = 2

        assert services.reconciler.run_sweep(db).completed == 2
        assert len(_tasks(db)) == 1


@pytest.mark.unit
class TestExpiryAndOrphans:
    """Test the expiry scan and the orphan sweep."""

    def test_expired_files_are_queued(self, db, services, store, tenant):
        _stored_file(db, store, tenant, name="old.txt", scheduled_delete_at=utcnow() - timedelta(seconds=1))
        _stored_file(db, store, tenant, name="new.txt", scheduled_delete_at=utcnow() + timedelta(days=1))

        result = services.reconciler.expire_scheduled(db)

        assert result.completed == 1
        [task] = _tasks(db)
        assert task.storage_key.endswith("old.txt")
        assert task.reason == "expired"
        db.refresh(tenant)
        assert tenant.storage_used == 5

    def test_orphan_objects_are_queued(self, db, services, store, tenant):
        _stored_file(db, store, tenant, name="kept.txt")
        store.put(PUBLIC, f"{tenant.id}/orphan.txt", b"x", age_seconds=7200)
        store.put(PUBLIC, f"{tenant.id}/fresh.txt", b"x")

        result = services.reconciler.sweep_orphans(db)

        assert result.completed == 1
        [task] = _tasks(db)
        assert task.storage_key == f"{tenant.id}/orphan.txt"
        assert task.tenant_id == tenant.id
        assert task.reason == "orphan"

    def test_stale_pending_upload_is_abandoned(self, db, services, tenant):
        services.ledger.reserve_storage(db, tenant.id, 4, cap=None)
        claim = services.placer.claim(db, tenant.id, "", "slow.bin", 4, "application/octet-stream",
                                      Visibility.PUBLIC)
        row = db.get(FileObject, claim.file_id)
        row.created_at = utcnow() - timedelta(hours=2)
        db.commit()

        services.reconciler.sweep_orphans(db)

        assert db.get(FileObject, claim.file_id) is None
        db.refresh(tenant)
        assert tenant.storage_reserved == 0
        assert _tasks(db)[0].reason == "stale_upload"

    def test_stale_overwrite_keeps_prior_file(self, db, services, store, tenant):
        file = _stored_file(db, store, tenant, content=b"old")
        claim = services.placer.claim(
            db, tenant.id, "", "a.txt", 3, "text/plain", Visibility.PUBLIC, CollisionPolicy.OVERWRITE
        )
        row = db.get(FileObject, claim.file_id)
        row.created_at = utcnow() - timedelta(hours=2)
        db.commit()

        services.reconciler.sweep_orphans(db)
        services.reconciler.run_sweep(db)

        assert db.get(FileObject, claim.file_id) is None
        assert db.get(FileObject, file.id).status == FileStatus.ACTIVE
        assert store.has(PUBLIC, f"{tenant.id}/a.txt")
        assert _tasks(db) == []

    def test_purge_now_bypasses_queue(self, db, services, store, tenant):
        file = _stored_file(db, store, tenant)
        services.reconciler.purge_now(db, file)

        assert not store.has(PUBLIC, f"{tenant.id}/a.txt")
        assert _tasks(db) == []
        db.refresh(tenant)
        assert tenant.storage_used == 0

"""
Unit tests for object placement: naming, collision policies and claims.
"""
import pytest
from sqlalchemy import select

from stashbox.core.errors import BackendUnavailable, NameConflict
from stashbox.models import DeletionTask, FileObject, FileStatus, Visibility
from stashbox.storage.placement import (
    CollisionPolicy,
    build_key,
    ensure_extension,
    placeholder_name,
    sanitize_filename,
    sanitize_folder,
    with_suffix,
)
from stashbox.storage.quota import QuotaLedger

PUBLIC = "stashbox-public"


@pytest.mark.unit
class TestNaming:
    """Test name sanitization."""

    def test_sanitize_filename_strips_unsafe_chars(self):
        assert sanitize_filename("My Photo (1).PNG") == "myphoto1.png"

    def test_sanitize_filename_drops_directories(self):
        assert sanitize_filename("../../etc/passwd") == "passwd"
        assert sanitize_filename("C:\\Users\\me\\notes.txt") == "notes.txt"

    def test_empty_name_becomes_random(self):
        name = sanitize_filename("???", "image/png")
        assert name.endswith(".png")
        assert len(name) == len("x" * 12 + ".png")

    def test_extension_from_content_type(self):
        assert ensure_extension("report", "application/pdf") == "report.pdf"
        assert ensure_extension("report.txt", "application/pdf") == "report.txt"

    def test_sanitize_folder_cannot_escape(self):
        assert sanitize_folder("../a/./B c//d/..") == "a/bc/d"
        assert sanitize_folder(None) == ""

    def test_build_key_scopes_by_tenant(self):
        assert build_key("t1", "", "a.txt") == "t1/a.txt"
        assert build_key("t1", "x/y", "a.txt") == "t1/x/y/a.txt"

    def test_with_suffix_keeps_extension(self):
        assert with_suffix("photo.png", "1") == "photo-1.png"
        assert with_suffix("README", "ab12") == "README-ab12"


def _active_files(db, tenant):
    return db.execute(
        select(FileObject).where(FileObject.tenant_id == tenant.id, FileObject.status == FileStatus.ACTIVE)
    ).scalars().all()


def _activate(db, services, placed):
    services.placer.activate(db, placed)
    QuotaLedger().commit_storage(db, placed.tenant_id, placed.size, commit=False)
    db.commit()


@pytest.mark.unit
class TestObjectPlacer:
    """Test placing objects under each collision policy."""

    def test_place_stores_bytes_and_pending_row(self, db, services, store, tenant):
        placed = services.placer.place(
            db, tenant.id, "docs", "a.txt", b"hello", "text/plain", Visibility.PUBLIC
        )

        assert placed.storage_key == f"{tenant.id}/docs/a.txt"
        assert placed.bucket == PUBLIC
        assert store.has(PUBLIC, placed.storage_key)
        assert db.get(FileObject, placed.file_id).status == FileStatus.PENDING

    def test_private_files_go_to_private_bucket(self, db, services, tenant):
        placed = services.placer.place(
            db, tenant.id, "", "a.txt", b"x", "text/plain", Visibility.PRIVATE
        )
        assert placed.bucket == "stashbox-private"

    def test_auto_suffix_on_collision(self, db, services, tenant):
        first = services.placer.place(db, tenant.id, "", "a.txt", b"1", "text/plain", Visibility.PUBLIC)
        _activate(db, services, first)
        second = services.placer.place(db, tenant.id, "", "a.txt", b"2", "text/plain", Visibility.PUBLIC)

        assert second.filename != "a.txt"
        assert second.filename.startswith("a-") and second.filename.endswith(".txt")

    def test_same_name_different_visibility_does_not_collide(self, db, services, tenant):
        services.placer.place(db, tenant.id, "", "a.txt", b"1", "text/plain", Visibility.PUBLIC)
        private = services.placer.place(db, tenant.id, "", "a.txt", b"2", "text/plain", Visibility.PRIVATE)
        assert private.filename == "a.txt"

    def test_key_still_in_backend_is_not_reused(self, db, services, store, tenant):
        store.put(PUBLIC, f"{tenant.id}/a.txt", b"leftover")
        placed = services.placer.place(db, tenant.id, "", "a.txt", b"new", "text/plain", Visibility.PUBLIC)
        assert placed.filename != "a.txt"

    def test_key_queued_for_deletion_is_not_reused(self, db, services, tenant):
        services.reconciler.enqueue(db, tenant.id, PUBLIC, f"{tenant.id}/a.txt", Visibility.PUBLIC)
        placed = services.placer.place(db, tenant.id, "", "a.txt", b"new", "text/plain", Visibility.PUBLIC)
        assert placed.filename != "a.txt"

    def test_reject_policy_raises(self, db, services, tenant):
        first = services.placer.place(db, tenant.id, "", "a.txt", b"1", "text/plain", Visibility.PUBLIC)
        _activate(db, services, first)

        with pytest.raises(NameConflict):
            services.placer.place(
                db, tenant.id, "", "a.txt", b"2", "text/plain", Visibility.PUBLIC, CollisionPolicy.REJECT
            )

    def test_overwrite_retires_prior_file_on_activation(self, db, services, store, tenant):
        first = services.placer.place(db, tenant.id, "", "a.txt", b"old!", "text/plain", Visibility.PUBLIC)
        _activate(db, services, first)

        second = services.placer.place(
            db, tenant.id, "", "a.txt", b"new", "text/plain", Visibility.PUBLIC, CollisionPolicy.OVERWRITE
        )

        # Until activation the prior file keeps its name and bytes
        assert [f.id for f in _active_files(db, tenant)] == [first.file_id]
        assert db.execute(select(DeletionTask)).first() is None

        _activate(db, services, second)

        assert second.filename == "a.txt"
        assert second.replaced.file_id == first.file_id
        assert [f.id for f in _active_files(db, tenant)] == [second.file_id]

        tasks = db.execute(select(DeletionTask)).scalars().all()
        assert len(tasks) == 1
        assert tasks[0].storage_key == first.storage_key
        assert tasks[0].backend_object_id == first.backend_object_id
        assert tasks[0].reason == "overwrite"

        db.refresh(tenant)
        assert tenant.storage_used == 3

    def test_failed_overwrite_transfer_keeps_prior_file(self, db, services, store, tenant):
        first = services.placer.place(db, tenant.id, "", "a.txt", b"old!", "text/plain", Visibility.PUBLIC)
        _activate(db, services, first)
        store.failing.add("upload_bytes")

        with pytest.raises(BackendUnavailable):
            services.placer.place(
                db, tenant.id, "", "a.txt", b"new", "text/plain", Visibility.PUBLIC, CollisionPolicy.OVERWRITE
            )

        [row] = db.execute(select(FileObject)).scalars().all()
        assert row.id == first.file_id
        assert row.status == FileStatus.ACTIVE
        assert db.execute(select(DeletionTask)).first() is None
        db.refresh(tenant)
        assert tenant.storage_used == 4

    def test_overwrite_claim_holds_placeholder_name(self, db, services, tenant):
        first = services.placer.place(db, tenant.id, "", "a.txt", b"old!", "text/plain", Visibility.PUBLIC)
        _activate(db, services, first)

        claim = services.placer.claim(
            db, tenant.id, "", "a.txt", 3, "text/plain", Visibility.PUBLIC, CollisionPolicy.OVERWRITE
        )

        assert claim.filename == "a.txt"
        assert claim.storage_key == first.storage_key
        assert db.get(FileObject, claim.file_id).filename == placeholder_name(claim.file_id)

    def test_overwrite_while_upload_in_progress_conflicts(self, db, services, tenant):
        services.placer.claim(db, tenant.id, "", "a.txt", 1, "text/plain", Visibility.PUBLIC)
        with pytest.raises(NameConflict):
            services.placer.claim(
                db, tenant.id, "", "a.txt", 1, "text/plain", Visibility.PUBLIC, CollisionPolicy.OVERWRITE
            )

    def test_failed_transfer_discards_claim_and_reservation(self, db, services, store, tenant):
        services.ledger.reserve_storage(db, tenant.id, 5, cap=None)
        store.failing.add("upload_bytes")

        with pytest.raises(BackendUnavailable):
            services.placer.place(
                db, tenant.id, "", "a.txt", b"hello", "text/plain", Visibility.PUBLIC, reserved_bytes=5
            )

        assert db.execute(select(FileObject)).first() is None
        db.refresh(tenant)
        assert tenant.storage_reserved == 0

    def test_discard_claim_is_idempotent(self, db, services, tenant):
        claim = services.placer.claim(db, tenant.id, "", "a.txt", 1, "text/plain", Visibility.PUBLIC)
        assert services.placer.discard_claim(db, claim.file_id) is True
        assert services.placer.discard_claim(db, claim.file_id) is False

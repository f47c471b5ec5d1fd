"""
Process-wide service container, built once at startup and handed to
request handlers through FastAPI dependencies.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from stashbox.core.config import settings
from stashbox.core.object_store import MinioObjectStore, ObjectStore
from stashbox.db.session import SessionLocal
from stashbox.services.files import FileService
from stashbox.services.uploads import UploadOrchestrator
from stashbox.storage.placement import ObjectPlacer
from stashbox.storage.plans import PlanCatalog
from stashbox.storage.quota import QuotaLedger
from stashbox.storage.reconciler import DeletionReconciler
from stashbox.storage.references import ReferenceIssuer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: ObjectStore
    catalog: PlanCatalog
    ledger: QuotaLedger
    issuer: ReferenceIssuer
    reconciler: DeletionReconciler
    placer: ObjectPlacer
    uploads: UploadOrchestrator
    files: FileService
    session_factory: Callable[[], Session]


def build_services(
    store: Optional[ObjectStore] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Services:
    """
    Wire the lifecycle engine.

    Args:
        store: Object store (default: MinIO from settings)
        session_factory: Session factory for background work and parallel uploads
    """
    store = store or MinioObjectStore()
    session_factory = session_factory or SessionLocal

    catalog = PlanCatalog()
    ledger = QuotaLedger()
    issuer = ReferenceIssuer(store)
    reconciler = DeletionReconciler(store, ledger, buckets=(settings.PUBLIC_BUCKET, settings.PRIVATE_BUCKET))
    placer = ObjectPlacer(store, ledger, reconciler)

    return Services(
        store=store,
        catalog=catalog,
        ledger=ledger,
        issuer=issuer,
        reconciler=reconciler,
        placer=placer,
        uploads=UploadOrchestrator(catalog, ledger, placer, issuer, session_factory),
        files=FileService(catalog, ledger, issuer, reconciler),
        session_factory=session_factory,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the container stored on app.state."""
    return request.app.state.services

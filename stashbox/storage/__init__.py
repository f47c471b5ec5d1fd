"""
Storage Lifecycle Module

File lifecycle and quota management engine:
- Plan resolution and limit merging
- Atomic storage and request accounting
- Collision-safe object placement
- Public and signed private locators with renewal
- Deferred deletion reconciliation
"""

from .plans import PlanCatalog, EffectiveLimits, SEED_PLANS
from .quota import QuotaLedger, UsageSnapshot
from .references import ReferenceIssuer, IssuedReference
from .reconciler import DeletionReconciler, SweepResult, RetiredFile
from .placement import (
    ObjectPlacer,
    CollisionPolicy,
    NameClaim,
    PlacedObject,
    sanitize_filename,
    sanitize_folder,
    build_key,
)

__all__ = [
    # Plans
    'PlanCatalog',
    'EffectiveLimits',
    'SEED_PLANS',

    # Quota
    'QuotaLedger',
    'UsageSnapshot',

    # References
    'ReferenceIssuer',
    'IssuedReference',

    # Deletion
    'DeletionReconciler',
    'SweepResult',
    'RetiredFile',

    # Placement
    'ObjectPlacer',
    'CollisionPolicy',
    'NameClaim',
    'PlacedObject',
    'sanitize_filename',
    'sanitize_folder',
    'build_key',
]

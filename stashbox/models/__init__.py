"""
SQLAlchemy models for the Stashbox application.
"""
from stashbox.models.base import Base
from stashbox.models.tenant import Tenant
from stashbox.models.api_key import APIKey
from stashbox.models.plan import Plan, PlanOverride
from stashbox.models.file_object import FileObject, FileStatus, Visibility
from stashbox.models.deletion_task import DeletionTask
from stashbox.models.signed_reference import SignedReference
from stashbox.models.request_counter import RequestCounter

__all__ = [
    "Base",
    "Tenant",
    "APIKey",
    "Plan",
    "PlanOverride",
    "FileObject",
    "FileStatus",
    "Visibility",
    "DeletionTask",
    "SignedReference",
    "RequestCounter",
]

"""
Usage Endpoint
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stashbox.core.security import get_current_tenant
from stashbox.db import get_db
from stashbox.models import Tenant
from stashbox.schemas import UsageResponse
from stashbox.services import Services, get_services

router = APIRouter()


@router.get("/usage", response_model=UsageResponse)
def get_usage(
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Storage used, requests counted today and the effective plan limits."""
    return services.files.usage(db, tenant)

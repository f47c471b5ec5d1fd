"""
API v1 router aggregation.
"""
from fastapi import APIRouter
from stashbox.api.v1.endpoints import files, uploads, usage

api_router = APIRouter()

# Include upload endpoint
api_router.include_router(uploads.router, tags=["uploads"])

# Include file management endpoints
api_router.include_router(files.router, tags=["files"])

# Include usage endpoint
api_router.include_router(usage.router, tags=["usage"])

__all__ = ["api_router"]

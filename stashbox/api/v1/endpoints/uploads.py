"""
Upload Endpoint
Multi-file multipart upload into the caller's storage.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, Security, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from stashbox.core.config import settings
from stashbox.core.errors import PlanLimitExceeded
from stashbox.core.security import api_key_header, is_trusted_request
from stashbox.db import get_db
from stashbox.metrics import record_limit_rejection
from stashbox.schemas import UploadResponse
from stashbox.services import Services, UploadOptions, get_services
from stashbox.services import UploadFile as UploadPart

logger = logging.getLogger(__name__)

router = APIRouter()


def check_part_size(upload: UploadFile) -> None:
    """Reject a part over MULTIPART_MAX_FILE_SIZE before its bytes are read."""
    max_size = settings.MULTIPART_MAX_FILE_SIZE
    if upload.size is not None and upload.size > max_size:
        record_limit_rejection("file_size")
        raise PlanLimitExceeded(
            f"File '{upload.filename}' exceeds the maximum file size of {max_size} bytes",
            limit="file_size",
            details={"filename": upload.filename, "size": upload.size, "max_file_size": max_size},
        )


@router.post(
    "/upload",
    response_model=UploadResponse,
    responses={
        400: {"description": "Malformed upload"},
        401: {"description": "Missing or invalid API key"},
        409: {"description": "Name conflict (on_conflict=reject)"},
        413: {"description": "File or storage limit exceeded"},
        429: {"description": "Daily request limit exceeded"},
        503: {"description": "Object store unavailable"},
    },
)
async def upload_files(
    request: Request,
    files: List[UploadFile] = File(..., description="One or more files"),
    path: str = Form("", description="Folder inside the tenant's storage"),
    private: bool = Form(False, description="Store privately and return a signed URL"),
    filename: Optional[str] = Form(None, description="Name for the stored file(s)"),
    expire_delete: int = Form(0, description="Delete after this many seconds (max 7 days)"),
    expire_token_seconds: Optional[int] = Form(None, description="Lifetime of the signed URL"),
    on_conflict: Optional[str] = Form(None, description="'suffix' (default) or 'reject'"),
    override: bool = Query(False, description="Overwrite an existing file with the same name"),
    api_key: Optional[str] = Security(api_key_header),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Upload files.

    Each file succeeds or fails on its own; see the per-file entries of the
    response. Name collisions get a random suffix unless `override` is set or
    `on_conflict=reject`.
    """
    for upload in files:
        check_part_size(upload)

    parts = []
    for upload in files:
        # A part without a declared size is cut one byte past the limit and
        # rejected by the orchestrator
        parts.append(UploadPart(
            filename=upload.filename,
            content=await upload.read(settings.MULTIPART_MAX_FILE_SIZE + 1),
            content_type=upload.content_type or "application/octet-stream",
        ))

    options = UploadOptions(
        path=path,
        private=private,
        filename=filename,
        expire_delete=expire_delete,
        expire_token_seconds=expire_token_seconds,
        override=override,
        on_conflict=on_conflict,
    )

    batch = await run_in_threadpool(
        services.uploads.handle_upload,
        db,
        api_key,
        parts,
        options,
        is_trusted_request(request.headers),
    )
    return JSONResponse(status_code=batch.status_code, content=batch.to_dict())

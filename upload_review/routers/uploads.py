from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from upload_review.core.errors import UploadServiceError
from upload_review.middleware import (
    PERMISSION_APPROVE,
    PERMISSION_PURGE,
    PERMISSION_READ,
    PERMISSION_REJECT,
    PERMISSION_UPLOAD,
    require_permission,
)
from upload_review.service.upload_service import UploadService

router = APIRouter()


# Pydantic models for request validation
class RejectRequest(BaseModel):
    reason: str


def get_upload_service(request: Request) -> UploadService:
    return request.app.state.upload_service


def _http_error(e: UploadServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/uploads", status_code=202)
async def upload_file(
    file: UploadFile = File(..., description="File to submit for review"),
    user: str = Depends(require_permission(PERMISSION_UPLOAD)),
    service: UploadService = Depends(get_upload_service),
):
    """
    Stage a file for review

    The bytes go to temporary storage and a pending upload record is created.
    Nothing is published until a reviewer approves it.
    """
    try:
        upload = await service.submit(
            identity=user,
            file_name=file.filename,
            file_size_hint=file.size,
            content_stream=file,
            content_type=file.content_type,
        )
    except UploadServiceError as e:
        raise _http_error(e)
    finally:
        await file.close()

    return {
        "id": upload.id,
        "file_name": upload.file_name,
        "status": upload.status.value,
        "file_checksum": upload.file_checksum,
        "message": "File pending review",
    }


@router.get("/uploads")
async def list_uploads(
    status: Optional[str] = Query(default=None, description="pending, approved, rejected or failed"),
    page: int = Query(default=1),
    page_size: int = Query(default=20),
    sort_by: Optional[str] = Query(default=None),
    sort_dir: Optional[str] = Query(default=None, description="asc or desc"),
    user: str = Depends(require_permission(PERMISSION_READ)),
    service: UploadService = Depends(get_upload_service),
):
    try:
        result = await service.list_uploads(status, page, page_size, sort_by, sort_dir)
    except UploadServiceError as e:
        raise _http_error(e)

    return {
        "uploads": [u.to_dict() for u in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
    }


@router.get("/uploads/{upload_id}")
async def get_upload_status(
    upload_id: str,
    user: str = Depends(require_permission(PERMISSION_READ)),
    service: UploadService = Depends(get_upload_service),
):
    """
    Get an upload, refreshing a pending CDN invalidation status on the way
    """
    try:
        upload = await service.get_status(upload_id)
    except UploadServiceError as e:
        raise _http_error(e)
    return upload.to_dict()


@router.post("/uploads/{upload_id}/approve")
async def approve_upload(
    upload_id: str,
    user: str = Depends(require_permission(PERMISSION_APPROVE)),
    service: UploadService = Depends(get_upload_service),
):
    """
    Approve a pending upload

    This endpoint:
    1. Backs up the currently published file, if any
    2. Publishes the staged bytes
    3. Invalidates the CDN and purges the secondary cache
    4. Marks the upload approved
    """
    try:
        result = await service.approve(upload_id, user)
    except UploadServiceError as e:
        raise _http_error(e)

    return {
        "id": result.upload_id,
        "status": "approved",
        "s3_key": result.s3_key,
        "backup_key": result.backup_key,
        "cloudfront_inv_id": result.invalidation_id,
        "cloudflare_ready": result.purge_ready,
    }


@router.post("/uploads/{upload_id}/reject")
async def reject_upload(
    upload_id: str,
    payload: RejectRequest,
    user: str = Depends(require_permission(PERMISSION_REJECT)),
    service: UploadService = Depends(get_upload_service),
):
    try:
        upload = await service.reject(upload_id, user, payload.reason)
    except UploadServiceError as e:
        raise _http_error(e)
    return {"status": upload.status.value, "reason": upload.rejection_reason}


@router.post("/uploads/{upload_id}/purge-cache")
async def purge_cache(
    upload_id: str,
    user: str = Depends(require_permission(PERMISSION_PURGE)),
    service: UploadService = Depends(get_upload_service),
):
    try:
        await service.purge_cache(upload_id, user)
    except UploadServiceError as e:
        raise _http_error(e)
    return {"message": "Cache purged successfully"}


@router.get("/audit-logs")
async def list_audit_logs(
    upload_id: Optional[str] = Query(default=None),
    action: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None, description="Actor identity"),
    page: int = Query(default=1),
    page_size: int = Query(default=50),
    user: str = Depends(require_permission(PERMISSION_READ)),
    service: UploadService = Depends(get_upload_service),
):
    try:
        result = await service.list_audit_logs(upload_id, action, user_id, page, page_size)
    except UploadServiceError as e:
        raise _http_error(e)

    return {
        "logs": [entry.to_dict() for entry in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
    }


# Health Check
health_router = APIRouter()


@health_router.get("/health", tags=["Health"])
async def health_check(service: UploadService = Depends(get_upload_service)):
    """
    Check the database and temporary storage
    """
    report = await service.health_check()
    return JSONResponse(
        {"status": report.status, "version": "1.0.0", "dependencies": report.dependencies},
        status_code=200 if report.healthy else 503,
    )

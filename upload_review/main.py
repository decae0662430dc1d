from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from upload_review.core.config import Settings
from upload_review.core.logging_config import setup_logging
from upload_review.db.database import create_engine, create_session_factory, init_models
from upload_review.db.db_utils import AuditLogStore, BackupStore, UploadRecordStore
from upload_review.middleware import (
    AllowAllPermissionChecker,
    AuthMiddleware,
    RemotePermissionChecker,
    RequestLoggingMiddleware,
)
from upload_review.routers import uploads
from upload_review.service.cloudflare import CloudflarePurger
from upload_review.service.cloudfront import CloudFrontInvalidator, create_cloudfront_client
from upload_review.service.notifications import SlackNotifier
from upload_review.service.s3_utils import S3Storage, create_s3_client
from upload_review.service.temp_storage import create_temp_storage
from upload_review.service.upload_service import UploadService
from upload_review.service.validation import FileValidator

logger = structlog.get_logger(__name__)


async def build_upload_service(settings: Settings, engine) -> UploadService:
    """Wire every collaborator from configuration."""
    await init_models(engine)
    session_factory = create_session_factory(engine)

    temp_storage = await create_temp_storage(settings.redis_url, settings.redis_prefix)
    s3_client = create_s3_client(settings.aws_region, settings.aws_endpoint_url)

    invalidator = None
    if settings.cloudfront_enabled:
        invalidator = CloudFrontInvalidator(create_cloudfront_client(settings.aws_region))

    purger = None
    if settings.cloudflare_enabled:
        purger = CloudflarePurger(settings.cloudflare_token, settings.cloudflare_zone_id)

    return UploadService(
        settings=settings,
        records=UploadRecordStore(session_factory),
        audit=AuditLogStore(session_factory),
        backups=BackupStore(session_factory),
        temp_storage=temp_storage,
        object_store=S3Storage(s3_client, settings.s3_bucket, settings.s3_prefix),
        notifier=SlackNotifier(settings.slack),
        invalidator=invalidator,
        purger=purger,
        validator=FileValidator(
            settings.max_upload_size,
            settings.allowed_extensions,
            settings.allowed_mime_types,
        ),
    )


def create_app(settings: Optional[Settings] = None, service: Optional[UploadService] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            yield
            return

        engine = create_engine(settings.database_url)
        app.state.upload_service = await build_upload_service(settings, engine)
        logger.info(
            "app.started",
            bucket=settings.s3_bucket,
            cloudfront=settings.cloudfront_enabled,
            cloudflare=settings.cloudflare_enabled,
        )
        try:
            yield
        finally:
            await app.state.upload_service.temp_storage.close()
            await engine.dispose()
            logger.info("app.stopped")

    app = FastAPI(
        title="File Upload Review Service",
        description="Staged file uploads with human approval before publishing to S3",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.upload_service = service
    if settings.permission_check_url:
        app.state.permission_checker = RemotePermissionChecker(settings.permission_check_url)
    else:
        app.state.permission_checker = AllowAllPermissionChecker()

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        # service errors already carry the full error body
        if isinstance(exc.detail, dict):
            body = exc.detail
        else:
            body = {"error": "http_error", "message": str(exc.detail), "code": exc.status_code}
        return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add Auth middleware
    app.add_middleware(AuthMiddleware, service_token=settings.service_auth_token)
    app.add_middleware(RequestLoggingMiddleware)

    # Include routers
    app.include_router(uploads.router, prefix="/api/v1", tags=["Uploads"])
    app.include_router(uploads.health_router)

    return app

"""Upload lifecycle: submit, review (approve / reject) and cache follow-ups.

``UploadService`` is the only component that talks to every collaborator.
It keeps no state of its own besides those handles, so a single instance
serves all concurrent requests.

Failure policy:

* Precondition problems (``ValidationError``, ``NotFoundError``,
  ``InvalidStateError``) are raised before any side effect.
* A failing fatal step is audited as ``failure``, announced with an
  ``error`` notification and raised as ``DependencyFailure`` naming the
  operation and step. Once the destination object has been written, the
  error is a ``PartialCompletionError``: the object stays published and
  nothing is rolled back.
* Ephemeral cleanup, the secondary cache purge during approval,
  notifications and audit appends never fail the operation. Their
  failures are logged.
"""
import asyncio
import hashlib
import inspect
import mimetypes
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import PurePosixPath
from typing import Any, Dict, Optional

import structlog

from upload_review.core.config import Settings
from upload_review.core.errors import (
    DependencyFailure,
    InvalidStateError,
    NotFoundError,
    OperationTimeoutError,
    PartialCompletionError,
    ValidationError,
)
from upload_review.db.db_utils import Page, UPLOAD_SORT_COLUMNS
from upload_review.db.models import (
    INVALIDATION_COMPLETED,
    INVALIDATION_IN_PROGRESS,
    AuditActionEnum,
    AuditLog,
    AuditOutcomeEnum,
    BackupMetadata,
    Upload,
    UploadStatusEnum,
    utcnow,
)
from upload_review.service.cloudflare import purge_path
from upload_review.service.cloudfront import invalidation_path
from upload_review.service.notifications import (
    EVENT_APPROVE,
    EVENT_ERROR,
    EVENT_REJECT,
    EVENT_UPLOAD,
    NotificationEvent,
)

logger = structlog.get_logger(__name__)

READ_CHUNK_SIZE = 1024 * 1024

UPLOADS_PAGE_SIZE = 20
UPLOADS_MAX_PAGE_SIZE = 100
AUDIT_PAGE_SIZE = 50
AUDIT_MAX_PAGE_SIZE = 200

HEALTH_PROBE_KEY = "health_check_probe"
HEALTH_PROBE_TTL = 10


@dataclass
class ApprovalResult:
    upload_id: str
    s3_key: str
    backup_key: Optional[str] = None
    invalidation_id: Optional[str] = None
    purge_ready: bool = False


@dataclass
class HealthReport:
    status: str
    dependencies: Dict[str, str] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


class Deadline:
    """Operation budget, checked between steps.

    A remote call that is already running is allowed to finish; the check
    stops the next step from starting.
    """

    def __init__(self, operation: str, seconds: float, clock=time.monotonic):
        self.operation = operation
        self.seconds = seconds
        self._clock = clock
        self._expires = clock() + seconds

    def check(self, step: str) -> None:
        if self._clock() >= self._expires:
            raise OperationTimeoutError(
                self.operation,
                step,
                f"{self.operation} exceeded its {self.seconds:g}s budget before step {step}",
            )


def normalize_paging(page: Optional[int], page_size: Optional[int], default: int, maximum: int):
    page = page if page and page > 0 else 1
    if not page_size or page_size < 1:
        page_size = default
    return page, min(page_size, maximum)


def clean_file_name(file_name: Optional[str]) -> str:
    if not file_name or not file_name.strip():
        raise ValidationError("file name is required")
    name = file_name.strip()
    if "/" in name or "\\" in name or PurePosixPath(name).name in ("", ".", ".."):
        raise ValidationError(f"invalid file name: {file_name}")
    return name


async def read_stream(stream: Any, max_size: int):
    """Read ``stream`` fully, hashing as it goes.

    Accepts raw bytes or any object with a sync or async ``read(size)``.
    Returns ``(data, md5_hex)``.
    """
    digest = hashlib.md5()
    if isinstance(stream, (bytes, bytearray, memoryview)):
        data = bytes(stream)
        if len(data) > max_size:
            raise ValidationError(f"file size exceeds max allowed: {max_size} bytes")
        digest.update(data)
        return data, digest.hexdigest()

    chunks = []
    total = 0
    while True:
        chunk = stream.read(READ_CHUNK_SIZE)
        if inspect.isawaitable(chunk):
            chunk = await chunk
        if not chunk:
            break
        total += len(chunk)
        if total > max_size:
            raise ValidationError(f"file size exceeds max allowed: {max_size} bytes")
        digest.update(chunk)
        chunks.append(chunk)
    return b"".join(chunks), digest.hexdigest()


class UploadService:
    def __init__(
        self,
        settings: Settings,
        records,
        audit,
        backups,
        temp_storage,
        object_store,
        notifier,
        invalidator=None,
        purger=None,
        validator=None,
        clock=time.monotonic,
    ):
        self.settings = settings
        self.records = records
        self.audit = audit
        self.backups = backups
        self.temp_storage = temp_storage
        self.object_store = object_store
        self.notifier = notifier
        self.invalidator = invalidator
        self.purger = purger
        self.validator = validator
        self._clock = clock

    # -- helpers ---------------------------------------------------------

    def _deadline(self, operation: str, seconds: float) -> Deadline:
        return Deadline(operation, seconds, clock=self._clock)

    @property
    def invalidation_enabled(self) -> bool:
        return self.invalidator is not None and self.settings.cloudfront_enabled

    @property
    def purge_enabled(self) -> bool:
        return self.purger is not None and self.settings.cloudflare_enabled

    async def _notify(self, event: NotificationEvent) -> None:
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.warning("notification.failed", event_type=event.type, error=str(e))

    async def _audit(
        self,
        upload_id: Optional[str],
        action: AuditActionEnum,
        actor: str,
        outcome: AuditOutcomeEnum,
        details: Optional[Dict[str, str]] = None,
        error: Optional[str] = None,
    ) -> None:
        entry = AuditLog(
            upload_id=upload_id,
            action=action,
            user_id=actor,
            timestamp=utcnow(),
            status=outcome,
            details=details or {},
            error_message=error,
        )
        try:
            await self.audit.append(entry)
        except Exception as e:
            logger.error("audit.append_failed", upload_id=upload_id, action=action.value, error=str(e))

    async def _cleanup_temp(self, key: Optional[str], upload_id: str) -> None:
        if not key:
            return
        try:
            await self.temp_storage.delete(key)
        except Exception as e:
            # the entry expires on its own
            logger.warning("temp_storage.delete_failed", upload_id=upload_id, key=key, error=str(e))

    async def _step_failed(
        self,
        operation: str,
        step: str,
        exc: Exception,
        actor: str,
        upload: Optional[Upload] = None,
        file_name: Optional[str] = None,
        published: bool = False,
        audit_action: Optional[AuditActionEnum] = None,
    ) -> DependencyFailure:
        """Audit and announce a fatal step failure, return the error to raise."""
        if published and not isinstance(exc, PartialCompletionError):
            # timeouts included: the object is already live
            err = PartialCompletionError(
                operation, step, f"{operation} failed at step {step} after publishing: {exc}"
            )
        elif isinstance(exc, DependencyFailure):
            err = exc
        else:
            err = DependencyFailure(operation, step, f"{operation} failed at step {step}: {exc}")

        upload_id = upload.id if upload is not None else None
        logger.error(
            "upload.step_failed",
            operation=operation,
            step=step,
            upload_id=upload_id,
            published=published,
            error=str(exc),
        )
        if audit_action is not None:
            await self._audit(
                upload_id,
                audit_action,
                actor,
                AuditOutcomeEnum.failure,
                details={"step": step},
                error=str(exc),
            )
        await self._notify(
            NotificationEvent(
                type=EVENT_ERROR,
                upload=upload,
                file_name=file_name,
                reviewed_by=actor,
                error=err.message,
            )
        )
        return err

    async def _load(self, upload_id: str, operation: str) -> Upload:
        try:
            upload = await self.records.get(upload_id)
        except Exception as e:
            raise DependencyFailure(operation, "load_record", f"{operation} failed at step load_record: {e}") from e
        if upload is None:
            raise NotFoundError(f"upload not found: {upload_id}")
        return upload

    # -- lifecycle -------------------------------------------------------

    async def submit(
        self,
        identity: str,
        file_name: str,
        file_size_hint: Optional[int],
        content_stream: Any,
        content_type: Optional[str] = None,
    ) -> Upload:
        deadline = self._deadline("submit", self.settings.submit_timeout)
        max_size = self.settings.max_upload_size

        file_name = clean_file_name(file_name)
        if file_size_hint is not None and file_size_hint > max_size:
            raise ValidationError(f"file size exceeds max allowed: {max_size} bytes")

        data, checksum = await read_stream(content_stream, max_size)

        if self.settings.validation_enabled and self.validator is not None:
            result = self.validator.validate(file_name, data)
            if not result.valid:
                message = result.error_message()
                await self._notify(
                    NotificationEvent(
                        type=EVENT_ERROR,
                        file_name=file_name,
                        error=f"File validation failed for {file_name}: {message}",
                    )
                )
                raise ValidationError(f"File validation failed: {message}")

        temp_key = uuid.uuid4().hex
        ttl = self.settings.temp_storage_ttl
        try:
            deadline.check("temp_store")
            await self.temp_storage.store(temp_key, data, ttl)
        except Exception as e:
            raise await self._step_failed("submit", "temp_store", e, identity, file_name=file_name) from e

        try:
            exists = await self.object_store.exists(file_name)
        except Exception as e:
            logger.warning("object_store.exists_failed", file_name=file_name, error=str(e))
            exists = False

        now = utcnow()
        upload = Upload(
            id=str(uuid.uuid4()),
            file_name=file_name,
            file_size=len(data),
            content_type=content_type or mimetypes.guess_type(file_name)[0] or "application/octet-stream",
            file_checksum=checksum,
            uploaded_by=identity,
            uploaded_at=now,
            status=UploadStatusEnum.pending,
            temp_storage_key=temp_key,
            expires_at=now + timedelta(seconds=ttl),
        )
        try:
            deadline.check("create_record")
            upload = await self.records.create(upload)
        except Exception as e:
            # the temp entry is left to expire
            raise await self._step_failed("submit", "create_record", e, identity, file_name=file_name) from e

        logger.info("upload.submitted", upload_id=upload.id, file_name=file_name, size=len(data))
        await self._audit(
            upload.id,
            AuditActionEnum.upload,
            identity,
            AuditOutcomeEnum.success,
            details={
                "file_name": file_name,
                "file_size": str(len(data)),
                "exists": str(exists).lower(),
            },
        )
        await self._notify(NotificationEvent(type=EVENT_UPLOAD, upload=upload))
        return upload

    async def approve(self, upload_id: str, reviewer: str) -> ApprovalResult:
        operation = "approve"
        deadline = self._deadline(operation, self.settings.approve_timeout)

        upload = await self._load(upload_id, operation)
        if upload.status != UploadStatusEnum.pending:
            raise InvalidStateError("only pending uploads can be approved")

        async def fail(step: str, exc: Exception, published: bool = False) -> DependencyFailure:
            return await self._step_failed(
                operation,
                step,
                exc,
                reviewer,
                upload=upload,
                published=published,
                audit_action=AuditActionEnum.approve,
            )

        # 1. staged bytes
        try:
            deadline.check("fetch_temp_file")
            data = await self.temp_storage.get(upload.temp_storage_key)
        except Exception as e:
            raise await fail("fetch_temp_file", e) from e

        if hashlib.md5(data).hexdigest() != upload.file_checksum:
            raise await fail("verify_checksum", ValueError("staged content does not match recorded checksum"))

        # 2. safety copy of whatever is published now
        backup_key = None
        try:
            deadline.check("backup")
            existing = await self.object_store.head(upload.file_name)
            if existing is not None:
                backup_key = await self.object_store.backup_file(upload.file_name)
                await self.backups.save(
                    BackupMetadata(
                        upload_id=upload.id,
                        original_s3_key=upload.file_name,
                        backup_s3_key=backup_key,
                        size=existing.get("size", 0),
                        backup_date=utcnow(),
                    )
                )
        except Exception as e:
            raise await fail("backup", e) from e

        # 3. publish
        try:
            deadline.check("upload_to_store")
            await self.object_store.put(upload.file_name, data, upload.content_type)
        except Exception as e:
            raise await fail("upload_to_store", e) from e

        # 4. CDN invalidation
        invalidation_id = None
        invalidation_status = None
        if self.invalidation_enabled:
            try:
                deadline.check("invalidate_cache")
                invalidation_id = await self.invalidator.invalidate(
                    self.settings.cloudfront_distribution_id,
                    [invalidation_path(self.settings.s3_prefix, upload.file_name)],
                )
                invalidation_status = INVALIDATION_IN_PROGRESS
            except Exception as e:
                raise await fail("invalidate_cache", e, published=True) from e

        # 5. secondary purge, never fatal
        purge_ready = False
        if self.purge_enabled:
            try:
                await self.purger.purge(purge_path(self.settings.s3_prefix, upload.file_name))
                purge_ready = True
            except Exception as e:
                logger.warning("cloudflare.purge_failed", upload_id=upload.id, error=str(e))
                await self._notify(
                    NotificationEvent(
                        type=EVENT_ERROR,
                        upload=upload,
                        reviewed_by=reviewer,
                        error=f"Cloudflare purge failed (non-critical): {e}",
                    )
                )

        # 6. record the transition
        try:
            deadline.check("update_record")
            updated = await self.records.update_approved(
                upload.id,
                reviewer,
                upload.file_name,
                backup_key,
                invalidation_id,
                invalidation_status,
            )
        except Exception as e:
            raise await fail("update_record", e, published=True) from e

        if not updated:
            logger.warning("upload.approve_lost_race", upload_id=upload.id)
            await self._audit(
                upload.id,
                AuditActionEnum.approve,
                reviewer,
                AuditOutcomeEnum.failure,
                details={"step": "update_record", "s3_key": upload.file_name},
                error="upload is no longer pending",
            )
            await self._notify(
                NotificationEvent(
                    type=EVENT_ERROR,
                    upload=upload,
                    reviewed_by=reviewer,
                    error=f"Approval of {upload.file_name} lost to a concurrent review after publishing",
                )
            )
            raise InvalidStateError("only pending uploads can be approved")

        # 7. staged copy is no longer needed
        await self._cleanup_temp(upload.temp_storage_key, upload.id)

        upload.status = UploadStatusEnum.approved
        upload.reviewed_by = reviewer
        upload.reviewed_at = utcnow()
        upload.s3_key = upload.file_name
        upload.backup_s3_key = backup_key
        upload.cloudfront_inv_id = invalidation_id
        upload.invalidation_status = invalidation_status
        upload.temp_storage_key = None

        # 8. trail and announcement
        logger.info("upload.approved", upload_id=upload.id, s3_key=upload.s3_key, backup_key=backup_key)
        await self._audit(
            upload.id,
            AuditActionEnum.approve,
            reviewer,
            AuditOutcomeEnum.success,
            details={
                "s3_key": upload.s3_key,
                "backup_key": backup_key or "",
                "cloudfront_inv": invalidation_id or "",
                "cloudflare_ready": str(purge_ready).lower(),
            },
        )
        await self._notify(NotificationEvent(type=EVENT_APPROVE, upload=upload, reviewed_by=reviewer))

        return ApprovalResult(
            upload_id=upload.id,
            s3_key=upload.s3_key,
            backup_key=backup_key,
            invalidation_id=invalidation_id,
            purge_ready=purge_ready,
        )

    async def reject(self, upload_id: str, reviewer: str, reason: str) -> Upload:
        operation = "reject"
        deadline = self._deadline(operation, self.settings.default_timeout)

        if not reason or not reason.strip():
            raise ValidationError("rejection reason is required")

        upload = await self._load(upload_id, operation)
        if upload.status != UploadStatusEnum.pending:
            raise InvalidStateError("only pending uploads can be rejected")

        try:
            deadline.check("update_record")
            updated = await self.records.update_rejected(upload.id, reviewer, reason)
        except Exception as e:
            raise await self._step_failed(
                operation,
                "update_record",
                e,
                reviewer,
                upload=upload,
                audit_action=AuditActionEnum.reject,
            ) from e

        if not updated:
            raise InvalidStateError("only pending uploads can be rejected")

        await self._cleanup_temp(upload.temp_storage_key, upload.id)

        upload.status = UploadStatusEnum.rejected
        upload.reviewed_by = reviewer
        upload.reviewed_at = utcnow()
        upload.rejection_reason = reason
        upload.temp_storage_key = None

        logger.info("upload.rejected", upload_id=upload.id)
        await self._audit(
            upload.id,
            AuditActionEnum.reject,
            reviewer,
            AuditOutcomeEnum.success,
            details={"reason": reason},
        )
        await self._notify(
            NotificationEvent(type=EVENT_REJECT, upload=upload, reviewed_by=reviewer, reason=reason)
        )
        return upload

    async def get_status(self, upload_id: str) -> Upload:
        upload = await self._load(upload_id, "get_status")

        if not (
            upload.cloudfront_inv_id
            and upload.invalidation_status == INVALIDATION_IN_PROGRESS
            and self.invalidation_enabled
        ):
            return upload

        try:
            status = await self.invalidator.get_status(
                self.settings.cloudfront_distribution_id, upload.cloudfront_inv_id
            )
        except Exception as e:
            logger.warning("cloudfront.status_poll_failed", upload_id=upload.id, error=str(e))
            return upload

        upload.invalidation_status = status
        if status == INVALIDATION_COMPLETED:
            try:
                await self.records.update_invalidation_status(upload.id, INVALIDATION_COMPLETED)
            except Exception as e:
                # polled again on the next read
                logger.warning("upload.invalidation_status_not_saved", upload_id=upload.id, error=str(e))
        return upload

    async def purge_cache(self, upload_id: str, actor: str) -> None:
        operation = "purge_cache"
        upload = await self._load(upload_id, operation)

        if upload.status != UploadStatusEnum.approved:
            raise InvalidStateError("only approved uploads can purge the cache")
        if not self.purge_enabled:
            raise InvalidStateError("secondary cache purge is not configured")

        try:
            await self.purger.purge(purge_path(self.settings.s3_prefix, upload.file_name))
        except Exception as e:
            raise await self._step_failed(
                operation,
                "purge_secondary_cache",
                e,
                actor,
                upload=upload,
                audit_action=AuditActionEnum.purge_cache,
            ) from e

        logger.info("upload.cache_purged", upload_id=upload.id)
        await self._audit(upload.id, AuditActionEnum.purge_cache, actor, AuditOutcomeEnum.success)

    # -- listings --------------------------------------------------------

    async def list_uploads(
        self,
        status: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        sort_by: Optional[str] = None,
        sort_dir: Optional[str] = None,
    ) -> Page:
        if status and status not in UploadStatusEnum.__members__:
            raise ValidationError(f"unknown status: {status}")
        sort_by = sort_by or "uploaded_at"
        if sort_by not in UPLOAD_SORT_COLUMNS:
            raise ValidationError(f"cannot sort by: {sort_by}")
        sort_dir = (sort_dir or "desc").lower()
        if sort_dir not in ("asc", "desc"):
            raise ValidationError(f"sort_dir must be 'asc' or 'desc', got: {sort_dir}")

        page, page_size = normalize_paging(page, page_size, UPLOADS_PAGE_SIZE, UPLOADS_MAX_PAGE_SIZE)
        try:
            return await self.records.list(status or None, page, page_size, sort_by, sort_dir)
        except Exception as e:
            raise DependencyFailure("list_uploads", "query", f"list_uploads failed: {e}") from e

    async def list_audit_logs(
        self,
        upload_id: Optional[str] = None,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page:
        if action and action not in AuditActionEnum.__members__:
            raise ValidationError(f"unknown action: {action}")

        page, page_size = normalize_paging(page, page_size, AUDIT_PAGE_SIZE, AUDIT_MAX_PAGE_SIZE)
        try:
            return await self.audit.list(upload_id or None, action or None, user_id or None, page, page_size)
        except Exception as e:
            raise DependencyFailure("list_audit_logs", "query", f"list_audit_logs failed: {e}") from e

    async def health_check(self) -> HealthReport:
        dependencies = {}
        timeout = self.settings.health_timeout

        try:
            await asyncio.wait_for(self.records.health_check(), timeout)
            dependencies["database"] = "healthy"
        except Exception as e:
            logger.warning("health.database_unhealthy", error=str(e))
            dependencies["database"] = "unhealthy"

        try:
            await asyncio.wait_for(
                self.temp_storage.store(HEALTH_PROBE_KEY, b"ok", HEALTH_PROBE_TTL), timeout
            )
            await asyncio.wait_for(self.temp_storage.delete(HEALTH_PROBE_KEY), timeout)
            dependencies["temp_storage"] = "healthy"
        except Exception as e:
            logger.warning("health.temp_storage_unhealthy", error=str(e))
            dependencies["temp_storage"] = "unhealthy"

        status = "healthy" if all(v == "healthy" for v in dependencies.values()) else "unhealthy"
        return HealthReport(status=status, dependencies=dependencies)

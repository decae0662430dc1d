import math
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy import func, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.future import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from upload_review.db.models import (
    AuditActionEnum,
    AuditLog,
    BackupMetadata,
    Upload,
    UploadStatusEnum,
    utcnow,
)

UPLOAD_SORT_COLUMNS = {
    "uploaded_at": Upload.uploaded_at,
    "file_name": Upload.file_name,
    "file_size": Upload.file_size,
    "status": Upload.status,
    "reviewed_at": Upload.reviewed_at,
}


class RecordStoreError(Exception):
    """Raised when the database rejects or fails a record operation."""


@dataclass
class Page:
    items: List[Any] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)


class UploadRecordStore:
    """Persists uploads and their status transitions.

    Transitions out of ``pending`` are conditional updates: the ``WHERE``
    clause includes ``status = 'pending'`` and the caller learns from the
    returned flag whether it actually won the transition.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(self, upload: Upload) -> Upload:
        async with self._session_factory() as db:
            try:
                db.add(upload)
                await db.commit()
                await db.refresh(upload)
                return upload
            except SQLAlchemyError as e:
                await db.rollback()
                raise RecordStoreError(f"Upload insert failed: {str(e)}") from e

    async def get(self, upload_id: str) -> Optional[Upload]:
        async with self._session_factory() as db:
            try:
                result = await db.execute(select(Upload).where(Upload.id == upload_id))
                return result.scalar_one_or_none()
            except SQLAlchemyError as e:
                raise RecordStoreError(f"Upload lookup failed: {str(e)}") from e

    async def _transition(self, upload_id: str, values: dict) -> bool:
        async with self._session_factory() as db:
            try:
                result = await db.execute(
                    update(Upload)
                    .where(Upload.id == upload_id, Upload.status == UploadStatusEnum.pending)
                    .values(**values)
                )
                await db.commit()
                return result.rowcount == 1
            except SQLAlchemyError as e:
                await db.rollback()
                raise RecordStoreError(f"Upload status update failed: {str(e)}") from e

    async def update_approved(
        self,
        upload_id: str,
        reviewed_by: str,
        s3_key: str,
        backup_key: Optional[str],
        invalidation_id: Optional[str],
        invalidation_status: Optional[str],
    ) -> bool:
        return await self._transition(
            upload_id,
            {
                "status": UploadStatusEnum.approved,
                "reviewed_by": reviewed_by,
                "reviewed_at": utcnow(),
                "s3_key": s3_key,
                "backup_s3_key": backup_key,
                "cloudfront_inv_id": invalidation_id,
                "invalidation_status": invalidation_status,
                "temp_storage_key": None,
            },
        )

    async def update_rejected(self, upload_id: str, reviewed_by: str, reason: str) -> bool:
        return await self._transition(
            upload_id,
            {
                "status": UploadStatusEnum.rejected,
                "reviewed_by": reviewed_by,
                "reviewed_at": utcnow(),
                "rejection_reason": reason,
                "temp_storage_key": None,
            },
        )

    async def update_invalidation_status(self, upload_id: str, status: str) -> None:
        async with self._session_factory() as db:
            try:
                await db.execute(
                    update(Upload).where(Upload.id == upload_id).values(invalidation_status=status)
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise RecordStoreError(f"Invalidation status update failed: {str(e)}") from e

    async def list(
        self,
        status: Optional[str],
        page: int,
        page_size: int,
        sort_by: str = "uploaded_at",
        sort_dir: str = "desc",
    ) -> Page:
        column = UPLOAD_SORT_COLUMNS[sort_by]
        order = column.desc() if sort_dir == "desc" else column.asc()

        query = select(Upload)
        count_query = select(func.count()).select_from(Upload)
        if status:
            query = query.where(Upload.status == UploadStatusEnum(status))
            count_query = count_query.where(Upload.status == UploadStatusEnum(status))

        async with self._session_factory() as db:
            try:
                total = (await db.execute(count_query)).scalar_one()
                result = await db.execute(
                    query.order_by(order, Upload.id).offset((page - 1) * page_size).limit(page_size)
                )
                items = list(result.scalars().all())
            except SQLAlchemyError as e:
                raise RecordStoreError(f"Upload listing failed: {str(e)}") from e

        return Page(items=items, total=total, page=page, page_size=page_size)

    async def health_check(self) -> None:
        async with self._session_factory() as db:
            try:
                await db.execute(text("SELECT 1"))
            except SQLAlchemyError as e:
                raise RecordStoreError(f"Database ping failed: {str(e)}") from e


class BackupStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def save(self, meta: BackupMetadata) -> BackupMetadata:
        async with self._session_factory() as db:
            try:
                db.add(meta)
                await db.commit()
                await db.refresh(meta)
                return meta
            except SQLAlchemyError as e:
                await db.rollback()
                raise RecordStoreError(f"Backup metadata insert failed: {str(e)}") from e

    async def list_for_upload(self, upload_id: str) -> List[BackupMetadata]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(BackupMetadata)
                .where(BackupMetadata.upload_id == upload_id)
                .order_by(BackupMetadata.backup_date.desc())
            )
            return list(result.scalars().all())


class AuditLogStore:
    """Append-only audit trail. Nothing here updates or deletes entries."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def append(self, entry: AuditLog) -> AuditLog:
        async with self._session_factory() as db:
            try:
                db.add(entry)
                await db.commit()
                await db.refresh(entry)
                return entry
            except SQLAlchemyError as e:
                await db.rollback()
                raise RecordStoreError(f"Audit insert failed: {str(e)}") from e

    async def list(
        self,
        upload_id: Optional[str],
        action: Optional[str],
        user_id: Optional[str],
        page: int,
        page_size: int,
    ) -> Page:
        conditions = []
        if upload_id:
            conditions.append(AuditLog.upload_id == upload_id)
        if action:
            conditions.append(AuditLog.action == AuditActionEnum(action))
        if user_id:
            conditions.append(AuditLog.user_id == user_id)

        async with self._session_factory() as db:
            try:
                total = (
                    await db.execute(select(func.count()).select_from(AuditLog).where(*conditions))
                ).scalar_one()
                result = await db.execute(
                    select(AuditLog)
                    .where(*conditions)
                    .order_by(AuditLog.timestamp.desc(), AuditLog.id)
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
                items = list(result.scalars().all())
            except SQLAlchemyError as e:
                raise RecordStoreError(f"Audit listing failed: {str(e)}") from e

        return Page(items=items, total=total, page=page, page_size=page_size)

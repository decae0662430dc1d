# upload_review/db/models.py

from sqlalchemy import Column, String, BigInteger, DateTime, Enum, Text, JSON, Index
from .database import Base
from datetime import datetime, timezone
import enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UploadStatusEnum(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    # only ever set by an operator correcting a record by hand
    failed = "failed"


class AuditActionEnum(str, enum.Enum):
    upload = "upload"
    approve = "approve"
    reject = "reject"
    purge_cache = "purge_cache"


class AuditOutcomeEnum(str, enum.Enum):
    success = "success"
    failure = "failure"


INVALIDATION_IN_PROGRESS = "InProgress"
INVALIDATION_COMPLETED = "Completed"


class Upload(Base):
    __tablename__ = "uploads"

    id = Column(String(36), primary_key=True, default=new_id)
    file_name = Column(String(1024), nullable=False)
    file_size = Column(BigInteger, nullable=False, default=0)
    content_type = Column(String(255), nullable=True)
    file_checksum = Column(String(64), nullable=False)
    uploaded_by = Column(String(255), nullable=False)
    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    status = Column(Enum(UploadStatusEnum), nullable=False, default=UploadStatusEnum.pending, index=True)
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    s3_key = Column(String(1024), nullable=True)
    backup_s3_key = Column(String(1024), nullable=True)
    cloudfront_inv_id = Column(String(255), nullable=True)
    invalidation_status = Column(String(50), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    temp_storage_key = Column(String(255), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "content_type": self.content_type,
            "file_checksum": self.file_checksum,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "status": self.status.value if self.status else None,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "s3_key": self.s3_key,
            "backup_s3_key": self.backup_s3_key,
            "cloudfront_inv_id": self.cloudfront_inv_id,
            "invalidation_status": self.invalidation_status,
            "rejection_reason": self.rejection_reason,
            "temp_storage_key": self.temp_storage_key,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class BackupMetadata(Base):
    __tablename__ = "backups"

    id = Column(String(36), primary_key=True, default=new_id)
    upload_id = Column(String(36), nullable=False, index=True)
    original_s3_key = Column(String(1024), nullable=False)
    backup_s3_key = Column(String(1024), nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    backup_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_upload_action", "upload_id", "action"),)

    id = Column(String(36), primary_key=True, default=new_id)
    upload_id = Column(String(36), nullable=True, index=True)
    action = Column(Enum(AuditActionEnum), nullable=False)
    user_id = Column(String(255), nullable=True, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    status = Column(Enum(AuditOutcomeEnum), nullable=False)
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "upload_id": self.upload_id,
            "action": self.action.value,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "status": self.status.value,
            "details": self.details or {},
            "error_message": self.error_message,
        }

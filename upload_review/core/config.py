import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

DEFAULT_ALLOWED_EXTENSIONS = [".pdf", ".xlsx", ".xls", ".csv", ".doc", ".docx"]
DEFAULT_ALLOWED_MIME_TYPES = [
    "application/pdf",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/csv",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/zip",
    "application/octet-stream",
]


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _get_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class SlackSettings:
    enabled: bool = False
    webhook_url: Optional[str] = None
    channel: Optional[str] = None
    bot_name: str = "File Upload Service"
    notify_on_upload: bool = True
    notify_on_approve: bool = True
    notify_on_reject: bool = True
    notify_on_error: bool = True
    reviewers_mentions: str = ""
    dashboard_url: str = "http://localhost:3000/dashboard"


@dataclass
class Settings:
    """Service configuration, built once at startup and passed to whoever needs it."""

    database_url: str = "sqlite+aiosqlite:///./uploads.db"
    max_upload_size: int = 500 * 1024 * 1024
    temp_storage_ttl: int = 24 * 60 * 60

    # S3 / CDN
    s3_bucket: str = "local-static"
    s3_prefix: str = "imf/"
    aws_region: str = "eu-west-2"
    aws_endpoint_url: Optional[str] = None
    cloudfront_distribution_id: Optional[str] = None
    cloudflare_token: Optional[str] = None
    cloudflare_zone_id: Optional[str] = None

    # Ephemeral storage
    redis_url: Optional[str] = None
    redis_prefix: str = "imf:temp:"

    # Validation
    validation_enabled: bool = True
    allowed_extensions: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS))
    allowed_mime_types: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME_TYPES))

    # Auth
    service_auth_token: Optional[str] = None
    permission_check_url: Optional[str] = None

    # Operation budgets (seconds)
    submit_timeout: float = 120.0
    approve_timeout: float = 300.0
    default_timeout: float = 10.0
    health_timeout: float = 5.0

    log_level: str = "INFO"
    log_json: bool = True

    slack: SlackSettings = field(default_factory=SlackSettings)

    @property
    def cloudfront_enabled(self) -> bool:
        return bool(self.cloudfront_distribution_id)

    @property
    def cloudflare_enabled(self) -> bool:
        return bool(self.cloudflare_token and self.cloudflare_zone_id)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)
        defaults = cls()
        slack_defaults = SlackSettings()

        slack = SlackSettings(
            enabled=_get_bool("SLACK_ENABLED", slack_defaults.enabled),
            webhook_url=os.getenv("SLACK_WEBHOOK_URL") or None,
            channel=os.getenv("SLACK_CHANNEL") or None,
            bot_name=os.getenv("SLACK_BOT_NAME", slack_defaults.bot_name),
            notify_on_upload=_get_bool("SLACK_NOTIFY_ON_UPLOAD", slack_defaults.notify_on_upload),
            notify_on_approve=_get_bool("SLACK_NOTIFY_ON_APPROVE", slack_defaults.notify_on_approve),
            notify_on_reject=_get_bool("SLACK_NOTIFY_ON_REJECT", slack_defaults.notify_on_reject),
            notify_on_error=_get_bool("SLACK_NOTIFY_ON_ERROR", slack_defaults.notify_on_error),
            reviewers_mentions=os.getenv("SLACK_REVIEWERS_MENTIONS", ""),
            dashboard_url=os.getenv("SLACK_DASHBOARD_URL", slack_defaults.dashboard_url),
        )

        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            max_upload_size=_get_int("MAX_UPLOAD_SIZE", defaults.max_upload_size),
            temp_storage_ttl=_get_int("TEMP_STORAGE_TTL", defaults.temp_storage_ttl),
            s3_bucket=os.getenv("S3_BUCKET", defaults.s3_bucket),
            s3_prefix=os.getenv("S3_PREFIX", defaults.s3_prefix),
            aws_region=os.getenv("AWS_REGION", defaults.aws_region),
            aws_endpoint_url=os.getenv("AWS_ENDPOINT_URL") or None,
            cloudfront_distribution_id=os.getenv("CF_DIST_ID") or None,
            cloudflare_token=os.getenv("CLOUDFLARE_TOKEN") or None,
            cloudflare_zone_id=os.getenv("CLOUDFLARE_ZONE_ID") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            redis_prefix=os.getenv("REDIS_PREFIX", defaults.redis_prefix),
            validation_enabled=_get_bool("VALIDATION_ENABLED", defaults.validation_enabled),
            allowed_extensions=_get_list("ALLOWED_EXTENSIONS", defaults.allowed_extensions),
            allowed_mime_types=_get_list("ALLOWED_MIME_TYPES", defaults.allowed_mime_types),
            service_auth_token=os.getenv("SERVICE_AUTH_TOKEN") or None,
            permission_check_url=os.getenv("PERMISSION_CHECK_URL") or None,
            submit_timeout=_get_float("SUBMIT_TIMEOUT", defaults.submit_timeout),
            approve_timeout=_get_float("APPROVE_TIMEOUT", defaults.approve_timeout),
            default_timeout=_get_float("DEFAULT_TIMEOUT", defaults.default_timeout),
            health_timeout=_get_float("HEALTH_TIMEOUT", defaults.health_timeout),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
            log_json=_get_bool("LOG_JSON", defaults.log_json),
            slack=slack,
        )

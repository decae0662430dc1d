import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from upload_review.core.config import SlackSettings

EVENT_UPLOAD = "upload"
EVENT_APPROVE = "approve"
EVENT_REJECT = "reject"
EVENT_ERROR = "error"

FOOTER = "File Upload Service"


class NotificationError(Exception):
    pass


@dataclass
class NotificationEvent:
    type: str
    upload: Optional[Any] = None
    file_name: Optional[str] = None
    reviewed_by: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.upload is not None:
            return self.upload.file_name
        return self.file_name or "-"


def format_bytes(size: int) -> str:
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"


def _field(title: str, value: str, short: bool = True) -> Dict[str, Any]:
    return {"title": title, "value": value, "short": short}


class SlackNotifier:
    """Posts lifecycle events to a Slack incoming webhook."""

    def __init__(self, config: SlackSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    async def notify(self, event: NotificationEvent) -> None:
        if not self.config.enabled:
            return

        builders = {
            EVENT_UPLOAD: (self.config.notify_on_upload, self._upload_message),
            EVENT_APPROVE: (self.config.notify_on_approve, self._approve_message),
            EVENT_REJECT: (self.config.notify_on_reject, self._reject_message),
            EVENT_ERROR: (self.config.notify_on_error, self._error_message),
        }
        if event.type not in builders:
            raise NotificationError(f"unknown notification type: {event.type}")

        enabled, build = builders[event.type]
        if not enabled:
            return
        await self._send(build(event))

    def mentions(self) -> str:
        names = [m.strip() for m in self.config.reviewers_mentions.split(",") if m.strip()]
        return " ".join(f"<@{name}>" for name in names)

    def _message(self, attachment: Dict[str, Any], text: Optional[str] = None) -> Dict[str, Any]:
        attachment.setdefault("footer", FOOTER)
        attachment.setdefault("ts", int(time.time()))
        message = {
            "username": self.config.bot_name,
            "channel": self.config.channel,
            "attachments": [attachment],
        }
        if text:
            message["text"] = text
        return message

    def _upload_message(self, event: NotificationEvent) -> Dict[str, Any]:
        upload = event.upload
        mentions = self.mentions()
        return self._message(
            {
                "color": "#3366FF",
                "title": "📤 New File Upload Pending Review",
                "title_link": f"{self.config.dashboard_url}/review/{upload.id}",
                "fields": [
                    _field("File Name", upload.file_name),
                    _field("File Size", format_bytes(upload.file_size or 0)),
                    _field("Uploaded By", upload.uploaded_by or "-"),
                ],
            },
            text=f"{mentions} New file upload pending review".strip(),
        )

    def _approve_message(self, event: NotificationEvent) -> Dict[str, Any]:
        upload = event.upload
        return self._message(
            {
                "color": "#36a64f",
                "title": "✅ File Upload Approved",
                "title_link": f"{self.config.dashboard_url}/uploads/{upload.id}",
                "fields": [
                    _field("File Name", upload.file_name),
                    _field("Approved By", event.reviewed_by or "-"),
                    _field("S3 Key", f"`{upload.s3_key}`", short=False),
                ],
            }
        )

    def _reject_message(self, event: NotificationEvent) -> Dict[str, Any]:
        fields: List[Dict[str, Any]] = [
            _field("File Name", event.display_name),
            _field("Rejected By", event.reviewed_by or "-"),
            _field("Reason", event.reason or "", short=False),
        ]
        return self._message({"color": "#FF6B6B", "title": "❌ File Upload Rejected", "fields": fields})

    def _error_message(self, event: NotificationEvent) -> Dict[str, Any]:
        return self._message(
            {
                "color": "#FF0000",
                "title": "🚨 Upload Processing Error",
                "fields": [
                    _field("File Name", event.display_name),
                    _field("Error", f"`{event.error}`", short=False),
                ],
            }
        )

    async def _send(self, message: Dict[str, Any]) -> None:
        if not self.config.webhook_url:
            raise NotificationError("Slack webhook URL is not configured")

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=5.0) as client:
                resp = await client.post(self.config.webhook_url, json=message)
        except httpx.RequestError as e:
            raise NotificationError(f"Failed to reach Slack: {str(e)}") from e

        if resp.status_code != 200:
            raise NotificationError(f"slack webhook returned {resp.status_code}")

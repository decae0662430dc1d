import json

import httpx
import pytest

from upload_review.core.config import SlackSettings
from upload_review.db.models import Upload, UploadStatusEnum
from upload_review.service.notifications import (
    EVENT_APPROVE,
    EVENT_ERROR,
    EVENT_REJECT,
    EVENT_UPLOAD,
    NotificationError,
    NotificationEvent,
    SlackNotifier,
    format_bytes,
)

WEBHOOK = "https://hooks.slack.test/services/T000/B000/XXX"


def _settings(**overrides):
    values = dict(
        enabled=True,
        webhook_url=WEBHOOK,
        channel="#uploads",
        reviewers_mentions="U111, U222",
        dashboard_url="https://dash.test",
    )
    values.update(overrides)
    return SlackSettings(**values)


def _upload():
    return Upload(
        id="u-1",
        file_name="report.pdf",
        file_size=2048,
        uploaded_by="alice@example.com",
        status=UploadStatusEnum.approved,
        s3_key="report.pdf",
    )


class Recorder:
    def __init__(self, status_code=200):
        self.requests = []
        self.status_code = status_code

    def __call__(self, request):
        self.requests.append(request)
        return httpx.Response(self.status_code, text="ok")

    def payloads(self):
        return [json.loads(r.content) for r in self.requests]


async def test_upload_message_mentions_reviewers():
    recorder = Recorder()
    notifier = SlackNotifier(_settings(), transport=httpx.MockTransport(recorder))

    await notifier.notify(NotificationEvent(type=EVENT_UPLOAD, upload=_upload()))

    [payload] = recorder.payloads()
    assert str(recorder.requests[0].url) == WEBHOOK
    assert payload["channel"] == "#uploads"
    assert payload["text"].startswith("<@U111> <@U222>")
    attachment = payload["attachments"][0]
    assert attachment["title_link"] == "https://dash.test/review/u-1"
    assert {"title": "File Size", "value": "2.0 KB", "short": True} in attachment["fields"]


async def test_reject_message_without_upload_uses_file_name():
    recorder = Recorder()
    notifier = SlackNotifier(_settings(), transport=httpx.MockTransport(recorder))

    await notifier.notify(
        NotificationEvent(type=EVENT_REJECT, file_name="scan.pdf", reviewed_by="bob", reason="blurry")
    )

    fields = recorder.payloads()[0]["attachments"][0]["fields"]
    assert fields[0]["value"] == "scan.pdf"
    assert fields[2]["value"] == "blurry"


async def test_disabled_notifier_sends_nothing():
    recorder = Recorder()
    notifier = SlackNotifier(_settings(enabled=False), transport=httpx.MockTransport(recorder))

    await notifier.notify(NotificationEvent(type=EVENT_APPROVE, upload=_upload()))
    assert recorder.requests == []


async def test_per_event_flags():
    recorder = Recorder()
    notifier = SlackNotifier(_settings(notify_on_error=False), transport=httpx.MockTransport(recorder))

    await notifier.notify(NotificationEvent(type=EVENT_ERROR, file_name="x.csv", error="boom"))
    assert recorder.requests == []

    await notifier.notify(NotificationEvent(type=EVENT_APPROVE, upload=_upload(), reviewed_by="bob"))
    assert len(recorder.requests) == 1


async def test_unknown_event_type():
    notifier = SlackNotifier(_settings(), transport=httpx.MockTransport(Recorder()))
    with pytest.raises(NotificationError):
        await notifier.notify(NotificationEvent(type="deleted"))


async def test_webhook_error_status_raises():
    notifier = SlackNotifier(_settings(), transport=httpx.MockTransport(Recorder(status_code=500)))
    with pytest.raises(NotificationError):
        await notifier.notify(NotificationEvent(type=EVENT_APPROVE, upload=_upload()))


async def test_missing_webhook_raises():
    notifier = SlackNotifier(_settings(webhook_url=None))
    with pytest.raises(NotificationError):
        await notifier.notify(NotificationEvent(type=EVENT_APPROVE, upload=_upload()))


@pytest.mark.parametrize(
    "size, expected",
    [(0, "0 B"), (1023, "1023 B"), (1536, "1.5 KB"), (5 * 1024 * 1024, "5.0 MB")],
)
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected

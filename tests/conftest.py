import pytest

from fakes import FakeInvalidator, FakeNotifier, FakeObjectStore, FakePurger, ManualClock
from upload_review.core.config import Settings
from upload_review.db.database import create_engine, create_session_factory, init_models
from upload_review.db.db_utils import AuditLogStore, BackupStore, UploadRecordStore
from upload_review.service.temp_storage import InMemoryTempStorage
from upload_review.service.upload_service import UploadService
from upload_review.service.validation import FileValidator


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        max_upload_size=1024 * 1024,
        s3_bucket="test-bucket",
        s3_prefix="imf/",
        cloudfront_distribution_id="DIST123",
        cloudflare_token="cf-token",
        cloudflare_zone_id="zone-1",
        log_json=False,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/uploads.db")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def records(session_factory):
    return UploadRecordStore(session_factory)


@pytest.fixture
def audit(session_factory):
    return AuditLogStore(session_factory)


@pytest.fixture
def backups(session_factory):
    return BackupStore(session_factory)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def temp_storage(clock):
    return InMemoryTempStorage(clock=clock)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def invalidator():
    return FakeInvalidator()


@pytest.fixture
def purger():
    return FakePurger()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def service(settings, records, audit, backups, temp_storage, object_store, notifier, invalidator, purger, clock):
    return UploadService(
        settings=settings,
        records=records,
        audit=audit,
        backups=backups,
        temp_storage=temp_storage,
        object_store=object_store,
        notifier=notifier,
        invalidator=invalidator,
        purger=purger,
        validator=FileValidator(
            settings.max_upload_size,
            settings.allowed_extensions,
            settings.allowed_mime_types,
        ),
        clock=clock,
    )

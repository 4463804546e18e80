"""pytest 공용 fixture.

테스트마다 tmp_path 아래 파일 SQLite DB와 로컬 스토리지를 새로 만든다.
(워커 스레드가 다른 커넥션으로 같은 DB를 보므로 in-memory 대신 파일 DB를 쓴다)
- settings: 짧은 타임아웃을 준 Settings
- coordinator: 큐가 떠 있는 FileLifecycleCoordinator (테스트 후 shutdown)
- client: get_coordinator를 오버라이드한 TestClient (lifespan은 돌리지 않음)
"""

import io
import sys
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# src/ 디렉토리를 import path에 추가
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from core.config import Settings
from core.dependencies import get_coordinator
from main import app
from model.database import create_db_and_tables, make_engine
from model.record import FileRecord
from model.status import FileStatus, OptimizationStatus
from processor.transformer import PillowTransformer
from service.file_service import FileLifecycleCoordinator
from service.repository import SqlFileRepository
from service.storage import LocalStorageGateway
from service.url_fetcher import DownloadedFile


def make_png(width: int = 64, height: int = 48, color: str = "red", mode: str = "RGB") -> bytes:
    """테스트용 PNG 바이트를 메모리에서 생성한다."""
    buf = io.BytesIO()
    Image.new(mode, (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeFetcher:
    """URL → 미리 정한 응답. 호출된 URL을 기록한다."""

    def __init__(self, responses: dict[str, DownloadedFile] | None = None):
        self.responses = responses or {}
        self.calls: list[str] = []

    def download(self, url: str, max_bytes: int, max_duration: float) -> DownloadedFile:
        self.calls.append(url)
        return self.responses[url]


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        STORAGE_ROOT=str(tmp_path / "storage"),
        OPTIMIZATION_MAX_CONCURRENCY=2,
        OPTIMIZATION_QUEUE_TIMEOUT_SECONDS=5.0,
        OPTIMIZATION_JOB_TIMEOUT_SECONDS=10.0,
        OPTIMIZATION_DRAIN_TIMEOUT_SECONDS=5.0,
        STORAGE_RETRY_BACKOFF_SECONDS=0.0,
        DEDUP_WAIT_SECONDS=2.0,
        DEDUP_POLL_INTERVAL_SECONDS=0.01,
    )


@pytest.fixture()
def engine(settings):
    engine = make_engine(settings.DATABASE_URL)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def repository(engine):
    return SqlFileRepository(engine)


@pytest.fixture()
def storage(settings):
    return LocalStorageGateway(settings.STORAGE_ROOT, settings.STORAGE_BUCKET)


@pytest.fixture()
def fetcher():
    return FakeFetcher()


@pytest.fixture()
def make_coordinator(repository, storage, fetcher, settings):
    """transformer/settings를 바꿔 끼운 coordinator를 만든다. 테스트 후 모두 shutdown."""
    created = []

    def _make(transformer=None, **overrides):
        cfg = settings.model_copy(update=overrides) if overrides else settings
        coordinator = FileLifecycleCoordinator(
            repository=repository,
            storage=storage,
            transformer=transformer or PillowTransformer(),
            fetcher=fetcher,
            settings=cfg,
        )
        coordinator.start()
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        coordinator.shutdown(timeout=5.0)


@pytest.fixture()
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture()
def client(coordinator):
    """get_coordinator를 테스트용 coordinator로 오버라이드한 TestClient."""
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_record(**overrides) -> FileRecord:
    """리포지토리에 직접 넣을 레코드. 기본값은 READY 상태의 작은 PNG."""
    now = datetime.now(UTC)
    file_id = overrides.pop("id", uuid.uuid4().hex)
    values = dict(
        id=file_id,
        filename="sample.png",
        mime_type="image/png",
        size=100,
        original_mime_type="image/png",
        original_size=100,
        checksum=f"sha256:{uuid.uuid4().hex}",
        status=FileStatus.READY,
        optimization_status=OptimizationStatus.SKIPPED,
        status_changed_at=now,
        created_at=now,
        updated_at=now,
        storage_key=f"ab/cd/{file_id}.png",
        storage_bucket="media-files",
        uploaded_at=now,
    )
    values.update(overrides)
    return FileRecord(**values)


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """predicate()가 참이 될 때까지 기다린다. 시간 안에 안 되면 False."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()

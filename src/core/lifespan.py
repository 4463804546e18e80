from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from core.config import settings
from model.database import create_db_and_tables, make_engine
from processor.transformer import PillowTransformer
from service.file_service import FileLifecycleCoordinator
from service.repository import SqlFileRepository
from service.storage import LocalStorageGateway
from service.url_fetcher import HttpUrlFetcher
from utility.logger import setup_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    # === 시작 ===
    setup_logger(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION}")

    engine = make_engine(settings.DATABASE_URL)
    create_db_and_tables(engine)
    logger.info(f"Database ready ({settings.DATABASE_URL})")

    storage = LocalStorageGateway(settings.STORAGE_ROOT, settings.STORAGE_BUCKET)
    logger.info(f"Storage ready ({settings.STORAGE_ROOT}/{settings.STORAGE_BUCKET})")

    fetcher = HttpUrlFetcher(
        block_unsafe=settings.URL_UPLOAD_BLOCK_UNSAFE_CONNECTIONS,
        max_redirects=settings.URL_UPLOAD_MAX_REDIRECTS,
    )
    coordinator = FileLifecycleCoordinator(
        repository=SqlFileRepository(engine),
        storage=storage,
        transformer=PillowTransformer(),
        fetcher=fetcher,
        settings=settings,
    )
    # 큐를 띄우기 전에 지난 프로세스가 남긴 PENDING/PROCESSING부터 정리
    coordinator.recover_interrupted_jobs()
    if settings.CLEANUP_ENABLED:
        # 지난 프로세스가 UPLOADING/DELETING에 남긴 레코드는 다음 주기까지 기다리지 않는다
        coordinator.run_cleanup()
    coordinator.start()

    app.state.settings = settings
    app.state.coordinator = coordinator

    yield

    # === 종료 ===
    logger.info("Shutting down")
    report = coordinator.shutdown()
    if report.unfinished:
        logger.warning(f"{report.unfinished} optimization worker(s) still running at exit")
    fetcher.close()
    engine.dispose()

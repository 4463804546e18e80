import uvicorn
from fastapi import Depends, FastAPI

from core.config import settings
from core.dependencies import get_coordinator
from core.error_handlers import app_exception_handler
from core.exceptions import AppException
from core.lifespan import lifespan
from core.middleware import RequestLoggingMiddleware
from router.file_router import router as file_router
from service.file_service import FileLifecycleCoordinator

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="파일 업로드 · 중복 제거 · 비동기 이미지 최적화 서비스",
    lifespan=lifespan,
    root_path=settings.BASE_PATH,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_exception_handler(AppException, app_exception_handler)

app.include_router(file_router)


@app.get("/health")
def health(coordinator: FileLifecycleCoordinator = Depends(get_coordinator)):
    return {
        "status": "ok",
        "version": settings.APP_VERSION,
        "optimization": coordinator.health_snapshot(),
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        access_log=False,
    )

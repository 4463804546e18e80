from pydantic_settings import BaseSettings

MB = 1024 * 1024


class Settings(BaseSettings):
    # 앱 설정
    APP_NAME: str = "imagevault"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    BASE_PATH: str = ""

    # 서버 설정
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # DB 설정
    DATABASE_URL: str = "sqlite:///./imagevault.db"
    WRITE_CONFLICT_RETRIES: int = 5

    # 스토리지 (로컬 디렉터리 = 버킷)
    STORAGE_ROOT: str = "/app/storage"
    STORAGE_BUCKET: str = "media-files"
    STORAGE_RETRY_ATTEMPTS: int = 3
    STORAGE_RETRY_BACKOFF_SECONDS: float = 0.2

    # 업로드 제한
    IMAGE_MAX_BYTES_MB: int = 25
    MAX_FILE_SIZE_MB: int = 100

    # 최적화 큐
    OPTIMIZATION_ENABLED: bool = True
    OPTIMIZATION_MAX_CONCURRENCY: int = 4
    OPTIMIZATION_QUEUE_TIMEOUT_SECONDS: float = 30.0
    OPTIMIZATION_JOB_TIMEOUT_SECONDS: float = 60.0
    OPTIMIZATION_DRAIN_TIMEOUT_SECONDS: float = 30.0

    # 압축 기본값
    FORCE_IMAGE_COMPRESSION: bool = False
    IMAGE_COMPRESSION_FORMAT: str = "webp"
    IMAGE_COMPRESSION_QUALITY: int = 80
    IMAGE_COMPRESSION_MAX_DIMENSION: int = 3840
    IMAGE_COMPRESSION_LOSSLESS: bool = False
    IMAGE_COMPRESSION_STRIP_METADATA: bool = False
    IMAGE_COMPRESSION_AUTO_ORIENT: bool = True

    # 썸네일
    THUMBNAIL_FORMAT: str = "webp"
    THUMBNAIL_MAX_WIDTH: int = 2048
    THUMBNAIL_MAX_HEIGHT: int = 2048
    THUMBNAIL_QUALITY: int = 80

    # URL 업로드
    URL_UPLOAD_BLOCK_UNSAFE_CONNECTIONS: bool = True
    URL_UPLOAD_TIMEOUT_SECONDS: float = 15.0
    URL_UPLOAD_MAX_BYTES_MB: int = 25
    URL_UPLOAD_MAX_REDIRECTS: int = 3

    # 중복 제거
    DEDUP_WAIT_SECONDS: float = 5.0
    DEDUP_POLL_INTERVAL_SECONDS: float = 0.05
    DEDUP_CLAIM_ATTEMPTS: int = 3

    # 문제 탐지 기준
    STUCK_UPLOADING_MINUTES: int = 30
    STUCK_DELETING_MINUTES: int = 30
    PROBLEM_SCAN_BATCH_SIZE: int = 200

    # 정리 작업 (stale 기준은 위 STUCK_* 를 같이 쓴다)
    CLEANUP_ENABLED: bool = True
    CLEANUP_INTERVAL_MINUTES: int = 360
    CLEANUP_BAD_STATUS_TTL_DAYS: int = 30
    CLEANUP_THUMBNAILS_TTL_DAYS: int = 90
    CLEANUP_BATCH_SIZE: int = 200

    @property
    def image_max_bytes(self) -> int:
        return self.IMAGE_MAX_BYTES_MB * MB

    @property
    def max_file_bytes(self) -> int:
        return max(self.MAX_FILE_SIZE_MB, self.IMAGE_MAX_BYTES_MB) * MB

    @property
    def url_upload_max_bytes(self) -> int:
        return self.URL_UPLOAD_MAX_BYTES_MB * MB

    @property
    def stuck_optimization_seconds(self) -> float:
        """큐 대기 + 실행 시간을 모두 넘긴 작업만 '멈춤'으로 본다."""
        return self.OPTIMIZATION_QUEUE_TIMEOUT_SECONDS + self.OPTIMIZATION_JOB_TIMEOUT_SECONDS

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()

"""앱 전역 커스텀 예외 클래스.

AppException을 상속하면 전역 핸들러(error_handlers.py)가 자동으로
{"error_code": "...", "message": "..."} 형식의 JSON 응답을 생성한다.
코어 계층도 같은 예외를 그대로 던진다 (HTTP 계층 없이도 의미가 통하도록).
"""


class AppException(Exception):
    """앱 전역 베이스 예외.

    서브클래스에서 status_code, error_code, message를 클래스 변수로 정의하면
    전역 핸들러가 해당 값을 읽어 HTTP 응답을 생성한다.
    errors는 필드 단위 검증 오류 목록 (없으면 None).
    """

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    message: str = "서버 내부 오류가 발생했습니다"

    def __init__(self, message: str | None = None, errors: list[dict] | None = None):
        if message:
            self.message = message
        self.errors = errors
        super().__init__(self.message)


# --- 입력 검증 ---


class ValidationFailed(AppException):
    status_code = 422
    error_code = "VALIDATION_FAILED"
    message = "요청 값이 올바르지 않습니다"


class FileTooLarge(ValidationFailed):
    status_code = 413
    error_code = "FILE_TOO_LARGE"
    message = "파일 크기가 허용 한도를 넘었습니다"


# --- 조회 ---


class FileNotFound(AppException):
    status_code = 404
    error_code = "FILE_NOT_FOUND"
    message = "파일을 찾을 수 없습니다"


# --- 충돌 ---


class Conflict(AppException):
    status_code = 409
    error_code = "CONFLICT"
    message = "현재 상태에서는 요청을 처리할 수 없습니다"


class InvalidTransition(Conflict):
    error_code = "INVALID_TRANSITION"
    message = "허용되지 않는 상태 전이입니다"


class ConcurrentModification(Conflict):
    error_code = "CONCURRENT_MODIFICATION"
    message = "다른 요청이 먼저 레코드를 수정했습니다"


class ChecksumTaken(Conflict):
    error_code = "CHECKSUM_TAKEN"
    message = "같은 내용의 파일이 이미 존재합니다"


# --- 최적화 큐 ---


class DuplicateJob(Conflict):
    error_code = "DUPLICATE_JOB"
    message = "이 파일의 최적화 작업이 이미 대기 중이거나 실행 중입니다"


class QueueTimeout(AppException):
    status_code = 503
    error_code = "QUEUE_TIMEOUT"
    message = "작업 대기 시간이 초과되었습니다"


class QueueClosed(QueueTimeout):
    error_code = "QUEUE_CLOSED"
    message = "작업 큐가 종료 중입니다"


class ProcessingFailed(AppException):
    status_code = 422
    error_code = "PROCESSING_FAILED"
    message = "이미지 처리에 실패했습니다"


class JobCancelled(ProcessingFailed):
    error_code = "JOB_CANCELLED"
    message = "작업이 취소되었습니다"


# --- 스토리지 ---


class StorageFailure(AppException):
    status_code = 502
    error_code = "STORAGE_ERROR"
    message = "스토리지 입출력에 실패했습니다"


class StorageObjectNotFound(AppException):
    status_code = 404
    error_code = "STORAGE_OBJECT_NOT_FOUND"
    message = "스토리지에 객체가 없습니다"


# --- URL 다운로드 ---


class DownloadFailed(AppException):
    status_code = 400
    error_code = "DOWNLOAD_FAILED"
    message = "URL에서 파일을 받지 못했습니다"


class UrlNotAllowed(DownloadFailed):
    error_code = "URL_NOT_ALLOWED"
    message = "허용되지 않는 URL입니다"


class DownloadTooLarge(DownloadFailed):
    status_code = 413
    error_code = "DOWNLOAD_TOO_LARGE"
    message = "다운로드 크기가 허용 한도를 넘었습니다"


class DownloadTimeout(DownloadFailed):
    status_code = 504
    error_code = "DOWNLOAD_TIMEOUT"
    message = "다운로드 시간이 초과되었습니다"

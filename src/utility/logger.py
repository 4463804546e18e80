import sys

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{thread.name}</cyan> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "{extra[request_id]} | "
    "<level>{message}</level>"
)


def setup_logger(level: str = "DEBUG", json_logs: bool = False):
    """Loguru 기본 설정. 앱 시작 시 한 번 호출.

    json_logs=True면 한 줄 JSON(serialize)으로 내보낸다 (로그 수집기용).
    워커 스레드 이름과 요청 ID(미들웨어가 contextualize)를 함께 찍는다.
    """
    logger.remove()
    # 요청 밖(워커 스레드 등)에서 찍힌 로그에도 request_id 키가 있어야 포맷이 깨지지 않는다
    logger.configure(extra={"request_id": "-"})
    if json_logs:
        logger.add(sys.stderr, serialize=True, level=level.upper())
    else:
        logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level.upper())
    return logger

import sys

from loguru import logger

from core.config import settings


def setup_logger(level: str | None = None):
    """Loguru 기본 설정. 앱 시작 시 한 번 호출.

    request_id는 RequestLoggingMiddleware가 contextualize로 채운다.
    """
    logger.remove()
    logger.configure(extra={"request_id": "-"})
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<magenta>{extra[request_id]}</magenta> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        level=level or settings.LOG_LEVEL,
        backtrace=settings.DEBUG,
        diagnose=settings.DEBUG,
    )
    return logger

"""일시적 네트워크 오류용 재시도 헬퍼.

재시도 예산은 벤더가 아니라 호출부가 가진다.
기본값: 최대 3회, 0.5s → 1s (상한 2s) 지수 백오프.
"""

import time
from collections.abc import Callable
from typing import TypeVar

import httpx
from loguru import logger

from core.config import settings

T = TypeVar("T")

# 연결/읽기 타임아웃, DNS 실패 등 요청이 벤더에 도달하지 못한 경우
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (httpx.TransportError,)


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """attempt는 1부터 시작. base * 2^(attempt-1), cap으로 상한."""
    return min(base * (2 ** (attempt - 1)), cap)


def call_with_retry(
    func: Callable[..., T],
    *args,
    attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    retry_on: tuple[type[Exception], ...] = TRANSIENT_ERRORS,
    label: str = "",
    **kwargs,
) -> T:
    """func를 호출하고 retry_on 예외면 백오프 후 재시도한다.

    마지막 시도까지 실패하면 원래 예외를 그대로 올린다.
    """
    attempts = attempts or settings.RETRY_ATTEMPTS
    base_delay = settings.RETRY_BASE_DELAY if base_delay is None else base_delay
    max_delay = settings.RETRY_MAX_DELAY if max_delay is None else max_delay

    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except retry_on as exc:
            if attempt == attempts:
                logger.warning(f"{label or func.__name__} failed after {attempts} attempts: {exc}")
                raise
            delay = compute_backoff(attempt, base_delay, max_delay)
            logger.warning(
                f"{label or func.__name__} attempt {attempt}/{attempts} failed: {exc}; "
                f"retrying in {delay:.2f}s"
            )
            time.sleep(delay)

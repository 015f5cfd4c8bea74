"""시간 관련 유틸리티: 처리 시간 측정, UTC 시각."""

import time
from contextlib import contextmanager
from datetime import UTC, datetime

from loguru import logger


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite는 tzinfo 없이 datetime을 돌려주므로 UTC로 간주해 붙인다."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@contextmanager
def timer(label: str = ""):
    """컨텍스트 매니저: 블록 실행 시간을 측정한다.

    사용법:
        with timer("monitor sweep") as t:
            ...
        print(t.elapsed_ms)
    """
    t = _TimerResult()
    start = time.perf_counter()
    try:
        yield t
    finally:
        t.elapsed = time.perf_counter() - start
        if label:
            logger.info(f"[{label}] {t.elapsed_ms:.0f}ms")


class _TimerResult:
    elapsed: float = 0.0

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000

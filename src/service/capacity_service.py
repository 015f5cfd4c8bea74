"""벤더 계정 잔액 게이트.

사용자 크레딧과 별개로, KIE 계정 자체의 잔액이 임계값 아래로 떨어지면
새 생성 요청을 점검 모드(503)로 막는다.
"""

from loguru import logger

from client.base import TaskClientError
from client.registry import TaskClients
from core.config import settings
from core.exceptions import ServiceUnavailable


def ensure_vendor_capacity(clients: TaskClients) -> None:
    if not settings.CAPACITY_CHECK_ENABLED:
        return

    try:
        balance = clients.kie.get_account_credits()
    except TaskClientError as exc:
        logger.error(f"Vendor capacity check failed: {exc}")
        raise ServiceUnavailable from exc

    if balance < settings.KIE_CREDIT_THRESHOLD:
        logger.warning(f"KIE balance {balance} below threshold {settings.KIE_CREDIT_THRESHOLD}, rejecting new work")
        raise ServiceUnavailable

import hmac

from fastapi import Depends, Header, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from client.registry import TaskClients
from core.config import settings
from core.exceptions import Forbidden, InvalidToken, Unauthorized
from core.security import user_id_from_token

# HTTPBearer:
# - Swagger UI에 "Authorize" 버튼을 자동 생성
# - 요청 헤더에서 "Authorization: Bearer <token>"을 추출
# - auto_error=False로 두고 헤더가 없을 때도 우리 에러 형식(UNAUTHORIZED)으로 응답한다
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """Clerk 세션 토큰에서 사용자 id를 꺼낸다.

    흐름:
    1. HTTPBearer가 헤더에서 토큰 추출 (없으면 401 UNAUTHORIZED)
    2. verify_token으로 서명 검증 + 만료 확인
    3. payload["sub"]가 사용자 id (없으면 401 INVALID_TOKEN)
    """
    if credentials is None:
        raise Unauthorized

    user_id = user_id_from_token(credentials.credentials)
    if not user_id:
        raise InvalidToken
    return user_id


def get_task_clients(request: Request) -> TaskClients:
    """lifespan에서 만든 벤더 클라이언트 묶음."""
    return request.app.state.task_clients


def require_monitor_secret(
    x_monitor_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    """cron 호출 보호. MONITOR_SECRET이 비어 있으면 검사하지 않는다.

    X-Monitor-Secret 헤더 또는 "Authorization: Bearer <secret>" 둘 다 받는다.
    """
    if not settings.MONITOR_SECRET:
        return

    provided = x_monitor_secret
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization.removeprefix("Bearer ")
    if not provided:
        raise Unauthorized
    if not hmac.compare_digest(provided, settings.MONITOR_SECRET):
        raise Forbidden("모니터 호출 비밀값이 올바르지 않습니다")


def require_webhook_secret(token: str | None = Query(default=None)) -> None:
    """벤더 콜백 보호. WEBHOOK_SECRET이 비어 있으면 검사하지 않는다.

    콜백 주소에 붙여 보낸 ?token= 값이 그대로 돌아와야 한다.
    """
    if not settings.WEBHOOK_SECRET:
        return
    if not token:
        raise Unauthorized
    if not hmac.compare_digest(token, settings.WEBHOOK_SECRET):
        raise Forbidden("웹훅 비밀값이 올바르지 않습니다")

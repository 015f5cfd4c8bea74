import time
from uuid import uuid4

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

SLOW_THRESHOLD_MS = 500


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """모든 HTTP 요청을 로깅하는 미들웨어.

    기록 항목: 메서드, 경로, 클라이언트 IP, 상태코드, 처리시간(ms)
    처리시간이 500ms를 초과하면 WARNING 레벨로 기록.
    요청마다 request_id를 붙여 그 요청 안의 모든 로그에 실리게 하고,
    X-Request-ID 응답 헤더로 돌려준다.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid4().hex[:12]
        start = time.perf_counter()

        with logger.contextualize(request_id=request_id):
            response = await call_next(request)

            elapsed_ms = (time.perf_counter() - start) * 1000
            client_ip = request.client.host if request.client else "unknown"
            method = request.method
            path = request.url.path
            status = response.status_code

            if elapsed_ms > SLOW_THRESHOLD_MS:
                logger.warning(
                    f"{method} {path} | {client_ip} | {status} | {elapsed_ms:.0f}ms (slow)"
                )
            else:
                logger.info(
                    f"{method} {path} | {client_ip} | {status} | {elapsed_ms:.0f}ms"
                )

        response.headers["X-Request-ID"] = request_id
        return response

"""전역 예외 핸들러.

AppException 계열 예외와 요청 검증 오류를 잡아 일관된 JSON 응답으로 변환한다.
main.py에서 app.add_exception_handler()로 등록한다.
"""

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.exceptions import AppException, ValidationFailed


def _error_body(exc: AppException) -> dict:
    body = {"error_code": exc.error_code, "error": exc.message}
    if exc.details is not None:
        body["details"] = exc.details
    return body


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # pydantic 오류의 ctx에는 직렬화 불가능한 객체가 섞일 수 있어 loc/msg만 남긴다
    details = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    error = ValidationFailed(details=details)
    return JSONResponse(status_code=error.status_code, content=_error_body(error))

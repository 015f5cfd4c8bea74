import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from core.config import settings
from core.error_handlers import app_exception_handler, validation_exception_handler
from core.exceptions import AppException
from core.lifespan import lifespan
from core.middleware import RequestLoggingMiddleware
from router.credit_router import router as credit_router
from router.monitor_router import router as monitor_router
from router.project_router import router as project_router
import model.credit  # noqa: F401  테이블 등록
import model.project  # noqa: F401  테이블 등록

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="크레딧 과금형 AI 광고 생성 워크플로우 백엔드",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

app.include_router(project_router)
app.include_router(credit_router)
app.include_router(monitor_router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "webhooks_enabled": bool(settings.PUBLIC_BASE_URL),
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        access_log=False,
    )

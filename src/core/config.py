from urllib.parse import urlencode

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # 앱 설정
    APP_NAME: str = "adflow"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # 서버 설정
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # DB 설정 (로컬: SQLite, 운영: PostgreSQL)
    DATABASE_URL: str = "sqlite:///./adflow.db"
    DB_BUSY_TIMEOUT_SECONDS: float = 30.0

    # 세션 토큰 검증 (Clerk가 발급한 JWT, sub = user id)
    JWT_SECRET_KEY: str = "dev-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_PUBLIC_KEY: str | None = None  # RS256 사용 시 PEM 공개키
    JWT_EXPIRE_MINUTES: int = 30

    # 크레딧
    INITIAL_CREDITS: int = 100

    # 외부 AI 벤더
    KIE_API_KEY: str = ""
    KIE_BASE_URL: str = "https://api.kie.ai"
    KIE_CREDIT_THRESHOLD: int = 600
    CAPACITY_CHECK_ENABLED: bool = True
    FAL_KEY: str = ""
    FAL_QUEUE_URL: str = "https://queue.fal.run"
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODEL: str = "google/gemini-2.0-flash-001"

    # 웹훅 콜백 주소. 비어 있으면 모니터 폴링만 사용
    PUBLIC_BASE_URL: str = ""
    # 설정하면 콜백 주소에 ?token=<secret>을 붙이고, 웹훅은 같은 값이 있어야 받는다
    WEBHOOK_SECRET: str = ""

    # 벤더 호출 타임아웃/재시도 (호출부가 재시도 예산을 가진다)
    VENDOR_TIMEOUT_SECONDS: float = 30.0
    RETRY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.5
    RETRY_MAX_DELAY: float = 2.0

    # 모니터 (cron이 POST /api/monitor-tasks 호출)
    MONITOR_SECRET: str = ""
    MONITOR_BATCH_SIZE: int = 20
    MONITOR_DEBOUNCE_SECONDS: int = 30
    # 선점 후 task id가 저장되기 전까지 다른 트리거가 같은 단계를 다시 제출하지 못하는 시간
    SUBMIT_LEASE_SECONDS: int = 120

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    def callback_url(self, path: str) -> str | None:
        if not self.PUBLIC_BASE_URL:
            return None
        url = f"{self.PUBLIC_BASE_URL.rstrip('/')}{path}"
        if self.WEBHOOK_SECRET:
            url += f"?{urlencode({'token': self.WEBHOOK_SECRET})}"
        return url

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()

from datetime import UTC, datetime, timedelta

import jwt

from core.config import settings

# --- 세션 토큰 (Clerk) ---
# 인증 자체는 Clerk가 담당하고, 서버는 Bearer 토큰의 서명/만료만 검증한다.
# Payload의 sub = Clerk user id (예: "user_2abc...")
#
# HS256: JWT_SECRET_KEY 공유 비밀키 (로컬/테스트)
# RS256: JWT_PUBLIC_KEY (Clerk 인스턴스의 PEM 공개키)


def _verification_key() -> str:
    if settings.JWT_ALGORITHM.startswith("RS") and settings.JWT_PUBLIC_KEY:
        return settings.JWT_PUBLIC_KEY
    return settings.JWT_SECRET_KEY


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """HS256 세션 토큰을 생성한다. 로컬 개발과 테스트용.

    Args:
        data: 토큰에 담을 데이터 (보통 {"sub": user_id})
        expires_delta: 만료 시간. None이면 설정값 사용.
    """
    payload = data.copy()
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=settings.JWT_EXPIRE_MINUTES)
    )
    payload["exp"] = expire
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm="HS256")


def verify_token(token: str) -> dict | None:
    """세션 토큰을 검증하고 payload를 반환한다.

    유효하지 않거나 만료된 토큰이면 None을 반환.
    """
    try:
        return jwt.decode(
            token, _verification_key(), algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.PyJWTError:
        return None


def user_id_from_token(token: str) -> str | None:
    payload = verify_token(token)
    if not payload:
        return None
    subject = payload.get("sub")
    return subject if isinstance(subject, str) and subject else None

"""앱 전역 커스텀 예외 클래스.

AppException을 상속하면 전역 핸들러(error_handlers.py)가 자동으로
{"error_code": "...", "error": "...", "details": ...} 형식의 JSON 응답을 생성한다.
"""


class AppException(Exception):
    """앱 전역 베이스 예외.

    서브클래스에서 status_code, error_code, message를 클래스 변수로 정의하면
    전역 핸들러가 해당 값을 읽어 HTTP 응답을 생성한다.
    details는 선택 항목으로, 있으면 응답에 그대로 실린다.
    """

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    message: str = "서버 내부 오류가 발생했습니다"

    def __init__(self, message: str | None = None, details=None):
        if message:
            self.message = message
        self.details = details
        super().__init__(self.message)


# --- 인증 관련 ---


class InvalidToken(AppException):
    status_code = 401
    error_code = "INVALID_TOKEN"
    message = "유효하지 않거나 만료된 토큰입니다"


class Unauthorized(AppException):
    status_code = 401
    error_code = "UNAUTHORIZED"
    message = "인증이 필요합니다"


class Forbidden(AppException):
    status_code = 403
    error_code = "FORBIDDEN"
    message = "접근 권한이 없습니다"


# --- 요청 검증 ---


class ValidationFailed(AppException):
    status_code = 400
    error_code = "VALIDATION_ERROR"
    message = "요청 값이 올바르지 않습니다"


class UnknownWorkflow(AppException):
    status_code = 400
    error_code = "UNKNOWN_WORKFLOW"
    message = "지원하지 않는 워크플로우입니다"


class UnsupportedRegeneration(AppException):
    status_code = 400
    error_code = "UNSUPPORTED_REGENERATION"
    message = "이 워크플로우에서 다시 생성할 수 없는 항목입니다"


# --- 크레딧 ---


class InsufficientCredits(AppException):
    status_code = 402
    error_code = "INSUFFICIENT_CREDITS"
    message = "크레딧이 부족합니다"


class CreditsNotInitialized(AppException):
    status_code = 409
    error_code = "CREDITS_NOT_INITIALIZED"
    message = "크레딧이 초기화되지 않았습니다. 페이지를 새로고침한 뒤 다시 시도하세요"


# --- 프로젝트(워크플로우 레코드) ---


class ProjectNotFound(AppException):
    status_code = 404
    error_code = "PROJECT_NOT_FOUND"
    message = "프로젝트를 찾을 수 없습니다"


class InvalidStep(AppException):
    status_code = 409
    error_code = "INVALID_STEP"
    message = "현재 단계에서 실행할 수 없는 작업입니다"


class InvalidProjectState(AppException):
    status_code = 409
    error_code = "INVALID_PROJECT_STATE"
    message = "프로젝트 상태가 요청을 처리할 수 없는 상태입니다"


class NotAwaitingReview(AppException):
    status_code = 409
    error_code = "NOT_AWAITING_REVIEW"
    message = "검토 대기 상태가 아닌 프로젝트입니다"


class MergeNotReady(AppException):
    status_code = 409
    error_code = "MERGE_NOT_READY"
    message = "세그먼트 렌더링이 아직 끝나지 않았습니다"


class MergeInProgress(AppException):
    status_code = 409
    error_code = "MERGE_IN_PROGRESS"
    message = "이미 병합이 진행 중입니다"


class SegmentNotFound(AppException):
    status_code = 404
    error_code = "SEGMENT_NOT_FOUND"
    message = "세그먼트를 찾을 수 없습니다"


class SegmentInProgress(AppException):
    status_code = 409
    error_code = "SEGMENT_IN_PROGRESS"
    message = "세그먼트 영상이 아직 생성 중입니다. 끝난 뒤 다시 시도하세요"


class StepFailed(AppException):
    status_code = 500
    error_code = "STEP_FAILED"
    message = "생성 단계가 실패했습니다"


# --- 외부 벤더 ---


class ServiceUnavailable(AppException):
    status_code = 503
    error_code = "MAINTENANCE_MODE"
    message = "AI 생성 서비스가 점검 중입니다. 잠시 후 다시 시도하세요"

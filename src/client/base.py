"""외부 AI 작업 클라이언트 공통 계약.

벤더마다 요청 형식은 다르지만 워크플로우 엔진이 보는 면은 두 가지뿐이다.
- submit(task_kind, payload) -> task_id : 완료를 기다리지 않는다
- poll(task_kind, task_id) -> TaskStatus : 몇 번을 호출해도 안전하다

오류 구분:
- TaskSubmissionFailed : 제출 실패 (HTTP 오류, 벤더 거절). 단계 실패로 처리
- TransientTaskError   : 조회 중 네트워크/일시 오류. 워크플로우 상태를 바꾸지 않고 다음에 재시도
- 벤더가 명시적으로 실패를 보고하면 예외가 아니라 TaskStatus(state=FAILED)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum


class TaskState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskStatus:
    state: TaskState
    result_url: str | None = None
    error_detail: str | None = None
    result_urls: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in (TaskState.SUCCEEDED, TaskState.FAILED)


class TaskClientError(Exception):
    """벤더 연동 계층의 베이스 예외."""


class TaskSubmissionFailed(TaskClientError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class TransientTaskError(TaskClientError):
    pass


class UnsupportedTaskKind(TaskClientError):
    pass


class TaskClient(ABC):
    """비동기 생성 작업을 제출/조회하는 벤더 클라이언트."""

    name: str = ""
    task_kinds: tuple[str, ...] = ()

    @abstractmethod
    def submit(self, task_kind: str, payload: dict) -> str: ...

    @abstractmethod
    def poll(self, task_kind: str, task_id: str) -> TaskStatus: ...

    def close(self) -> None:
        pass

    def _check_kind(self, task_kind: str) -> None:
        if task_kind not in self.task_kinds:
            raise UnsupportedTaskKind(f"{self.name} does not handle task kind '{task_kind}'")

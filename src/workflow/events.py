from dataclasses import dataclass

from client.base import TaskState, TaskStatus


@dataclass(frozen=True)
class TaskObserved:
    """외부 작업 상태를 관측한 사건.

    웹훅 수신과 모니터 폴링 모두 이 이벤트로 바뀌어 StepExecutor.observe 하나로 처리된다.
    """

    task_id: str
    state: TaskState
    result_url: str | None = None
    error: str | None = None
    source: str = "poll"  # poll, webhook

    @classmethod
    def from_status(cls, task_id: str, status: TaskStatus, source: str = "poll") -> "TaskObserved":
        return cls(
            task_id=task_id,
            state=status.state,
            result_url=status.result_url,
            error=status.error_detail,
            source=source,
        )

    @property
    def succeeded(self) -> bool:
        return self.state == TaskState.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.state == TaskState.FAILED

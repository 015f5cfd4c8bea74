"""워크플로우 단계 테이블.

변형(standard_ads, character_ads ...)마다 오케스트레이터를 따로 두지 않고,
StepDefinition 목록 하나로 단계 순서, 비용, 부작용을 기술한다.
StepExecutor는 이 테이블만 보고 동작한다.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlmodel import Session

from client.registry import TaskClients
from core.exceptions import InvalidStep
from model.project import STEP_COMPLETED, Project, Segment
from utility.timer import as_utc
from workflow.events import TaskObserved


@dataclass
class StepContext:
    clients: TaskClients
    session: Session


def _no_cost(record: Project) -> int:
    return 0


def _never(record: Project) -> bool:
    return False


@dataclass
class StepDefinition:
    """파이프라인 한 단계.

    - run이 있으면 동기 단계: 요청 안에서 바로 실행하고 필드 변경분(dict)을 돌려준다
    - client/task_kind가 있으면 비동기 단계: payload를 제출하고 task_field에 task id를 남긴다
    - fan_out(record)가 True면 세그먼트 N개로 나눠 제출한다 (segment_payload 사용)
    - output_fields가 모두 채워져 있으면 이미 끝난 단계로 보고 다시 실행하지 않는다
    """

    name: str
    progress: int
    output_fields: tuple[str, ...]
    run: Callable[[StepContext, Project], dict] | None = None
    client: str | None = None
    task_kind: str | None = None
    task_field: str | None = None
    payload: Callable[[StepContext, Project], dict] | None = None
    on_result: Callable[[Project, TaskObserved], dict] | None = None
    segment_plans: Callable[[Project], list[dict]] | None = None
    segment_payload: Callable[[StepContext, Project, Segment], dict] | None = None
    fan_out: Callable[[Project], bool] = _never
    cost: Callable[[Project], int] = _no_cost
    skip: Callable[[Project], bool] = _never
    guard: Callable | None = None  # (session, record) -> None, 전제 조건 위반 시 AppException
    reset_fields: tuple[str, ...] = ()
    stale_after: int = 900

    @property
    def is_async(self) -> bool:
        return self.client is not None

    def fans_out(self, record: Project) -> bool:
        return self.is_async and self.fan_out(record)

    def outputs_present(self, record: Project) -> bool:
        return all(getattr(record, name) for name in self.output_fields)

    def in_flight(self, record: Project, now: datetime, lease_seconds: int) -> bool:
        """작업이 이미 제출됐거나, 선점 직후 제출 중이면 True.

        선점(step_started_at)은 task id보다 먼저 커밋되므로 그 사이에 들어온
        트리거는 lease 동안 선점을 존중한다. lease가 지난 선점은 제출 전에
        죽은 것으로 보고 다시 실행할 수 있다.
        """
        if not self.is_async:
            return False
        if self.fans_out(record):
            if record.segment_status is not None:
                return True
        elif getattr(record, self.task_field):
            return True
        return self.claim_held(record, now, lease_seconds)

    def claim_held(self, record: Project, now: datetime, lease_seconds: int) -> bool:
        started = as_utc(record.step_started_at)
        return started is not None and now - started < timedelta(seconds=lease_seconds)


@dataclass
class WorkflowDefinition:
    name: str
    label: str
    steps: list[StepDefinition]
    required_outputs: Callable[[Project], tuple[str, ...]]
    review_after: str | None = None
    regenerate_targets: dict[str, str] = field(default_factory=dict)
    validate: Callable[[dict], None] | None = None

    def step(self, name: str) -> StepDefinition:
        for step in self.steps:
            if step.name == name:
                return step
        raise InvalidStep(f"{self.name} 워크플로우에 없는 단계입니다: {name}")

    def active_steps(self, record: Project) -> list[StepDefinition]:
        return [step for step in self.steps if not step.skip(record)]

    def first_step(self, record: Project) -> str:
        steps = self.active_steps(record)
        return steps[0].name if steps else STEP_COMPLETED

    def next_step(self, record: Project, name: str) -> str:
        names = [step.name for step in self.steps]
        for step in self.steps[names.index(name) + 1 :]:
            if not step.skip(record):
                return step.name
        return STEP_COMPLETED

    def previous_progress(self, name: str) -> int:
        """name 단계에 들어가기 직전의 진행률 (재생성 시 되돌릴 값)."""
        names = [step.name for step in self.steps]
        index = names.index(name)
        return self.steps[index - 1].progress if index > 0 else 0

    def missing_before(self, record: Project, name: str) -> list[str]:
        """name 앞의 활성 단계 중 산출물이 비어 있는 단계 이름."""
        names = [step.name for step in self.steps]
        return [
            step.name
            for step in self.steps[: names.index(name)]
            if not step.skip(record) and not step.outputs_present(record)
        ]

    def suffix(self, name: str) -> list[StepDefinition]:
        names = [step.name for step in self.steps]
        return self.steps[names.index(name) :]

    def total_cost(self, record: Project) -> int:
        return sum(step.cost(record) for step in self.active_steps(record))


def result_url(event: TaskObserved) -> str:
    if not event.result_url:
        raise ValueError("task succeeded without a result url")
    return event.result_url

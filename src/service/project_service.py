from urllib.parse import urlparse

from loguru import logger
from sqlalchemy import or_
from sqlmodel import Session, col, select

from client.base import TaskStatus
from client.registry import TaskClients
from core.exceptions import (
    CreditsNotInitialized,
    Forbidden,
    InsufficientCredits,
    InvalidProjectState,
    InvalidStep,
    MergeNotReady,
    NotAwaitingReview,
    ProjectNotFound,
    SegmentNotFound,
    StepFailed,
    ValidationFailed,
)
from model.project import (
    ACTIVE_STATUSES,
    STATUS_AWAITING_REVIEW,
    STATUS_FAILED,
    Project,
    Segment,
)
from service.capacity_service import ensure_vendor_capacity
from service.credit_service import check_credits, get_user_credits
from workflow.definition import WorkflowDefinition
from workflow.events import TaskObserved
from workflow.executor import StepExecutor
from workflow.segments import ensure_merge_ready, get_segment, list_segments
from workflow.variants import VIDEO_STEP, get_workflow, resolve_video_model, segment_video_cost

MERGE_STEP = "merging_segments"


def start_project(user_id: str, params: dict, session: Session, clients: TaskClients) -> Project:
    """레코드를 만들고 첫 비동기 단계(또는 검토 대기)까지 바로 진행한다.

    순서: 입력 검증 → 벤더 잔액 게이트 → 사용자 크레딧 사전 확인 → 생성 → 실행.
    앞의 세 단계에서 거절되면 아무것도 저장하지 않는다.
    """
    workflow = get_workflow(params["workflow_type"])
    if workflow.validate:
        workflow.validate(params)

    ensure_vendor_capacity(clients)

    record = Project(
        user_id=user_id,
        workflow_type=workflow.name,
        current_step="",
        input_image_urls=params.get("input_image_urls") or [],
        input_video_url=params.get("input_video_url"),
        video_model=resolve_video_model(params.get("video_model")) if workflow.name != "watermark_removal" else None,
        image_model=params.get("image_model"),
        aspect_ratio=params.get("aspect_ratio") or "16:9",
        image_size=params.get("image_size"),
        photo_only=bool(params.get("photo_only")),
        segment_count=params.get("segment_count") or 1,
        user_requirements=params.get("user_requirements"),
        watermark_text=params.get("watermark_text"),
    )
    record.current_step = workflow.first_step(record)
    record.credits_cost = workflow.total_cost(record)

    _ensure_affordable(user_id, record.credits_cost, session)

    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(
        f"[{record.id}] {workflow.name} started by {user_id} "
        f"(cost={record.credits_cost}, segments={record.segment_count})"
    )

    StepExecutor(session, clients).advance(record)
    _raise_if_failed(record)
    return record


def get_project_or_raise(project_id: str, user_id: str, session: Session) -> Project:
    record = session.get(Project, project_id, populate_existing=True)
    if not record:
        raise ProjectNotFound
    if record.user_id != user_id:
        raise Forbidden
    return record


def list_projects(
    user_id: str,
    session: Session,
    limit: int = 20,
    offset: int = 0,
    workflow_type: str | None = None,
) -> list[Project]:
    stmt = select(Project).where(Project.user_id == user_id)
    if workflow_type:
        stmt = stmt.where(Project.workflow_type == workflow_type)
    stmt = stmt.order_by(col(Project.created_at).desc()).offset(offset).limit(limit)
    return list(session.exec(stmt).all())


def get_segments(record: Project, session: Session) -> list[Segment]:
    return list_segments(session, record.id)


def process_step(record: Project, step: str, session: Session, clients: TaskClients) -> Project:
    """지정한 단계를 실행하고 이어지는 동기 단계까지 진행한다."""
    already_failed = record.status == STATUS_FAILED
    executor = StepExecutor(session, clients)
    executor.execute(record, step)
    executor.advance(record)
    if not already_failed:
        _raise_if_failed(record)
    return record


def confirm_project(
    record: Project, prompts: dict | None, session: Session, clients: TaskClients
) -> Project:
    if record.status != STATUS_AWAITING_REVIEW:
        raise NotAwaitingReview(details={"status": record.status})
    workflow = get_workflow(record.workflow_type)
    _ensure_affordable(record.user_id, _remaining_cost(workflow, record), session)
    StepExecutor(session, clients).confirm(record, prompts)
    _raise_if_failed(record)
    return record


def regenerate_project(
    record: Project,
    target: str,
    prompt: str | None,
    session: Session,
    clients: TaskClients,
) -> Project:
    """target 단계를 다시 실행한다. 다시 과금할 금액을 먼저 확인한다."""
    workflow = get_workflow(record.workflow_type)
    executor = StepExecutor(session, clients)
    step_name = executor.regeneration_step(record, target)

    charged = dict(record.charged_steps or {})
    charged.pop(step_name, None)
    cost = sum(
        step.cost(record)
        for step in workflow.suffix(step_name)
        if not step.skip(record) and step.name not in charged
    )
    _ensure_affordable(record.user_id, cost, session)

    executor.regenerate(record, target, prompt)
    _raise_if_failed(record)
    return record


def edit_segment(
    record: Project,
    segment_index: int,
    prompt: str | None,
    first_frame_url: str | None,
    regenerate: bool,
    session: Session,
    clients: TaskClients,
) -> tuple[Project, Segment]:
    """세그먼트 하나의 프롬프트/첫 프레임을 고친다. regenerate면 그 세그먼트 영상만 다시 만든다."""
    workflow = get_workflow(record.workflow_type)
    if VIDEO_STEP not in [step.name for step in workflow.steps] or not workflow.step(VIDEO_STEP).fans_out(record):
        raise InvalidStep("세그먼트로 나뉜 프로젝트에서만 세그먼트를 수정할 수 있습니다")
    if first_frame_url and urlparse(first_frame_url).scheme not in ("http", "https"):
        raise ValidationFailed(f"잘못된 이미지 URL입니다: {first_frame_url}")

    segment = get_segment(session, record.id, segment_index)
    if not segment:
        raise SegmentNotFound(details={"segment_index": segment_index})

    if regenerate:
        _ensure_affordable(record.user_id, segment_video_cost(record), session)
    StepExecutor(session, clients).regenerate_segment(record, segment, prompt, first_frame_url, regenerate)
    if regenerate:
        _raise_if_failed(record)
    return record, get_segment(session, record.id, segment_index)


def merge_project(record: Project, session: Session, clients: TaskClients) -> Project:
    """세그먼트가 모두 준비된 레코드의 병합 작업을 제출한다.

    준비가 안 됐거나 이미 병합 중이면 409, 레코드는 그대로 둔다.
    """
    workflow = get_workflow(record.workflow_type)
    if MERGE_STEP not in [step.name for step in workflow.active_steps(record)]:
        raise InvalidStep(f"{workflow.name} 워크플로우는 세그먼트 병합 단계가 없습니다")

    ensure_merge_ready(session, record)
    if record.status not in ACTIVE_STATUSES:
        raise InvalidProjectState(details={"status": record.status})
    if record.current_step != MERGE_STEP:
        raise MergeNotReady(details={"current_step": record.current_step})

    StepExecutor(session, clients).execute(record, MERGE_STEP)
    _raise_if_failed(record)
    return record


def find_by_task_id(task_id: str, session: Session) -> Project | None:
    """task id로 레코드를 찾는다. 단계 task id 다음으로 세그먼트 task id를 본다."""
    record = session.exec(
        select(Project)
        .where(
            or_(
                col(Project.cover_task_id) == task_id,
                col(Project.video_task_id) == task_id,
                col(Project.merge_task_id) == task_id,
            )
        )
        .execution_options(populate_existing=True)
    ).first()
    if record:
        return record

    segment = session.exec(select(Segment).where(Segment.task_id == task_id)).first()
    if segment:
        return session.get(Project, segment.project_id, populate_existing=True)
    return None


def apply_task_result(
    task_id: str, status: TaskStatus, session: Session, clients: TaskClients
) -> bool:
    """웹훅으로 받은 작업 결과를 반영한다. 모르는 task id나 버려진 결과면 False."""
    record = find_by_task_id(task_id, session)
    if not record:
        logger.info(f"Webhook for unknown task {task_id} ignored")
        return False
    event = TaskObserved.from_status(task_id, status, source="webhook")
    return StepExecutor(session, clients).observe(record, event)


def _remaining_cost(workflow: WorkflowDefinition, record: Project) -> int:
    charged = record.charged_steps or {}
    return sum(
        step.cost(record)
        for step in workflow.suffix(record.current_step)
        if not step.skip(record) and step.name not in charged
    )


def _ensure_affordable(user_id: str, amount: int, session: Session) -> None:
    if amount <= 0:
        return
    if get_user_credits(user_id, session) is None:
        raise CreditsNotInitialized
    check = check_credits(user_id, amount, session)
    if not check.sufficient:
        raise InsufficientCredits(details={"required": amount, "current": check.current})


def _raise_if_failed(record: Project) -> None:
    if record.status == STATUS_FAILED:
        raise StepFailed(record.error_message, details={"project_id": record.id})

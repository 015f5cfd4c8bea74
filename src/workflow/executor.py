"""워크플로우 단계 실행기.

레코드 하나와 단계 이름을 받아 그 단계의 부작용(LLM 호출, 작업 제출, 크레딧 차감)을
수행하고 다음 상태로 넘긴다. 모든 상태 변경은

    UPDATE projects SET ..., version = version + 1 WHERE id = ? AND version = ?

형태의 조건부 UPDATE이고, 0행이면 다른 쓰기(모니터, 웹훅, 수동 요청)가 먼저
처리한 것이므로 조용히 버린다.

흐름:
    execute  : 검증 → 이미 끝났거나 진행 중이면 no-op → 차감 + 선점(claim) → 부작용
    observe  : TaskObserved(웹훅/폴링 공통) → 완료/실패/진행 중 반영
    advance  : 동기 단계가 이어지는 동안 execute 반복
    fail_step: 해당 단계에 잡힌 크레딧 환불 + failed
    regenerate_segment: 세그먼트 하나만 다시 제출하고 조인/병합을 다시 거친다
"""

from datetime import datetime

from loguru import logger
from sqlalchemy import update
from sqlmodel import Session, col

from client.base import TaskState, TaskSubmissionFailed
from client.registry import TaskClients
from core.config import settings
from core.exceptions import (
    AppException,
    CreditsNotInitialized,
    InsufficientCredits,
    InvalidProjectState,
    InvalidStep,
    NotAwaitingReview,
    SegmentInProgress,
    UnsupportedRegeneration,
)
from model.project import (
    ACTIVE_STATUSES,
    SEGMENT_FAILED,
    SEGMENT_READY,
    SEGMENT_RENDERING,
    STATUS_AWAITING_REVIEW,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STEP_COMPLETED,
    Project,
    Segment,
)
from service.credit_service import deduct_credits, refund_step
from utility.timer import utcnow
from workflow.definition import StepContext, StepDefinition, WorkflowDefinition
from workflow.events import TaskObserved
from workflow.segments import (
    create_segments,
    delete_segments,
    find_segment,
    list_segments,
    mark_segment,
    ready_video_urls,
    record_segment_task,
    reset_segment,
    summarize,
    unsubmitted_segments,
    update_segment,
)
from workflow.variants import VIDEO_STEP, get_workflow, segment_video_cost

PROMPT_OVERRIDE_KEYS = {
    "image": "image_prompt",
    "video": "video_prompt",
}

MAX_ERROR_LENGTH = 1000


class StepExecutor:
    def __init__(self, session: Session, clients: TaskClients):
        self.session = session
        self.clients = clients
        self.ctx = StepContext(clients=clients, session=session)

    # ------------------------------------------------------------------
    # 단계 실행

    def execute(self, record: Project, step_name: str, now: datetime | None = None) -> Project:
        """step_name 단계 하나를 실행한다.

        산출물이 이미 있거나 작업이 이미 제출돼 있으면(다른 트리거가 방금 선점해
        제출 중인 경우 포함) 아무것도 하지 않는다.
        (중복 제출, 이중 차감 방지)
        전제 조건 위반(InvalidStep, MergeNotReady 등)과 크레딧 부족은 상태를 바꾸지 않고 올린다.
        부작용 중 발생한 오류는 이 경계에서 잡아 failed + 환불로 남긴다.
        """
        workflow = get_workflow(record.workflow_type)
        step = workflow.step(step_name)

        if step.outputs_present(record):
            logger.info(f"[{record.id}] {step_name} already done, skipping")
            return record
        if record.status not in ACTIVE_STATUSES:
            raise InvalidProjectState(details={"status": record.status})
        if record.current_step != step_name:
            raise InvalidStep(details={"current_step": record.current_step, "requested": step_name})
        if step.in_flight(record, now or utcnow(), settings.SUBMIT_LEASE_SECONDS):
            logger.info(f"[{record.id}] {step_name} task already in flight, skipping")
            return record

        if step.guard:
            step.guard(self.session, record)

        if not self._claim(record, step):
            return record

        try:
            if step.fans_out(record):
                self._fan_out(record, step)
            elif step.is_async:
                self._submit(record, step)
            else:
                self._complete(record, workflow, step, step.run(self.ctx, record))
        except Exception as exc:
            logger.exception(f"[{record.id}] {step_name} raised {type(exc).__name__}")
            self.session.rollback()
            self.fail_step(record, step_name, _error_message(exc))
        return record

    def advance(self, record: Project) -> Project:
        """current_step이 바뀌는 동안(동기 단계) 계속 실행한다.

        비동기 단계를 제출하거나 검토 대기/종료 상태가 되면 멈춘다.
        """
        while record.status in ACTIVE_STATUSES and record.current_step != STEP_COMPLETED:
            step_name = record.current_step
            self.execute(record, step_name)
            if record.current_step == step_name:
                break
        return record

    def resume_segments(self, record: Project) -> Project:
        """세그먼트 행은 있지만 제출되지 않은 것이 남아 있으면 마저 제출한다."""
        workflow = get_workflow(record.workflow_type)
        step = workflow.step(record.current_step)
        try:
            self._submit_segments(record, step)
        except Exception as exc:
            logger.exception(f"[{record.id}] segment submission raised {type(exc).__name__}")
            self.session.rollback()
            self.fail_step(record, step.name, _error_message(exc))
        return record

    def _claim(self, record: Project, step: StepDefinition) -> bool:
        """단계 비용을 차감하고 레코드를 in_progress로 선점한다. 한 트랜잭션.

        이미 이 단계에 차감된 크레딧이 있으면(charged_steps) 다시 차감하지 않는다.
        """
        now = utcnow()
        charged = dict(record.charged_steps or {})
        cost = step.cost(record)
        try:
            if cost > 0 and step.name not in charged:
                deduct_credits(
                    record.user_id,
                    cost,
                    self.session,
                    description=f"{record.workflow_type}: {step.name}",
                    project_id=record.id,
                    step=step.name,
                    commit=False,
                )
                charged[step.name] = cost
            claimed = self._conditional_update(
                record,
                status=STATUS_IN_PROGRESS,
                charged_steps=charged,
                step_started_at=now,
                last_processed_at=now,
            )
        except (InsufficientCredits, CreditsNotInitialized):
            self.session.rollback()
            raise

        if claimed:
            self.session.commit()
        return claimed

    def _submit(self, record: Project, step: StepDefinition) -> None:
        client = self.clients.task_client(step.client)
        task_id = client.submit(step.task_kind, step.payload(self.ctx, record))

        if self._conditional_update(record, **{step.task_field: task_id}, last_processed_at=utcnow()):
            self.session.commit()
            logger.info(f"[{record.id}] {step.name} submitted to {client.name}: {task_id}")
        else:
            logger.warning(f"[{record.id}] {step.name} task {task_id} orphaned by a concurrent update")

    def _fan_out(self, record: Project, step: StepDefinition) -> None:
        if not list_segments(self.session, record.id):
            plans = step.segment_plans(record)
            create_segments(self.session, record, plans)
            if not self._conditional_update(record, segment_status={"total": len(plans), "videosReady": 0}):
                return
            self.session.commit()
            logger.info(f"[{record.id}] {step.name} fanned out into {len(plans)} segments")
        self._submit_segments(record, step)

    def _submit_segments(self, record: Project, step: StepDefinition) -> None:
        client = self.clients.task_client(step.client)
        for segment in unsubmitted_segments(self.session, record.id):
            task_id = client.submit(step.task_kind, step.segment_payload(self.ctx, record, segment))
            if record_segment_task(self.session, segment, task_id):
                self.session.commit()
                logger.info(f"[{record.id}] segment {segment.segment_index} submitted: {task_id}")
            else:
                self.session.rollback()

    # ------------------------------------------------------------------
    # 상태 전이

    def _complete(
        self,
        record: Project,
        workflow: WorkflowDefinition,
        step: StepDefinition,
        updates: dict,
    ) -> bool:
        """step 산출물을 저장하고 다음 단계(또는 검토 대기, 완료)로 넘긴다."""
        values = dict(updates)
        next_name = workflow.next_step(record, step.name)
        progress = max(record.progress_percentage, step.progress)

        if next_name == STEP_COMPLETED:
            missing = [
                name
                for name in workflow.required_outputs(record)
                if not (values[name] if name in values else getattr(record, name))
            ]
            if missing:
                return self.fail_step(record, step.name, f"Missing required outputs: {', '.join(missing)}")
            values.update(status=STATUS_COMPLETED, progress_percentage=100, error_message=None)
        elif workflow.review_after == step.name:
            values.update(status=STATUS_AWAITING_REVIEW, progress_percentage=progress)
        else:
            values.update(status=STATUS_IN_PROGRESS, progress_percentage=progress)

        values.update(current_step=next_name, step_started_at=None, last_processed_at=utcnow())
        if not self._conditional_update(record, **values):
            return False
        self.session.commit()
        logger.info(f"[{record.id}] {step.name} done -> {next_name} ({record.status}, {record.progress_percentage}%)")
        return True

    def fail_step(self, record: Project, step_name: str, message: str) -> bool:
        """record를 failed로 바꾸고 step_name에 잡혀 있던 크레딧을 환불한다.

        환불과 상태 변경은 같은 트랜잭션이라 한쪽만 반영되는 일은 없다.
        """
        if record.status not in ACTIVE_STATUSES:
            return False

        message = (message or "Unknown error")[:MAX_ERROR_LENGTH]
        refunded = refund_step(record, step_name, self.session, reason=message)
        charged = dict(record.charged_steps or {})
        charged.pop(step_name, None)

        if not self._conditional_update(
            record,
            status=STATUS_FAILED,
            error_message=message,
            charged_steps=charged,
            step_started_at=None,
            last_processed_at=utcnow(),
        ):
            return False
        self.session.commit()
        logger.warning(f"[{record.id}] {step_name} failed: {message} (refunded {refunded} credits)")
        return True

    def _touch(self, record: Project) -> None:
        if self._conditional_update(record, last_processed_at=utcnow()):
            self.session.commit()

    def _conditional_update(self, record: Project, **values) -> bool:
        stmt = (
            update(Project)
            .where(col(Project.id) == record.id, col(Project.version) == record.version)
            .values(version=record.version + 1, updated_at=utcnow(), **values)
        )
        if self.session.connection().execute(stmt).rowcount == 0:
            self.session.rollback()
            logger.info(f"[{record.id}] record changed concurrently, dropping write")
            return False
        return True

    # ------------------------------------------------------------------
    # 외부 작업 관측 (웹훅, 모니터 폴링 공통)

    def observe(self, record: Project, event: TaskObserved) -> bool:
        """관측 결과를 반영한다. 반영했으면 True, 버렸으면 False.

        레코드가 이미 끝났거나, task id가 현재 단계의 것이 아니면
        (재생성으로 대체된 작업의 늦은 결과) 버린다.
        """
        if record.status not in ACTIVE_STATUSES or record.current_step == STEP_COMPLETED:
            logger.info(f"[{record.id}] {event.source} result for {event.task_id} ignored ({record.status})")
            return False

        workflow = get_workflow(record.workflow_type)
        step = workflow.step(record.current_step)
        if not step.is_async:
            return False

        if step.fans_out(record):
            segment = find_segment(self.session, record.id, event.task_id)
            if segment is None:
                logger.info(f"[{record.id}] unknown segment task {event.task_id} ignored")
                return False
            self._observe_segment(record, workflow, step, segment, event)
            return True

        if getattr(record, step.task_field) != event.task_id:
            logger.info(f"[{record.id}] stale task {event.task_id} ignored (step {step.name})")
            return False

        if event.state in (TaskState.PENDING, TaskState.RUNNING):
            self._touch(record)
            return True
        if event.failed:
            self.fail_step(record, step.name, event.error or "Generation failed")
            return True

        try:
            updates = step.on_result(record, event)
        except ValueError as exc:
            self.fail_step(record, step.name, str(exc))
            return True

        if self._complete(record, workflow, step, updates):
            self._continue(record)
        return True

    def _observe_segment(self, record, workflow, step, segment, event) -> None:
        if event.state in (TaskState.PENDING, TaskState.RUNNING):
            self._touch(record)
            return

        label = f"Segment {segment.segment_index + 1}"
        if event.failed or not event.result_url:
            reason = event.error or "finished without a video url"
            if mark_segment(self.session, segment, SEGMENT_FAILED, error=reason):
                self.fail_step(record, step.name, f"{label} failed: {reason}")
            else:
                self.session.rollback()
            return

        if not mark_segment(self.session, segment, SEGMENT_READY, video_url=event.result_url):
            # 웹훅과 폴링이 같은 결과를 두 번 전달한 경우
            self.session.rollback()
            return

        counts = summarize(self.session, record.id)
        logger.info(f"[{record.id}] {label} ready ({counts['videosReady']}/{counts['total']})")
        if counts["videosReady"] < counts["total"]:
            base = workflow.previous_progress(step.name)
            progress = base + (step.progress - base) * counts["videosReady"] // counts["total"]
            if self._conditional_update(
                record,
                segment_status=counts,
                progress_percentage=max(record.progress_percentage, progress),
                last_processed_at=utcnow(),
            ):
                self.session.commit()
            return

        urls = ready_video_urls(self.session, record.id)
        if self._complete(record, workflow, step, {"segment_status": counts, "video_url": urls[0]}):
            self._continue(record)

    def _continue(self, record: Project) -> None:
        # 웹훅/모니터 경로에는 402를 돌려줄 사용자가 없으므로 크레딧 부족은 실패로 남긴다
        try:
            self.advance(record)
        except (InsufficientCredits, CreditsNotInitialized) as exc:
            self.fail_step(record, record.current_step, exc.message)

    # ------------------------------------------------------------------
    # 사용자 조작

    def confirm(self, record: Project, prompts: dict | None = None) -> Project:
        """검토 대기를 풀고 이어서 진행한다. prompts를 주면 생성된 프롬프트에 덮어쓴다."""
        if record.status != STATUS_AWAITING_REVIEW:
            raise NotAwaitingReview(details={"status": record.status})

        values = {"status": STATUS_IN_PROGRESS, "last_processed_at": utcnow()}
        if prompts:
            values["prompts"] = {**(record.prompts or {}), **prompts}
        if not self._conditional_update(record, **values):
            return record
        self.session.commit()
        logger.info(f"[{record.id}] review confirmed, resuming at {record.current_step}")
        return self.advance(record)

    def regeneration_step(self, record: Project, target: str) -> str:
        """target을 다시 실행할 단계 이름으로 바꾼다.

        앞 단계 산출물이 비어 있으면(예: 이미지 분석에서 실패한 레코드의 영상 재생성)
        아무것도 바꾸지 않고 409를 올린다.
        """
        workflow = get_workflow(record.workflow_type)
        step_name = workflow.regenerate_targets.get(target)
        if not step_name or workflow.step(step_name).skip(record):
            raise UnsupportedRegeneration(
                details={"target": target, "supported": sorted(workflow.regenerate_targets)}
            )
        missing = workflow.missing_before(record, step_name)
        if missing:
            raise InvalidProjectState(
                f"{target} 재생성 전에 앞 단계를 먼저 완료해야 합니다",
                details={"target": target, "missing_steps": missing},
            )
        return step_name

    def regenerate(self, record: Project, target: str, prompt: str | None = None) -> Project:
        """target 단계부터 뒤쪽 산출물을 지우고 그 단계를 다시 실행한다.

        다시 과금하는 것은 target 단계뿐이다. 뒤따라 다시 도는 단계는
        charged_steps에 남은 기존 차감분을 그대로 쓴다.
        """
        workflow = get_workflow(record.workflow_type)
        step_name = self.regeneration_step(record, target)

        values = {name: None for step in workflow.suffix(step_name) for name in step.reset_fields}
        if prompt:
            if target in PROMPT_OVERRIDE_KEYS:
                values["prompts"] = {**(record.prompts or {}), PROMPT_OVERRIDE_KEYS[target]: prompt}
            else:
                values["user_requirements"] = prompt

        charged = dict(record.charged_steps or {})
        charged.pop(step_name, None)
        values.update(
            status=STATUS_IN_PROGRESS,
            current_step=step_name,
            progress_percentage=workflow.previous_progress(step_name),
            error_message=None,
            charged_steps=charged,
            step_started_at=None,
            last_processed_at=utcnow(),
        )

        if "segment_status" in values:
            delete_segments(self.session, record.id)
        if not self._conditional_update(record, **values):
            return record
        self.session.commit()
        logger.info(f"[{record.id}] regenerating {target} from {step_name}")
        return self.advance(record)

    def regenerate_segment(
        self,
        record: Project,
        segment: Segment,
        prompt: str | None = None,
        first_frame_url: str | None = None,
        regenerate: bool = True,
    ) -> Project:
        """세그먼트 하나의 입력을 고치고, regenerate면 그 세그먼트 영상만 다시 만든다.

        부모는 generating_video로 돌아가 기존 병합 결과를 버리고 조인/병합을 다시 거친다.
        차감은 세그먼트 하나 분량이다. 진행 중인 레코드면 영상 단계 차감분에 더하고,
        끝난 레코드면 이번 차감분만 영상 단계에 잡아 실패 시 그만큼 환불한다.
        """
        edits = {}
        if prompt:
            edits["prompt"] = prompt
        if first_frame_url:
            edits["first_frame_url"] = first_frame_url

        if not regenerate:
            if edits and update_segment(self.session, segment, **edits):
                self.session.commit()
                logger.info(f"[{record.id}] segment {segment.segment_index} edited")
            else:
                self.session.rollback()
            return record

        if segment.status == SEGMENT_RENDERING:
            raise SegmentInProgress(details={"segment_index": segment.segment_index})

        workflow = get_workflow(record.workflow_type)
        step = workflow.step(VIDEO_STEP)
        cost = segment_video_cost(record)
        charged = dict(record.charged_steps or {})
        carried = charged.get(step.name, 0) if record.status in ACTIVE_STATUSES else 0
        charged[step.name] = carried + cost
        now = utcnow()

        try:
            if cost > 0:
                deduct_credits(
                    record.user_id,
                    cost,
                    self.session,
                    description=f"{record.workflow_type}: segment {segment.segment_index + 1} regeneration",
                    project_id=record.id,
                    step=step.name,
                    commit=False,
                )
            if not reset_segment(self.session, segment, **edits):
                self.session.rollback()
                raise SegmentInProgress(details={"segment_index": segment.segment_index})

            counts = summarize(self.session, record.id)
            base = workflow.previous_progress(step.name)
            claimed = self._conditional_update(
                record,
                status=STATUS_IN_PROGRESS,
                current_step=step.name,
                video_url=None,
                merge_task_id=None,
                merged_video_url=None,
                segment_status=counts,
                progress_percentage=base + (step.progress - base) * counts["videosReady"] // counts["total"],
                error_message=None,
                charged_steps=charged,
                step_started_at=now,
                last_processed_at=now,
            )
        except (InsufficientCredits, CreditsNotInitialized):
            self.session.rollback()
            raise

        if not claimed:
            return record
        self.session.commit()
        logger.info(f"[{record.id}] regenerating segment {segment.segment_index} (charged {cost})")
        return self.resume_segments(record)


def _error_message(exc: Exception) -> str:
    if isinstance(exc, TaskSubmissionFailed):
        return exc.reason
    if isinstance(exc, AppException):
        return exc.message
    return str(exc) or type(exc).__name__

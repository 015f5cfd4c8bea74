"""비동기 단계에 머물러 있는 레코드를 주기적으로 훑어 진행시키는 모니터.

cron이 POST /api/monitor-tasks 를 호출할 때마다 sweep 한 번.
- last_processed_at이 디바운스 구간 안인 레코드는 건너뛴다 (수동 요청과 겹침 방지)
- 레코드마다 독립적으로 처리하고, 한 레코드의 예외가 나머지를 막지 않는다
- 실제 이중 진행 방지는 실행기의 version 조건부 UPDATE가 맡는다
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import or_
from sqlmodel import Session, col, select

from client.base import TransientTaskError
from client.registry import TaskClients
from core.config import settings
from core.exceptions import CreditsNotInitialized, InsufficientCredits
from model.project import (
    ACTIVE_STATUSES,
    SEGMENT_RENDERING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STEP_COMPLETED,
    Project,
)
from utility.timer import as_utc, timer, utcnow
from workflow.events import TaskObserved
from workflow.executor import StepExecutor
from workflow.segments import list_segments, unsubmitted_segments
from workflow.variants import get_workflow

ADVANCED = "advanced"
COMPLETED = "completed"
FAILED = "failed"
PENDING = "pending"
DEFERRED = "deferred"
SKIPPED = "skipped"


@dataclass
class SweepReport:
    processed: int = 0
    advanced: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    deferred: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)
    elapsed_ms: float = 0.0

    def count(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict:
        return asdict(self)


class Monitor:
    def __init__(self, session: Session, clients: TaskClients):
        self.session = session
        self.clients = clients
        self.executor = StepExecutor(session, clients)

    def candidates(self, now: datetime, workflow_type: str | None = None) -> list[Project]:
        """진행 중이고 디바운스 구간을 지난 레코드. 가장 오래 안 건드린 것부터."""
        cutoff = now - timedelta(seconds=settings.MONITOR_DEBOUNCE_SECONDS)
        stmt = (
            select(Project)
            .where(
                col(Project.status).in_(ACTIVE_STATUSES),
                or_(col(Project.last_processed_at).is_(None), col(Project.last_processed_at) <= cutoff),
            )
            .order_by(col(Project.last_processed_at).asc().nulls_first(), col(Project.created_at))
            .limit(settings.MONITOR_BATCH_SIZE)
        )
        if workflow_type:
            stmt = stmt.where(Project.workflow_type == workflow_type)
        return list(self.session.exec(stmt).all())

    def sweep(self, now: datetime | None = None, workflow_type: str | None = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        with timer() as t:
            records = self.candidates(now, workflow_type)
            for record in records:
                project_id = record.id
                report.processed += 1
                try:
                    report.count(self.process(record, now))
                except Exception as exc:
                    logger.exception(f"[{project_id}] monitor failed to process record")
                    self.session.rollback()
                    report.errors.append({"project_id": project_id, "error": str(exc) or type(exc).__name__})

        report.elapsed_ms = round(t.elapsed_ms, 1)
        logger.info(
            f"Monitor sweep: processed={report.processed} advanced={report.advanced} "
            f"completed={report.completed} failed={report.failed} pending={report.pending} "
            f"deferred={report.deferred} errors={len(report.errors)} ({report.elapsed_ms:.0f}ms)"
        )
        return report

    def process(self, record: Project, now: datetime) -> str:
        """레코드 하나를 한 번 진행시키고 결과 분류를 돌려준다."""
        if record.current_step == STEP_COMPLETED:
            return SKIPPED

        step_before = record.current_step
        workflow = get_workflow(record.workflow_type)
        step = workflow.step(record.current_step)

        started = as_utc(record.step_started_at)
        if step.is_async and started and now - started > timedelta(seconds=step.stale_after):
            minutes = step.stale_after // 60
            self.executor.fail_step(record, step.name, f"Task timeout: no progress for {minutes} minutes")
            return _outcome(record, step_before)

        try:
            if not step.is_async:
                self.executor.advance(record)
            elif step.fans_out(record):
                return self._process_segments(record, step, step_before, now)
            elif not getattr(record, step.task_field):
                self.executor.execute(record, step.name, now)
            else:
                return self._poll(record, step, step_before)
        except (InsufficientCredits, CreditsNotInitialized) as exc:
            self.executor.fail_step(record, record.current_step, exc.message)
        return _outcome(record, step_before)

    def _poll(self, record: Project, step, step_before: str) -> str:
        task_id = getattr(record, step.task_field)
        client = self.clients.task_client(step.client)
        try:
            status = client.poll(step.task_kind, task_id)
        except TransientTaskError as exc:
            logger.warning(f"[{record.id}] poll deferred: {exc}")
            return DEFERRED

        self.executor.observe(record, TaskObserved.from_status(task_id, status))
        return _outcome(record, step_before)

    def _process_segments(self, record: Project, step, step_before: str, now: datetime) -> str:
        segments = list_segments(self.session, record.id)
        if not segments:
            self.executor.execute(record, step.name, now)
            return _outcome(record, step_before)
        if unsubmitted_segments(self.session, record.id) and not step.claim_held(
            record, now, settings.SUBMIT_LEASE_SECONDS
        ):
            self.executor.resume_segments(record)

        client = self.clients.task_client(step.client)
        deferred = False
        for segment in segments:
            if segment.status != SEGMENT_RENDERING or not segment.task_id:
                continue
            task_id = segment.task_id
            try:
                status = client.poll(step.task_kind, task_id)
            except TransientTaskError as exc:
                logger.warning(f"[{record.id}] segment {segment.segment_index} poll deferred: {exc}")
                deferred = True
                continue
            self.executor.observe(record, TaskObserved.from_status(task_id, status))
            if record.status not in ACTIVE_STATUSES or record.current_step != step_before:
                break

        outcome = _outcome(record, step_before)
        if outcome == PENDING and deferred:
            return DEFERRED
        return outcome


def _outcome(record: Project, step_before: str) -> str:
    if record.status == STATUS_COMPLETED:
        return COMPLETED
    if record.status == STATUS_FAILED:
        return FAILED
    if record.current_step != step_before:
        return ADVANCED
    return PENDING

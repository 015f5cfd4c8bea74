"""세그먼트(하위 클립) 저장소와 병합 전제 조건.

부모 레코드가 영상 단계에 들어갈 때 세그먼트 N개를 한 번에 만들고,
각 세그먼트는 자기 작업의 관측 결과로만 바뀐다.
부모는 segment_status = {"total": N, "videosReady": k} 로 집계한다.
"""

from sqlalchemy import delete, func, update
from sqlmodel import Session, col, select

from core.exceptions import InvalidProjectState, MergeInProgress, MergeNotReady
from model.project import (
    SEGMENT_PENDING,
    SEGMENT_READY,
    SEGMENT_RENDERING,
    Project,
    Segment,
)
from utility.timer import utcnow


def create_segments(session: Session, record: Project, plans: list[dict]) -> list[Segment]:
    """plans 순서대로 segment_index 0..N-1 행을 추가한다. 커밋하지 않는다."""
    segments = [
        Segment(
            project_id=record.id,
            segment_index=index,
            prompt=plan.get("prompt"),
            first_frame_url=plan.get("first_frame_url"),
        )
        for index, plan in enumerate(plans)
    ]
    session.add_all(segments)
    session.flush()
    return segments


def list_segments(session: Session, project_id: str) -> list[Segment]:
    return list(
        session.exec(
            select(Segment)
            .where(Segment.project_id == project_id)
            .order_by(col(Segment.segment_index))
            .execution_options(populate_existing=True)
        ).all()
    )


def find_segment(session: Session, project_id: str, task_id: str) -> Segment | None:
    return session.exec(
        select(Segment)
        .where(Segment.project_id == project_id, Segment.task_id == task_id)
        .execution_options(populate_existing=True)
    ).first()


def unsubmitted_segments(session: Session, project_id: str) -> list[Segment]:
    return [
        segment
        for segment in list_segments(session, project_id)
        if segment.status == SEGMENT_PENDING and not segment.task_id
    ]


def record_segment_task(session: Session, segment: Segment, task_id: str) -> bool:
    """pending 세그먼트에 task id를 남기고 rendering으로 바꾼다. 커밋하지 않는다."""
    stmt = (
        update(Segment)
        .where(col(Segment.id) == segment.id, col(Segment.status) == SEGMENT_PENDING)
        .values(task_id=task_id, status=SEGMENT_RENDERING, updated_at=utcnow())
    )
    return session.connection().execute(stmt).rowcount > 0


def mark_segment(
    session: Session,
    segment: Segment,
    status: str,
    video_url: str | None = None,
    error: str | None = None,
) -> bool:
    """rendering 세그먼트를 ready/failed로 바꾼다.

    같은 결과가 웹훅과 폴링으로 두 번 들어와도 한 번만 반영되도록
    현재 상태가 rendering이고 task id가 같을 때만 갱신한다.
    """
    stmt = (
        update(Segment)
        .where(
            col(Segment.id) == segment.id,
            col(Segment.task_id) == segment.task_id,
            col(Segment.status) == SEGMENT_RENDERING,
        )
        .values(status=status, video_url=video_url, error_message=error, updated_at=utcnow())
    )
    return session.connection().execute(stmt).rowcount > 0


def summarize(session: Session, project_id: str) -> dict:
    total = session.connection().execute(
        select(func.count()).select_from(Segment).where(Segment.project_id == project_id)
    ).scalar_one()
    ready = session.connection().execute(
        select(func.count())
        .select_from(Segment)
        .where(Segment.project_id == project_id, Segment.status == SEGMENT_READY)
    ).scalar_one()
    return {"total": total, "videosReady": ready}


def ready_video_urls(session: Session, project_id: str) -> list[str]:
    """병합 입력. segment_index 순서."""
    rows = session.connection().execute(
        select(Segment.video_url)
        .where(Segment.project_id == project_id, Segment.status == SEGMENT_READY)
        .order_by(col(Segment.segment_index))
    )
    return [url for (url,) in rows if url]


def delete_segments(session: Session, project_id: str) -> None:
    session.connection().execute(delete(Segment).where(col(Segment.project_id) == project_id))


def ensure_merge_ready(session: Session, record: Project) -> None:
    """병합 제출 전 조건. 어기면 아무것도 바꾸지 않고 409.

    - 모든 세그먼트가 ready (videosReady == total, 영상 url 존재)
    - 진행 중인 병합 작업이 없음 (merge_task_id 없음)
    """
    if record.merged_video_url:
        raise InvalidProjectState("이미 병합이 끝난 프로젝트입니다")
    if record.merge_task_id:
        raise MergeInProgress(details={"merge_task_id": record.merge_task_id})

    counts = summarize(session, record.id)
    urls = ready_video_urls(session, record.id)
    if counts["total"] == 0 or counts["videosReady"] < counts["total"] or len(urls) < counts["total"]:
        raise MergeNotReady(details=counts)


def get_segment(session: Session, project_id: str, segment_index: int) -> Segment | None:
    return session.exec(
        select(Segment)
        .where(Segment.project_id == project_id, Segment.segment_index == segment_index)
        .execution_options(populate_existing=True)
    ).first()


def update_segment(session: Session, segment: Segment, **values) -> bool:
    """프롬프트 등 입력만 고친다. 진행 중인 작업에는 영향이 없다. 커밋하지 않는다."""
    stmt = (
        update(Segment)
        .where(col(Segment.id) == segment.id)
        .values(updated_at=utcnow(), **values)
    )
    return session.connection().execute(stmt).rowcount > 0


def reset_segment(session: Session, segment: Segment, **values) -> bool:
    """ready/failed 세그먼트를 다시 제출할 수 있게 pending으로 되돌린다. 커밋하지 않는다.

    읽은 뒤 상태가 바뀌었으면(관측 결과가 먼저 들어온 경우) 0행.
    """
    stmt = (
        update(Segment)
        .where(
            col(Segment.id) == segment.id,
            col(Segment.status) == segment.status,
            col(Segment.status) != SEGMENT_RENDERING,
        )
        .values(
            status=SEGMENT_PENDING,
            task_id=None,
            video_url=None,
            error_message=None,
            updated_at=utcnow(),
            **values,
        )
    )
    return session.connection().execute(stmt).rowcount > 0

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

# Project.status
STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_AWAITING_REVIEW = "awaiting_review"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ACTIVE_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

# Project.current_step 종료 값. 나머지 값은 워크플로우별 단계 테이블이 정한다
STEP_COMPLETED = "completed"

# Segment.status
SEGMENT_PENDING = "pending"
SEGMENT_RENDERING = "rendering"
SEGMENT_READY = "ready"
SEGMENT_FAILED = "failed"


def _new_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class Project(SQLModel, table=True):
    """광고 생성 작업 하나의 워크플로우 레코드.

    모든 워크플로우 변형이 같은 테이블을 쓰고 workflow_type으로 구분한다.
    version은 낙관적 동시성 제어용 카운터로, 모든 상태 변경이
    "WHERE id = ? AND version = ?" 조건부 UPDATE로 1씩 올린다.
    """

    __tablename__ = "projects"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=32)
    user_id: str = Field(index=True, max_length=64)
    workflow_type: str = Field(index=True)

    status: str = Field(default=STATUS_PENDING, index=True)
    current_step: str
    progress_percentage: int = Field(default=0)
    version: int = Field(default=0)

    # 입력
    input_image_urls: list = Field(default_factory=list, sa_column=Column(JSON))
    input_video_url: str | None = None
    video_model: str | None = None
    image_model: str | None = None
    aspect_ratio: str = Field(default="16:9")
    image_size: str | None = None
    photo_only: bool = Field(default=False)
    segment_count: int = Field(default=1)
    user_requirements: str | None = None
    watermark_text: str | None = None

    # 단계별 산출물
    product_description: str | None = None
    prompts: dict | None = Field(default=None, sa_column=Column(JSON))
    cover_task_id: str | None = Field(default=None, index=True)
    cover_image_url: str | None = None
    video_task_id: str | None = Field(default=None, index=True)
    video_url: str | None = None
    merge_task_id: str | None = Field(default=None, index=True)
    merged_video_url: str | None = None
    segment_status: dict | None = Field(default=None, sa_column=Column(JSON))

    # 과금: credits_cost는 작업 전체 예상 비용,
    # charged_steps는 단계별로 현재 차감되어 있는(환불되지 않은) 크레딧
    credits_cost: int = Field(default=0)
    charged_steps: dict = Field(default_factory=dict, sa_column=Column(JSON))

    error_message: str | None = None
    step_started_at: datetime | None = None
    last_processed_at: datetime | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Segment(SQLModel, table=True):
    """멀티 클립 워크플로우의 하위 클립. segment_index 순서로 병합된다."""

    __tablename__ = "project_segments"

    id: int | None = Field(default=None, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    segment_index: int
    status: str = Field(default=SEGMENT_PENDING)  # pending, rendering, ready, failed
    prompt: str | None = None
    task_id: str | None = Field(default=None, index=True)
    video_url: str | None = None
    first_frame_url: str | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ProjectRead(SQLModel):
    """API 응답용 스냅샷. 과금 내부 상태(charged_steps, version)는 내보내지 않는다."""

    id: str
    workflow_type: str
    status: str
    current_step: str
    progress_percentage: int
    error_message: str | None = None

    input_image_urls: list = []
    input_video_url: str | None = None
    video_model: str | None = None
    image_model: str | None = None
    aspect_ratio: str
    photo_only: bool
    segment_count: int
    user_requirements: str | None = None

    product_description: str | None = None
    prompts: dict | None = None
    cover_task_id: str | None = None
    cover_image_url: str | None = None
    video_task_id: str | None = None
    video_url: str | None = None
    merge_task_id: str | None = None
    merged_video_url: str | None = None
    segment_status: dict | None = None

    credits_cost: int
    last_processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class SegmentRead(SQLModel):
    segment_index: int
    status: str
    prompt: str | None = None
    task_id: str | None = None
    video_url: str | None = None
    first_frame_url: str | None = None
    error_message: str | None = None

from typing import Literal

from fastapi import APIRouter, Depends, Path, Query, status
from pydantic import BaseModel, Field
from sqlmodel import Session

from client.registry import TaskClients
from core.dependencies import get_current_user_id, get_task_clients
from model.database import get_session
from model.project import ProjectRead, SegmentRead
from service import project_service

router = APIRouter(prefix="/api/projects", tags=["projects"])


# --- 요청 스키마 ---

class StartRequest(BaseModel):
    workflow_type: str = "standard_ads"
    input_image_urls: list[str] = []
    input_video_url: str | None = None
    video_model: str | None = None
    image_model: str | None = None
    aspect_ratio: str = "16:9"
    image_size: str | None = None
    photo_only: bool = False
    segment_count: int = Field(default=1, ge=1)
    user_requirements: str | None = Field(default=None, max_length=2000)
    watermark_text: str | None = Field(default=None, max_length=100)


class ProcessRequest(BaseModel):
    step: str


class ConfirmRequest(BaseModel):
    prompts: dict | None = None


class RegenerateRequest(BaseModel):
    target: str
    prompt: str | None = Field(default=None, max_length=4000)


class SegmentEditRequest(BaseModel):
    prompt: str | None = Field(default=None, max_length=4000)
    first_frame_url: str | None = None
    regenerate: Literal["none", "video"] = "none"


def _snapshot(record) -> dict:
    return ProjectRead.model_validate(record).model_dump(mode="json")


# --- 엔드포인트 ---

@router.post("/start", status_code=status.HTTP_201_CREATED)
def start_project(
    req: StartRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    clients: TaskClients = Depends(get_task_clients),
):
    """레코드를 만들고 첫 비동기 단계 제출(또는 검토 대기)까지 진행한다."""
    record = project_service.start_project(user_id, req.model_dump(), session, clients)
    return {"success": True, "project_id": record.id, "project": _snapshot(record)}


@router.get("")
def list_projects(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    workflow_type: str | None = None,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
):
    records = project_service.list_projects(user_id, session, limit, offset, workflow_type)
    return {
        "success": True,
        "projects": [_snapshot(record) for record in records],
        "limit": limit,
        "offset": offset,
    }


@router.post("/{project_id}/process")
def process_project(
    project_id: str,
    req: ProcessRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    clients: TaskClients = Depends(get_task_clients),
):
    record = project_service.get_project_or_raise(project_id, user_id, session)
    record = project_service.process_step(record, req.step, session, clients)
    return {"success": True, "project": _snapshot(record)}


@router.patch("/{project_id}/confirm")
def confirm_project(
    project_id: str,
    req: ConfirmRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    clients: TaskClients = Depends(get_task_clients),
):
    """검토 대기 해제. prompts를 보내면 생성된 프롬프트를 수정한 뒤 진행한다."""
    record = project_service.get_project_or_raise(project_id, user_id, session)
    record = project_service.confirm_project(record, req.prompts, session, clients)
    return {"success": True, "project": _snapshot(record)}


@router.post("/{project_id}/regenerate")
def regenerate_project(
    project_id: str,
    req: RegenerateRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    clients: TaskClients = Depends(get_task_clients),
):
    record = project_service.get_project_or_raise(project_id, user_id, session)
    record = project_service.regenerate_project(record, req.target, req.prompt, session, clients)
    return {"success": True, "project": _snapshot(record)}


@router.get("/{project_id}/status")
def project_status(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
):
    record = project_service.get_project_or_raise(project_id, user_id, session)
    segments = project_service.get_segments(record, session)
    return {
        "success": True,
        "project": _snapshot(record),
        "segments": [SegmentRead.model_validate(s).model_dump(mode="json") for s in segments],
    }


@router.post("/{project_id}/merge")
def merge_segments(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    clients: TaskClients = Depends(get_task_clients),
):
    """세그먼트가 모두 준비됐을 때 병합 작업을 수동으로 제출한다."""
    record = project_service.get_project_or_raise(project_id, user_id, session)
    record = project_service.merge_project(record, session, clients)
    return {"success": True, "merge_task_id": record.merge_task_id, "project": _snapshot(record)}


@router.patch("/{project_id}/segments/{segment_index}")
def edit_segment(
    project_id: str,
    req: SegmentEditRequest,
    segment_index: int = Path(ge=0),
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    clients: TaskClients = Depends(get_task_clients),
):
    """세그먼트 하나의 프롬프트를 고친다. regenerate="video"면 그 세그먼트 영상만 다시 만들고 다시 병합한다."""
    record = project_service.get_project_or_raise(project_id, user_id, session)
    record, segment = project_service.edit_segment(
        record,
        segment_index,
        req.prompt,
        req.first_frame_url,
        req.regenerate == "video",
        session,
        clients,
    )
    return {
        "success": True,
        "project": _snapshot(record),
        "segment": SegmentRead.model_validate(segment).model_dump(mode="json"),
        "segment_status": record.segment_status,
    }

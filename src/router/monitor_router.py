from fastapi import APIRouter, Depends, Query
from loguru import logger
from sqlmodel import Session

from client.base import TaskState, TaskStatus
from client.fal import parse_webhook
from client.kie import parse_record
from client.registry import TaskClients
from core.dependencies import get_task_clients, require_monitor_secret, require_webhook_secret
from core.exceptions import ValidationFailed
from model.database import get_session
from service import project_service
from workflow.monitor import Monitor

router = APIRouter(prefix="/api", tags=["monitor"])


@router.post("/monitor-tasks", dependencies=[Depends(require_monitor_secret)])
def monitor_tasks(
    workflow_type: str | None = Query(default=None),
    session: Session = Depends(get_session),
    clients: TaskClients = Depends(get_task_clients),
):
    """cron이 호출하는 모니터 sweep 한 번."""
    report = Monitor(session, clients).sweep(workflow_type=workflow_type)
    return {"success": True, **report.to_dict()}


# --- 벤더 웹훅 ---
# 폴링과 같은 TaskObserved 경로로 들어가므로, 같은 결과가 두 번 와도 한 번만 반영된다.
# 모르는 task id에도 200을 돌려줘야 벤더가 재전송을 멈춘다.

@router.post("/webhooks/kie", dependencies=[Depends(require_webhook_secret)])
def kie_webhook(
    body: dict,
    session: Session = Depends(get_session),
    clients: TaskClients = Depends(get_task_clients),
):
    data = body.get("data") or {}
    task_id = data.get("taskId")
    if not task_id:
        raise ValidationFailed("taskId가 없는 콜백입니다")

    if body.get("code") == 200:
        status = parse_record(data)
    else:
        reason = data.get("failMsg") or body.get("msg") or "Generation failed"
        status = TaskStatus(TaskState.FAILED, error_detail=reason)

    logger.info(f"KIE webhook: task={task_id} state={status.state}")
    applied = project_service.apply_task_result(task_id, status, session, clients)
    return {"success": True, "applied": applied}


@router.post("/webhooks/fal", dependencies=[Depends(require_webhook_secret)])
def fal_webhook(
    body: dict,
    session: Session = Depends(get_session),
    clients: TaskClients = Depends(get_task_clients),
):
    request_id, status = parse_webhook(body)
    if not request_id:
        raise ValidationFailed("request_id가 없는 콜백입니다")

    logger.info(f"fal webhook: request={request_id} state={status.state}")
    applied = project_service.apply_task_result(request_id, status, session, clients)
    return {"success": True, "applied": applied}

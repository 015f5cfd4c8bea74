"""KIE AI 작업 클라이언트.

task kind
- image     : 커버 이미지 생성 (jobs/createTask → jobs/recordInfo)
- video     : Veo 계열 영상 생성 (veo/generate → veo/record-info)
- watermark : Sora2 워터마크 제거 (jobs/createTask → jobs/recordInfo)

응답은 {"code": 200, "msg": "...", "data": {...}} 형태이고,
HTTP 200이어도 code가 200이 아니면 실패로 본다.
"""

import json

import httpx
from loguru import logger

from client.base import (
    TaskClient,
    TaskState,
    TaskStatus,
    TaskSubmissionFailed,
    TransientTaskError,
)
from utility.retry import call_with_retry

IMAGE_MODELS = {
    "nano_banana": "google/nano-banana-edit",
    "seedream": "bytedance/seedream-v4-edit",
}
DEFAULT_IMAGE_MODEL = "nano_banana"
WATERMARK_MODEL = "sora-watermark-remover"

_SUBMIT_PATHS = {
    "image": "/api/v1/jobs/createTask",
    "watermark": "/api/v1/jobs/createTask",
    "video": "/api/v1/veo/generate",
}
_POLL_PATHS = {
    "image": "/api/v1/jobs/recordInfo",
    "watermark": "/api/v1/jobs/recordInfo",
    "video": "/api/v1/veo/record-info",
}

# jobs/recordInfo의 state 문자열
_RUNNING_STATES = {"generating", "queuing", "waiting", "running", "processing"}
_FAILED_STATES = {"fail", "failed", "error"}


class KieClient(TaskClient):
    name = "kie"
    task_kinds = ("image", "video", "watermark")

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.kie.ai",
        callback_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if not api_key:
            logger.warning("KIE_API_KEY not set - KIE generation tasks will fail")
        self.callback_url = callback_url
        self._http = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # 제출

    def submit(self, task_kind: str, payload: dict) -> str:
        self._check_kind(task_kind)
        body = self._build_request(task_kind, payload)

        try:
            response = call_with_retry(
                self._http.post, _SUBMIT_PATHS[task_kind], json=body, label=f"kie submit {task_kind}"
            )
        except httpx.HTTPError as exc:
            raise TaskSubmissionFailed(f"KIE {task_kind} request failed: {exc}") from exc

        data = _json_or_empty(response)
        if response.status_code != 200 or data.get("code") != 200:
            reason = data.get("msg") or f"HTTP {response.status_code}"
            raise TaskSubmissionFailed(f"KIE {task_kind} task rejected: {reason}")

        task_id = (data.get("data") or {}).get("taskId")
        if not task_id:
            raise TaskSubmissionFailed(f"KIE {task_kind} response has no taskId")

        logger.info(f"KIE {task_kind} task created: {task_id}")
        return task_id

    def _build_request(self, task_kind: str, payload: dict) -> dict:
        if task_kind == "video":
            body = {
                "prompt": payload["prompt"],
                "model": payload.get("model") or "veo3_fast",
                "aspectRatio": payload.get("aspect_ratio") or "16:9",
                "imageUrls": payload.get("image_urls") or [],
                "enableAudio": True,
            }
        elif task_kind == "watermark":
            body = {
                "model": WATERMARK_MODEL,
                "input": {"video_url": payload["video_url"]},
            }
        else:
            model_key = payload.get("model") or DEFAULT_IMAGE_MODEL
            body = {
                "model": IMAGE_MODELS.get(model_key, IMAGE_MODELS[DEFAULT_IMAGE_MODEL]),
                "input": {
                    "prompt": payload["prompt"],
                    "image_urls": payload.get("image_urls") or [],
                    "output_format": "png",
                    "image_size": payload.get("image_size") or "auto",
                },
            }
        if self.callback_url:
            body["callBackUrl"] = self.callback_url
        return body

    # ------------------------------------------------------------------
    # 조회

    def poll(self, task_kind: str, task_id: str) -> TaskStatus:
        self._check_kind(task_kind)
        try:
            response = call_with_retry(
                self._http.get,
                _POLL_PATHS[task_kind],
                params={"taskId": task_id},
                label=f"kie poll {task_kind}",
            )
        except httpx.HTTPError as exc:
            raise TransientTaskError(f"KIE status check failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientTaskError(f"KIE status check returned HTTP {response.status_code}")

        data = _json_or_empty(response)
        if response.status_code != 200 or data.get("code") != 200:
            raise TransientTaskError(
                f"KIE status check error: {data.get('msg') or f'HTTP {response.status_code}'}"
            )

        task_data = data.get("data")
        if not task_data:
            return TaskStatus(TaskState.PENDING)
        return parse_record(task_data)

    def get_account_credits(self) -> int:
        """KIE 계정 잔액. 서비스 용량 게이트에서 사용."""
        try:
            response = call_with_retry(self._http.get, "/api/v1/chat/credit", label="kie credits")
        except httpx.HTTPError as exc:
            raise TransientTaskError(f"KIE credits check failed: {exc}") from exc

        data = _json_or_empty(response)
        if response.status_code != 200 or data.get("code") != 200:
            raise TransientTaskError(
                f"KIE credits check error: {data.get('msg') or f'HTTP {response.status_code}'}"
            )
        credits = data.get("data")
        if isinstance(credits, dict):
            credits = credits.get("credits", 0)
        return int(credits or 0)


def parse_record(task_data: dict) -> TaskStatus:
    """recordInfo/record-info 응답 또는 콜백 data를 TaskStatus로 정규화한다.

    이미지 작업은 state + resultJson.resultUrls,
    Veo 작업은 successFlag(0 진행, 1 성공, 2/3 실패) + response.resultUrls를 쓴다.
    """
    urls = _extract_urls(task_data)
    state = task_data.get("state")
    state = state.lower() if isinstance(state, str) else None
    success_flag = task_data.get("successFlag")
    error = task_data.get("failMsg") or task_data.get("errorMessage") or None

    if state in _FAILED_STATES or success_flag in (2, 3):
        return TaskStatus(TaskState.FAILED, error_detail=error or "Generation failed")
    if state == "success" or success_flag == 1 or (urls and state is None):
        return TaskStatus(
            TaskState.SUCCEEDED,
            result_url=urls[0] if urls else None,
            result_urls=urls,
        )
    if state in ("waiting", "queuing"):
        return TaskStatus(TaskState.PENDING)
    if state in _RUNNING_STATES or success_flag == 0:
        return TaskStatus(TaskState.RUNNING)
    return TaskStatus(TaskState.PENDING)


def _extract_urls(task_data: dict) -> list[str]:
    raw = task_data.get("resultJson")
    if isinstance(raw, str) and raw:
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raw = None
    candidates = [
        raw.get("resultUrls") if isinstance(raw, dict) else None,
        (task_data.get("response") or {}).get("resultUrls"),
        (task_data.get("info") or {}).get("resultUrls"),
        task_data.get("resultUrls"),
    ]
    for urls in candidates:
        if isinstance(urls, list) and urls:
            return [u for u in urls if isinstance(u, str)]
    return []


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}

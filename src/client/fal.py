"""fal.ai 큐 REST 클라이언트 (세그먼트 병합 전용).

submit : POST {queue}/{model}                       → request_id
status : GET  {queue}/{model}/requests/{id}/status  → IN_QUEUE / IN_PROGRESS / COMPLETED
result : GET  {queue}/{model}/requests/{id}         → {"video": {"url": ...}}
"""

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

MERGE_MODEL = "fal-ai/ffmpeg-api/merge-videos"
# fal 큐 경로는 앱 이름(앞 두 구간)까지만 쓴다
_QUEUE_APP = "fal-ai/ffmpeg-api"

_RESOLUTIONS = {
    "16:9": "landscape_16_9",
    "9:16": "portrait_16_9",
}


class FalClient(TaskClient):
    name = "fal"
    task_kinds = ("merge",)

    def __init__(
        self,
        api_key: str,
        queue_url: str = "https://queue.fal.run",
        callback_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if not api_key:
            logger.warning("FAL_KEY not set - segment merge will fail")
        self.callback_url = callback_url
        self._http = httpx.Client(
            base_url=queue_url,
            headers={
                "Authorization": f"Key {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def submit(self, task_kind: str, payload: dict) -> str:
        self._check_kind(task_kind)
        video_urls = payload.get("video_urls") or []
        if len(video_urls) < 2:
            raise TaskSubmissionFailed("merge needs at least two segment videos")

        body = {
            "video_urls": video_urls,
            "target_fps": 30,
            "resolution": _RESOLUTIONS.get(payload.get("aspect_ratio") or "16:9", "landscape_16_9"),
        }
        params = {"fal_webhook": self.callback_url} if self.callback_url else None

        try:
            response = call_with_retry(
                self._http.post, f"/{MERGE_MODEL}", json=body, params=params, label="fal submit merge"
            )
        except httpx.HTTPError as exc:
            raise TaskSubmissionFailed(f"fal merge request failed: {exc}") from exc

        if response.status_code >= 400:
            raise TaskSubmissionFailed(f"fal merge rejected: HTTP {response.status_code} {response.text[:200]}")

        request_id = _json_or_empty(response).get("request_id")
        if not request_id:
            raise TaskSubmissionFailed("fal response has no request_id")

        logger.info(f"fal merge task created: {request_id} ({len(video_urls)} segments)")
        return request_id

    def poll(self, task_kind: str, task_id: str) -> TaskStatus:
        self._check_kind(task_kind)
        status_response = self._get(f"/{_QUEUE_APP}/requests/{task_id}/status")
        status = _json_or_empty(status_response).get("status")

        if status == "IN_QUEUE":
            return TaskStatus(TaskState.PENDING)
        if status == "IN_PROGRESS":
            return TaskStatus(TaskState.RUNNING)
        if status != "COMPLETED":
            return TaskStatus(TaskState.PENDING)

        # 완료 후 결과 조회. 4xx는 작업 자체가 실패한 경우
        result_response = self._get(f"/{_QUEUE_APP}/requests/{task_id}", allow_client_error=True)
        result = _json_or_empty(result_response)
        if result_response.status_code >= 400:
            detail = result.get("detail") or f"HTTP {result_response.status_code}"
            return TaskStatus(TaskState.FAILED, error_detail=f"Merge failed: {detail}")
        return parse_result(result)

    def _get(self, path: str, allow_client_error: bool = False) -> httpx.Response:
        try:
            response = call_with_retry(self._http.get, path, label="fal poll")
        except httpx.HTTPError as exc:
            raise TransientTaskError(f"fal status check failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientTaskError(f"fal status check returned HTTP {response.status_code}")
        if response.status_code >= 400 and not allow_client_error:
            raise TransientTaskError(f"fal status check returned HTTP {response.status_code}")
        return response


def parse_result(result: dict) -> TaskStatus:
    url = (result.get("video") or {}).get("url")
    if not url:
        return TaskStatus(TaskState.FAILED, error_detail="Merge finished without a video url")
    return TaskStatus(TaskState.SUCCEEDED, result_url=url, result_urls=[url])


def parse_webhook(body: dict) -> tuple[str | None, TaskStatus]:
    """fal 웹훅 본문 → (request_id, TaskStatus).

    {"request_id": "...", "status": "OK" | "ERROR", "payload": {...}, "error": "..."}
    """
    request_id = body.get("request_id") or body.get("gateway_request_id")
    if body.get("status") == "OK":
        return request_id, parse_result(body.get("payload") or {})
    error = body.get("error") or "Merge failed"
    return request_id, TaskStatus(TaskState.FAILED, error_detail=str(error))


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}

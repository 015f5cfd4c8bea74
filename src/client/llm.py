"""OpenRouter 채팅 완성 API 클라이언트.

이미지 설명, 광고 프롬프트 생성처럼 수 초 안에 끝나는 동기 단계에서만 쓴다.
비동기 작업이 아니므로 TaskClient를 상속하지 않는다.
"""

import json
import re

import httpx
from loguru import logger

from client.base import TaskClientError
from utility.retry import call_with_retry

PROMPT_KEYS = (
    "description",
    "setting",
    "camera_type",
    "camera_movement",
    "action",
    "lighting",
    "dialogue",
    "music",
    "ending",
    "other_details",
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)

DESCRIBE_INSTRUCTION = (
    "Describe the product in this image for an advertising brief: "
    "what it is, its colors, materials, and notable features. Answer in plain text."
)


class LlmError(TaskClientError):
    pass


class LlmClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        model: str = "google/gemini-2.0-flash-001",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if not api_key:
            logger.warning("OPENROUTER_API_KEY not set - analysis steps will fail")
        self.model = model
        self._http = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def describe_image(self, image_url: str) -> str:
        content = [
            {"type": "text", "text": DESCRIBE_INSTRUCTION},
            {"type": "image_url", "image_url": {"url": image_url}},
        ]
        return self._complete([{"role": "user", "content": content}]).strip()

    def generate_prompts(
        self,
        description: str,
        requirements: str | None = None,
        segment_count: int = 1,
    ) -> dict:
        """상품 설명으로 영상 광고 프롬프트(JSON)를 만든다.

        segment_count > 1이면 "segments" 목록에 클립별 프롬프트를 함께 요청한다.
        모델이 JSON을 돌려주지 않으면 설명을 그대로 넣은 기본 구조로 대체한다.
        """
        instruction = (
            "Write a short video advertisement plan as a JSON object with the keys "
            f"{', '.join(PROMPT_KEYS)}"
        )
        if segment_count > 1:
            instruction += f", and a 'segments' array of {segment_count} one-sentence clip prompts"
        instruction += ". Return only JSON."

        user_text = f"Product: {description}"
        if requirements:
            user_text += f"\nRequirements: {requirements}"

        raw = self._complete(
            [
                {"role": "system", "content": instruction},
                {"role": "user", "content": user_text},
            ]
        )
        return parse_prompts(raw, description)

    def _complete(self, messages: list[dict]) -> str:
        try:
            response = call_with_retry(
                self._http.post,
                "/chat/completions",
                json={"model": self.model, "messages": messages},
                label="openrouter completion",
            )
        except httpx.HTTPError as exc:
            raise LlmError(f"OpenRouter request failed: {exc}") from exc

        if response.status_code >= 400:
            raise LlmError(f"OpenRouter returned HTTP {response.status_code}")
        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise LlmError("OpenRouter response has no completion content") from exc


def parse_prompts(raw: str, description: str) -> dict:
    text = _FENCE.sub("", raw.strip()).strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None

    if not isinstance(parsed, dict):
        logger.warning("prompt generation returned non-JSON content, using default structure")
        parsed = {key: "" for key in PROMPT_KEYS}
        parsed["description"] = description
        parsed["other_details"] = raw.strip()[:2000]
    return parsed

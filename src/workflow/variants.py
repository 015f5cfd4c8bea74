"""광고 워크플로우 변형별 단계 테이블과 비용표.

standard_ads       analyzing_image → generating_prompts → generating_cover
                   → generating_video → [merging_segments] → completed
multi_variant_ads  analyzing_image → generating_prompts → generating_cover
                   → generating_video (변형마다 세그먼트 1개) → completed
character_ads      analyzing_image → generating_prompts → (검토 대기)
                   → generating_cover → generating_video → [merging_segments] → completed
watermark_removal  removing_watermark → completed
"""

from urllib.parse import urlparse

from core.exceptions import UnknownWorkflow, ValidationFailed
from model.project import Project, Segment
from workflow.definition import (
    StepContext,
    StepDefinition,
    WorkflowDefinition,
    result_url,
)
from workflow.events import TaskObserved
from workflow.segments import ensure_merge_ready, ready_video_urls

# 영상 모델별 세그먼트 1개당 크레딧
VIDEO_MODEL_COSTS = {
    "veo3_fast": 60,
    "veo3": 150,
    "sora2": 30,
    "kling": 110,
}
DEFAULT_VIDEO_MODEL = "veo3_fast"
PHOTO_ONLY_COST = 5
WATERMARK_REMOVAL_COST = 3

MAX_SEGMENTS = 5
ASPECT_RATIOS = ("16:9", "9:16")
SORA_HOSTS = ("sora.chatgpt.com",)

VIDEO_STEP = "generating_video"

IMAGE_STALE_SECONDS = 15 * 60
VIDEO_STALE_SECONDS = 30 * 60


def resolve_video_model(model: str | None) -> str:
    if not model or model == "auto":
        return DEFAULT_VIDEO_MODEL
    return model


def segment_video_cost(record: Project) -> int:
    return VIDEO_MODEL_COSTS[resolve_video_model(record.video_model)]


def video_cost(record: Project) -> int:
    return segment_video_cost(record) * max(record.segment_count, 1)


def _cover_cost(record: Project) -> int:
    return PHOTO_ONLY_COST if record.photo_only else 0


def _multi_segment(record: Project) -> bool:
    return record.segment_count > 1


# --- 동기 단계 ---------------------------------------------------------------


def _analyze_image(ctx: StepContext, record: Project) -> dict:
    description = ctx.clients.llm.describe_image(record.input_image_urls[0])
    if not description:
        raise ValueError("image analysis returned an empty description")
    return {"product_description": description}


def _generate_prompts(ctx: StepContext, record: Project) -> dict:
    prompts = ctx.clients.llm.generate_prompts(
        record.product_description or "",
        record.user_requirements,
        record.segment_count,
    )
    return {"prompts": prompts}


# --- payload -----------------------------------------------------------------


def image_prompt(record: Project) -> str:
    prompts = record.prompts or {}
    if prompts.get("image_prompt"):
        return prompts["image_prompt"]
    parts = [
        prompts.get("description") or record.product_description or "",
        prompts.get("setting", ""),
        prompts.get("lighting", ""),
    ]
    text = ". ".join(p for p in parts if p)
    if record.watermark_text:
        text += f'. Add the text "{record.watermark_text}" as a subtle watermark'
    return text or "Product advertisement cover image"


def video_prompt(record: Project) -> str:
    prompts = record.prompts or {}
    if prompts.get("video_prompt"):
        return prompts["video_prompt"]
    keys = ("description", "setting", "camera_movement", "action", "lighting", "dialogue", "music", "ending")
    text = " ".join(f"{key}: {prompts[key]}." for key in keys if prompts.get(key))
    return text or record.product_description or "Product advertisement video"


def segment_prompts(record: Project) -> list[dict]:
    """세그먼트별 (prompt, first_frame_url). 모델이 준 segments 목록이 우선이다."""
    planned = (record.prompts or {}).get("segments") or []
    base = video_prompt(record)
    result = []
    for index in range(record.segment_count):
        item = planned[index] if index < len(planned) else None
        if isinstance(item, dict):
            result.append({"prompt": item.get("prompt") or base, "first_frame_url": item.get("first_frame_url")})
        elif isinstance(item, str) and item:
            result.append({"prompt": item, "first_frame_url": None})
        else:
            result.append({"prompt": f"{base} (part {index + 1} of {record.segment_count})", "first_frame_url": None})
    return result


def _cover_payload(ctx: StepContext, record: Project) -> dict:
    return {
        "prompt": image_prompt(record),
        "image_urls": record.input_image_urls,
        "model": record.image_model,
        "image_size": record.image_size,
    }


def _video_payload(ctx: StepContext, record: Project) -> dict:
    return {
        "prompt": video_prompt(record),
        "model": resolve_video_model(record.video_model),
        "aspect_ratio": record.aspect_ratio,
        "image_urls": [record.cover_image_url] if record.cover_image_url else [],
    }


def _segment_payload(ctx: StepContext, record: Project, segment: Segment) -> dict:
    first_frame = segment.first_frame_url or record.cover_image_url
    return {
        "prompt": segment.prompt or video_prompt(record),
        "model": resolve_video_model(record.video_model),
        "aspect_ratio": record.aspect_ratio,
        "image_urls": [first_frame] if first_frame else [],
    }


def _watermark_payload(ctx: StepContext, record: Project) -> dict:
    return {"video_url": record.input_video_url}


def _merge_payload(ctx: StepContext, record: Project) -> dict:
    return {
        "video_urls": ready_video_urls(ctx.session, record.id),
        "aspect_ratio": record.aspect_ratio,
    }


# --- 결과 반영 ---------------------------------------------------------------


def _cover_result(record: Project, event: TaskObserved) -> dict:
    return {"cover_image_url": result_url(event)}


def _video_result(record: Project, event: TaskObserved) -> dict:
    return {"video_url": result_url(event)}


def _merge_result(record: Project, event: TaskObserved) -> dict:
    return {"merged_video_url": result_url(event)}


# --- 단계 ---------------------------------------------------------------------


def _analyzing_image() -> StepDefinition:
    return StepDefinition(
        name="analyzing_image",
        progress=15,
        output_fields=("product_description",),
        run=_analyze_image,
        reset_fields=("product_description",),
    )


def _generating_prompts() -> StepDefinition:
    return StepDefinition(
        name="generating_prompts",
        progress=30,
        output_fields=("prompts",),
        run=_generate_prompts,
        reset_fields=("prompts",),
    )


def _generating_cover(progress: int = 50) -> StepDefinition:
    return StepDefinition(
        name="generating_cover",
        progress=progress,
        output_fields=("cover_image_url",),
        client="kie",
        task_kind="image",
        task_field="cover_task_id",
        payload=_cover_payload,
        on_result=_cover_result,
        cost=_cover_cost,
        reset_fields=("cover_task_id", "cover_image_url"),
        stale_after=IMAGE_STALE_SECONDS,
    )


def _generating_video(fan_out, progress: int = 85, skip=None) -> StepDefinition:
    step = StepDefinition(
        name=VIDEO_STEP,
        progress=progress,
        output_fields=("video_url",),
        client="kie",
        task_kind="video",
        task_field="video_task_id",
        payload=_video_payload,
        on_result=_video_result,
        segment_plans=segment_prompts,
        segment_payload=_segment_payload,
        fan_out=fan_out,
        cost=video_cost,
        reset_fields=("video_task_id", "video_url", "segment_status"),
        stale_after=VIDEO_STALE_SECONDS,
    )
    if skip:
        step.skip = skip
    return step


def _merging_segments() -> StepDefinition:
    return StepDefinition(
        name="merging_segments",
        progress=95,
        output_fields=("merged_video_url",),
        client="fal",
        task_kind="merge",
        task_field="merge_task_id",
        payload=_merge_payload,
        on_result=_merge_result,
        skip=lambda record: not _multi_segment(record),
        guard=ensure_merge_ready,
        reset_fields=("merge_task_id", "merged_video_url"),
        stale_after=VIDEO_STALE_SECONDS,
    )


# --- 입력 검증 ---------------------------------------------------------------


def _validate_ads(params: dict, max_segments: int = MAX_SEGMENTS) -> None:
    urls = params.get("input_image_urls") or []
    if not urls:
        raise ValidationFailed("상품 이미지 URL이 필요합니다")
    for url in urls:
        if urlparse(url).scheme not in ("http", "https"):
            raise ValidationFailed(f"잘못된 이미지 URL입니다: {url}")

    model = params.get("video_model")
    if model and model != "auto" and model not in VIDEO_MODEL_COSTS:
        raise ValidationFailed(f"지원하지 않는 영상 모델입니다: {model}")

    if params.get("aspect_ratio", "16:9") not in ASPECT_RATIOS:
        raise ValidationFailed(f"지원하지 않는 화면 비율입니다: {params.get('aspect_ratio')}")

    count = params.get("segment_count", 1)
    if not 1 <= count <= max_segments:
        raise ValidationFailed(f"segment_count는 1~{max_segments} 사이여야 합니다")
    if count > 1 and params.get("photo_only"):
        raise ValidationFailed("사진 전용 모드에서는 여러 세그먼트를 만들 수 없습니다")


def _validate_watermark(params: dict) -> None:
    url = params.get("input_video_url")
    if not url:
        raise ValidationFailed("워터마크를 제거할 영상 URL이 필요합니다")
    parsed = urlparse(url)
    if parsed.scheme != "https" or parsed.hostname not in SORA_HOSTS:
        raise ValidationFailed("Sora2 공유 링크(https://sora.chatgpt.com/...)만 지원합니다")


# --- 변형 ---------------------------------------------------------------------


def _standard_outputs(record: Project) -> tuple[str, ...]:
    if record.photo_only:
        return ("cover_image_url",)
    if _multi_segment(record):
        return ("cover_image_url", "video_url", "merged_video_url")
    return ("cover_image_url", "video_url")


def _character_outputs(record: Project) -> tuple[str, ...]:
    return ("prompts",) + _standard_outputs(record)


STANDARD_ADS = WorkflowDefinition(
    name="standard_ads",
    label="Standard ads",
    steps=[
        _analyzing_image(),
        _generating_prompts(),
        _generating_cover(),
        _generating_video(fan_out=_multi_segment, skip=lambda record: record.photo_only),
        _merging_segments(),
    ],
    required_outputs=_standard_outputs,
    regenerate_targets={
        "prompts": "generating_prompts",
        "image": "generating_cover",
        "video": "generating_video",
    },
    validate=_validate_ads,
)

MULTI_VARIANT_ADS = WorkflowDefinition(
    name="multi_variant_ads",
    label="Multi-variant ads",
    steps=[
        _analyzing_image(),
        _generating_prompts(),
        _generating_cover(),
        _generating_video(fan_out=lambda record: True, progress=90),
    ],
    required_outputs=lambda record: ("cover_image_url", "video_url"),
    regenerate_targets={
        "prompts": "generating_prompts",
        "image": "generating_cover",
        "video": "generating_video",
    },
    validate=lambda params: _validate_ads(params, max_segments=4),
)

CHARACTER_ADS = WorkflowDefinition(
    name="character_ads",
    label="Character ads",
    steps=[
        _analyzing_image(),
        _generating_prompts(),
        _generating_cover(),
        _generating_video(fan_out=_multi_segment),
        _merging_segments(),
    ],
    required_outputs=_character_outputs,
    review_after="generating_prompts",
    regenerate_targets={
        "prompts": "generating_prompts",
        "image": "generating_cover",
        "video": "generating_video",
    },
    validate=_validate_ads,
)

WATERMARK_REMOVAL = WorkflowDefinition(
    name="watermark_removal",
    label="Sora2 watermark removal",
    steps=[
        StepDefinition(
            name="removing_watermark",
            progress=90,
            output_fields=("video_url",),
            client="kie",
            task_kind="watermark",
            task_field="video_task_id",
            payload=_watermark_payload,
            on_result=_video_result,
            cost=lambda record: WATERMARK_REMOVAL_COST,
            reset_fields=("video_task_id", "video_url"),
            stale_after=IMAGE_STALE_SECONDS,
        ),
    ],
    required_outputs=lambda record: ("video_url",),
    validate=_validate_watermark,
)

WORKFLOWS = {
    workflow.name: workflow
    for workflow in (STANDARD_ADS, MULTI_VARIANT_ADS, CHARACTER_ADS, WATERMARK_REMOVAL)
}


def get_workflow(name: str) -> WorkflowDefinition:
    workflow = WORKFLOWS.get(name)
    if not workflow:
        raise UnknownWorkflow(details={"workflow_type": name, "supported": sorted(WORKFLOWS)})
    return workflow

"""pytest 공용 fixture.

모든 테스트는 in-memory SQLite DB와 가짜 벤더 클라이언트를 사용하여 격리된다.
- session: 테스트마다 새 DB 세션
- clients: 제출/조회 결과를 테스트가 직접 정하는 가짜 KIE/fal/LLM 클라이언트
- client: TestClient (get_session, get_task_clients 오버라이드)
- credits: user_1에게 500 크레딧 지급
- auth_headers / second_user_headers: 세션 토큰 헤더
"""

import os
import sys
from pathlib import Path

# settings가 import 시점에 환경변수를 읽으므로 앱 import 전에 설정한다
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["RETRY_BASE_DELAY"] = "0"
os.environ["RETRY_MAX_DELAY"] = "0"
os.environ["CAPACITY_CHECK_ENABLED"] = "false"
os.environ["MONITOR_SECRET"] = ""
os.environ["MONITOR_DEBOUNCE_SECONDS"] = "0"
os.environ["PUBLIC_BASE_URL"] = ""
os.environ["WEBHOOK_SECRET"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# src/ 디렉토리를 import path에 추가
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from client.base import (
    TaskClient,
    TaskState,
    TaskStatus,
    TaskSubmissionFailed,
    TransientTaskError,
)
from client.registry import TaskClients
from core.dependencies import get_task_clients
from core.security import create_access_token
from main import app
from model.database import get_session
from service.credit_service import initialize_user_credits

USER_ID = "user_1"
SECOND_USER_ID = "user_2"
PRODUCT_IMAGE = "https://cdn.test/uploads/sneaker.png"


class FakeTaskClient(TaskClient):
    """submit은 task id를 순서대로 발급하고, poll은 테스트가 정한 상태를 돌려준다."""

    def __init__(self, name: str, task_kinds: tuple[str, ...]):
        self.name = name
        self.task_kinds = task_kinds
        self.submitted: list[dict] = []
        self.statuses: dict[str, TaskStatus] = {}
        self.poll_errors: set[str] = set()
        self.poll_calls: list[str] = []
        self.fail_submit: str | None = None
        self.account_credits = 10_000

    def submit(self, task_kind: str, payload: dict) -> str:
        self._check_kind(task_kind)
        if self.fail_submit:
            raise TaskSubmissionFailed(self.fail_submit)
        task_id = f"{self.name}-{task_kind}-{len(self.submitted) + 1}"
        self.submitted.append({"task_kind": task_kind, "task_id": task_id, "payload": payload})
        self.statuses[task_id] = TaskStatus(TaskState.PENDING)
        return task_id

    def poll(self, task_kind: str, task_id: str) -> TaskStatus:
        self._check_kind(task_kind)
        self.poll_calls.append(task_id)
        if task_id in self.poll_errors:
            raise TransientTaskError("connection reset")
        return self.statuses[task_id]

    def get_account_credits(self) -> int:
        return self.account_credits

    # --- 테스트 헬퍼 ---

    def task_ids(self, task_kind: str | None = None) -> list[str]:
        return [s["task_id"] for s in self.submitted if task_kind in (None, s["task_kind"])]

    def last_task_id(self, task_kind: str | None = None) -> str:
        return self.task_ids(task_kind)[-1]

    def succeed(self, task_id: str, url: str | None = None) -> str:
        url = url or f"https://cdn.test/results/{task_id}"
        self.statuses[task_id] = TaskStatus(TaskState.SUCCEEDED, result_url=url, result_urls=[url])
        return url

    def fail(self, task_id: str, reason: str = "content policy violation") -> None:
        self.statuses[task_id] = TaskStatus(TaskState.FAILED, error_detail=reason)

    def run(self, task_id: str) -> None:
        self.statuses[task_id] = TaskStatus(TaskState.RUNNING)


class FakeLlm:
    def __init__(self):
        self.calls: list[str] = []
        self.error: Exception | None = None

    def describe_image(self, image_url: str) -> str:
        self.calls.append("describe_image")
        if self.error:
            raise self.error
        return "A red running sneaker with a white sole"

    def generate_prompts(self, description, requirements=None, segment_count=1) -> dict:
        self.calls.append("generate_prompts")
        if self.error:
            raise self.error
        prompts = {
            "description": description,
            "setting": "city street at dawn",
            "camera_type": "handheld",
            "camera_movement": "slow dolly in",
            "action": "runner laces up the sneaker",
            "lighting": "golden hour",
            "dialogue": "",
            "music": "upbeat synth",
            "ending": "logo on white",
            "other_details": requirements or "",
        }
        if segment_count > 1:
            prompts["segments"] = [
                {"prompt": f"clip {i + 1}", "first_frame_url": f"https://cdn.test/frames/{i}.png"}
                for i in range(segment_count)
            ]
        return prompts

    def close(self) -> None:
        pass


@pytest.fixture()
def engine():
    """테스트마다 새 in-memory SQLite DB를 생성한다.

    StaticPool을 사용해야 모든 커넥션이 같은 in-memory DB를 공유한다.
    (기본값은 커넥션마다 별도 DB가 생성되어 테이블이 안 보임)
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture()
def clients():
    return TaskClients(
        kie=FakeTaskClient("kie", ("image", "video", "watermark")),
        fal=FakeTaskClient("fal", ("merge",)),
        llm=FakeLlm(),
    )


@pytest.fixture()
def client(session, clients):
    """get_session, get_task_clients를 테스트용으로 오버라이드한 TestClient."""

    def _override():
        yield session

    app.dependency_overrides[get_session] = _override
    app.dependency_overrides[get_task_clients] = lambda: clients
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def credits(session):
    """user_1 잔액 500."""
    record, _ = initialize_user_credits(USER_ID, session, 500)
    return record


def _headers(user_id: str) -> dict:
    token = create_access_token({"sub": user_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers():
    """첫 번째 테스트 유저의 인증 헤더."""
    return _headers(USER_ID)


@pytest.fixture()
def second_user_headers():
    """두 번째 테스트 유저의 인증 헤더 (소유권 테스트용)."""
    return _headers(SECOND_USER_ID)


@pytest.fixture()
def start_params():
    """standard_ads 기본 입력. 테스트마다 필요한 값만 덮어쓴다."""
    return {
        "workflow_type": "standard_ads",
        "input_image_urls": [PRODUCT_IMAGE],
        "video_model": "veo3_fast",
        "aspect_ratio": "16:9",
        "photo_only": False,
        "segment_count": 1,
    }

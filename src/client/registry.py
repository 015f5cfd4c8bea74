from dataclasses import dataclass

from client.base import TaskClient
from client.fal import FalClient
from client.kie import KieClient
from client.llm import LlmClient
from core.config import Settings


@dataclass
class TaskClients:
    """앱 수명 동안 공유하는 벤더 클라이언트 묶음 (app.state.task_clients)."""

    kie: TaskClient
    fal: TaskClient
    llm: LlmClient

    def task_client(self, name: str) -> TaskClient:
        return getattr(self, name)

    def close(self) -> None:
        for client in (self.kie, self.fal, self.llm):
            client.close()


def build_task_clients(settings: Settings) -> TaskClients:
    timeout = settings.VENDOR_TIMEOUT_SECONDS
    return TaskClients(
        kie=KieClient(
            api_key=settings.KIE_API_KEY,
            base_url=settings.KIE_BASE_URL,
            callback_url=settings.callback_url("/api/webhooks/kie"),
            timeout=timeout,
        ),
        fal=FalClient(
            api_key=settings.FAL_KEY,
            queue_url=settings.FAL_QUEUE_URL,
            callback_url=settings.callback_url("/api/webhooks/fal"),
            timeout=timeout,
        ),
        llm=LlmClient(
            api_key=settings.OPENROUTER_API_KEY,
            base_url=settings.OPENROUTER_BASE_URL,
            model=settings.OPENROUTER_MODEL,
            timeout=timeout,
        ),
    )

"""HTTP 엔드투엔드 시나리오: 시작 → 모니터 sweep → 완료/실패, 세그먼트 병합, 재생성."""

import pytest

from conftest import PRODUCT_IMAGE
from core.config import settings

SORA_URL = "https://sora.chatgpt.com/p/s_68e0f1"


def _start(client, headers, **overrides):
    body = {
        "workflow_type": "standard_ads",
        "input_image_urls": [PRODUCT_IMAGE],
        "video_model": "veo3_fast",
        "aspect_ratio": "16:9",
    }
    body.update(overrides)
    return client.post("/api/projects/start", headers=headers, json=body)


def _sweep(client) -> dict:
    resp = client.post("/api/monitor-tasks")
    assert resp.status_code == 200
    return resp.json()


def _status(client, headers, project_id) -> dict:
    resp = client.get(f"/api/projects/{project_id}/status", headers=headers)
    assert resp.status_code == 200
    return resp.json()


def _balance(client, headers) -> int:
    return client.get("/api/credits", headers=headers).json()["credits"]


class TestStandardAds:
    def test_happy_path(self, client, clients, credits, auth_headers):
        """커버 → 영상 → 완료. 영상 단계에서만 60 차감."""
        resp = _start(client, auth_headers)
        assert resp.status_code == 201
        project = resp.json()["project"]
        project_id = resp.json()["project_id"]
        assert project["current_step"] == "generating_cover"
        assert project["credits_cost"] == 60
        assert "charged_steps" not in project

        clients.kie.succeed(project["cover_task_id"], "https://cdn.test/cover.png")
        report = _sweep(client)
        assert report["processed"] == 1
        assert report["advanced"] == 1

        project = _status(client, auth_headers, project_id)["project"]
        assert project["current_step"] == "generating_video"
        assert project["cover_image_url"] == "https://cdn.test/cover.png"
        assert project["progress_percentage"] == 50
        video_task = clients.kie.last_task_id("video")
        assert clients.kie.submitted[-1]["payload"]["image_urls"] == ["https://cdn.test/cover.png"]
        assert _balance(client, auth_headers) == 440

        clients.kie.succeed(video_task, "https://cdn.test/ad.mp4")
        report = _sweep(client)
        assert report["completed"] == 1

        project = _status(client, auth_headers, project_id)["project"]
        assert project["status"] == "completed"
        assert project["current_step"] == "completed"
        assert project["progress_percentage"] == 100
        assert project["video_url"] == "https://cdn.test/ad.mp4"
        assert _balance(client, auth_headers) == 440

    def test_pending_task_leaves_record_in_place(self, client, clients, credits, auth_headers):
        project_id = _start(client, auth_headers).json()["project_id"]

        report = _sweep(client)

        assert report["pending"] == 1
        assert _status(client, auth_headers, project_id)["project"]["current_step"] == "generating_cover"

    def test_photo_only_failure_refunds(self, client, clients, credits, auth_headers):
        """사진 전용 커버(5 크레딧) 실패 → failed, 잔액 500으로 복구."""
        resp = _start(client, auth_headers, photo_only=True)
        project = resp.json()["project"]
        assert project["credits_cost"] == 5
        assert _balance(client, auth_headers) == 495

        clients.kie.fail(project["cover_task_id"], "content policy violation")
        report = _sweep(client)
        assert report["failed"] == 1

        project = _status(client, auth_headers, project["id"])["project"]
        assert project["status"] == "failed"
        assert project["error_message"] == "content policy violation"
        assert _balance(client, auth_headers) == 500

        transactions = client.get("/api/credits/transactions", headers=auth_headers).json()["transactions"]
        assert [tx["type"] for tx in transactions[:2]] == ["refund", "usage"]

    def test_photo_only_completes_without_video(self, client, clients, credits, auth_headers):
        project = _start(client, auth_headers, photo_only=True).json()["project"]

        clients.kie.succeed(project["cover_task_id"])
        _sweep(client)

        project = _status(client, auth_headers, project["id"])["project"]
        assert project["status"] == "completed"
        assert project["video_url"] is None
        assert clients.kie.task_ids("video") == []

    def test_insufficient_credits(self, client, clients, credits, auth_headers):
        """veo3 4개 세그먼트(600) > 잔액 500 → 402, 레코드/작업 없음."""
        resp = _start(client, auth_headers, video_model="veo3", segment_count=4)

        assert resp.status_code == 402
        data = resp.json()
        assert data["error_code"] == "INSUFFICIENT_CREDITS"
        assert data["details"] == {"required": 600, "current": 500}
        assert clients.kie.submitted == []
        assert client.get("/api/projects", headers=auth_headers).json()["projects"] == []

    def test_credits_not_initialized(self, client, clients, auth_headers):
        resp = _start(client, auth_headers)

        assert resp.status_code == 409
        assert resp.json()["error_code"] == "CREDITS_NOT_INITIALIZED"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"input_image_urls": []},
            {"input_image_urls": ["ftp://files/a.png"]},
            {"video_model": "imagen"},
            {"aspect_ratio": "4:3"},
            {"segment_count": 6},
            {"photo_only": True, "segment_count": 2},
        ],
    )
    def test_invalid_input(self, client, clients, credits, auth_headers, overrides):
        resp = _start(client, auth_headers, **overrides)

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "VALIDATION_ERROR"
        assert clients.llm.calls == []

    def test_unknown_workflow(self, client, credits, auth_headers):
        resp = _start(client, auth_headers, workflow_type="music_video")

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "UNKNOWN_WORKFLOW"

    def test_vendor_capacity_gate(self, client, clients, credits, auth_headers, monkeypatch):
        """KIE 계정 잔액이 임계값 아래면 503 MAINTENANCE_MODE, 레코드 없음."""
        monkeypatch.setattr(settings, "CAPACITY_CHECK_ENABLED", True)
        clients.kie.account_credits = settings.KIE_CREDIT_THRESHOLD - 1

        resp = _start(client, auth_headers)

        assert resp.status_code == 503
        assert resp.json()["error_code"] == "MAINTENANCE_MODE"
        assert client.get("/api/projects", headers=auth_headers).json()["projects"] == []
        assert _balance(client, auth_headers) == 500


class TestSegments:
    def _to_segments(self, client, clients, headers, **overrides):
        project = _start(client, headers, segment_count=2, **overrides).json()["project"]
        clients.kie.succeed(project["cover_task_id"], "https://cdn.test/cover.png")
        _sweep(client)
        return project["id"]

    def test_fan_out_charges_per_segment(self, client, clients, credits, auth_headers):
        project_id = self._to_segments(client, clients, auth_headers)

        status = _status(client, auth_headers, project_id)
        assert status["project"]["segment_status"] == {"total": 2, "videosReady": 0}
        assert [s["status"] for s in status["segments"]] == ["rendering", "rendering"]
        assert [s["segment_index"] for s in status["segments"]] == [0, 1]
        first_frames = [p["payload"]["image_urls"] for p in clients.kie.submitted if p["task_kind"] == "video"]
        assert first_frames == [["https://cdn.test/frames/0.png"], ["https://cdn.test/frames/1.png"]]
        assert _balance(client, auth_headers) == 380

    def test_merge_waits_for_every_segment(self, client, clients, credits, auth_headers):
        """세그먼트 하나만 준비 → 수동 병합은 409, merge_task_id 그대로."""
        project_id = self._to_segments(client, clients, auth_headers)
        first, second = clients.kie.task_ids("video")

        clients.kie.succeed(first, "https://cdn.test/seg0.mp4")
        _sweep(client)

        project = _status(client, auth_headers, project_id)["project"]
        assert project["segment_status"] == {"total": 2, "videosReady": 1}
        assert project["progress_percentage"] == 67

        resp = client.post(f"/api/projects/{project_id}/merge", headers=auth_headers)
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "MERGE_NOT_READY"
        assert resp.json()["details"] == {"total": 2, "videosReady": 1}
        assert _status(client, auth_headers, project_id)["project"]["merge_task_id"] is None
        assert clients.fal.submitted == []

    def test_auto_merge_and_complete(self, client, clients, credits, auth_headers):
        project_id = self._to_segments(client, clients, auth_headers)
        first, second = clients.kie.task_ids("video")

        clients.kie.succeed(second, "https://cdn.test/seg1.mp4")
        clients.kie.succeed(first, "https://cdn.test/seg0.mp4")
        report = _sweep(client)
        assert report["advanced"] == 1

        project = _status(client, auth_headers, project_id)["project"]
        assert project["current_step"] == "merging_segments"
        assert project["merge_task_id"] == clients.fal.last_task_id("merge")
        assert clients.fal.submitted[0]["payload"]["video_urls"] == [
            "https://cdn.test/seg0.mp4",
            "https://cdn.test/seg1.mp4",
        ]

        resp = client.post(f"/api/projects/{project_id}/merge", headers=auth_headers)
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "MERGE_IN_PROGRESS"
        assert len(clients.fal.submitted) == 1

        clients.fal.succeed(project["merge_task_id"], "https://cdn.test/merged.mp4")
        report = _sweep(client)
        assert report["completed"] == 1

        project = _status(client, auth_headers, project_id)["project"]
        assert project["status"] == "completed"
        assert project["merged_video_url"] == "https://cdn.test/merged.mp4"
        assert _balance(client, auth_headers) == 380

    def test_segment_failure_fails_parent_and_refunds(self, client, clients, credits, auth_headers):
        project_id = self._to_segments(client, clients, auth_headers)
        first, second = clients.kie.task_ids("video")

        clients.kie.fail(second, "upstream timeout")
        _sweep(client)

        status = _status(client, auth_headers, project_id)
        assert status["project"]["status"] == "failed"
        assert status["project"]["error_message"] == "Segment 2 failed: upstream timeout"
        assert status["segments"][1]["status"] == "failed"
        assert _balance(client, auth_headers) == 500

    def test_merge_on_single_clip_rejected(self, client, clients, credits, auth_headers):
        project_id = _start(client, auth_headers).json()["project_id"]

        resp = client.post(f"/api/projects/{project_id}/merge", headers=auth_headers)

        assert resp.status_code == 409
        assert resp.json()["error_code"] == "INVALID_STEP"

    def _completed_segments(self, client, clients, headers) -> str:
        project_id = self._to_segments(client, clients, headers)
        first, second = clients.kie.task_ids("video")
        clients.kie.succeed(first, "https://cdn.test/seg0.mp4")
        clients.kie.succeed(second, "https://cdn.test/seg1.mp4")
        _sweep(client)
        clients.fal.succeed(clients.fal.last_task_id("merge"), "https://cdn.test/merged.mp4")
        _sweep(client)
        assert _status(client, headers, project_id)["project"]["status"] == "completed"
        return project_id

    def test_regenerate_one_segment_and_merge_again(self, client, clients, credits, auth_headers):
        """완료된 프로젝트의 세그먼트 하나만 다시 생성 → 세그먼트 1개 분량 차감, 다시 병합."""
        project_id = self._completed_segments(client, clients, auth_headers)
        assert _balance(client, auth_headers) == 380

        resp = client.patch(
            f"/api/projects/{project_id}/segments/1",
            headers=auth_headers,
            json={"prompt": "closing shot on the podium", "regenerate": "video"},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["project"]["status"] == "in_progress"
        assert data["project"]["current_step"] == "generating_video"
        assert data["project"]["merge_task_id"] is None
        assert data["project"]["merged_video_url"] is None
        assert data["project"]["progress_percentage"] == 67
        assert data["segment_status"] == {"total": 2, "videosReady": 1}
        assert data["segment"]["status"] == "rendering"
        assert data["segment"]["prompt"] == "closing shot on the podium"
        assert data["segment"]["task_id"] == clients.kie.last_task_id("video")
        assert clients.kie.submitted[-1]["payload"]["prompt"] == "closing shot on the podium"
        assert _balance(client, auth_headers) == 320

        clients.kie.succeed(data["segment"]["task_id"], "https://cdn.test/seg1-v2.mp4")
        _sweep(client)

        assert len(clients.fal.submitted) == 2
        assert clients.fal.submitted[-1]["payload"]["video_urls"] == [
            "https://cdn.test/seg0.mp4",
            "https://cdn.test/seg1-v2.mp4",
        ]
        clients.fal.succeed(clients.fal.last_task_id("merge"), "https://cdn.test/merged-v2.mp4")
        _sweep(client)

        project = _status(client, auth_headers, project_id)["project"]
        assert project["status"] == "completed"
        assert project["merged_video_url"] == "https://cdn.test/merged-v2.mp4"
        assert _balance(client, auth_headers) == 320

    def test_segment_regeneration_failure_refunds_its_charge(self, client, clients, credits, auth_headers):
        project_id = self._completed_segments(client, clients, auth_headers)
        client.patch(f"/api/projects/{project_id}/segments/0", headers=auth_headers, json={"regenerate": "video"})
        assert _balance(client, auth_headers) == 320

        clients.kie.fail(clients.kie.last_task_id("video"), "upstream timeout")
        _sweep(client)

        project = _status(client, auth_headers, project_id)["project"]
        assert project["status"] == "failed"
        assert project["error_message"] == "Segment 1 failed: upstream timeout"
        assert _balance(client, auth_headers) == 380

    def test_edit_prompt_while_rendering(self, client, clients, credits, auth_headers):
        """렌더링 중에는 프롬프트만 고칠 수 있고, 영상 재생성은 409."""
        project_id = self._to_segments(client, clients, auth_headers)

        resp = client.patch(
            f"/api/projects/{project_id}/segments/0", headers=auth_headers, json={"prompt": "wider angle"}
        )
        assert resp.status_code == 200
        assert resp.json()["segment"]["prompt"] == "wider angle"
        assert resp.json()["segment"]["status"] == "rendering"

        resp = client.patch(
            f"/api/projects/{project_id}/segments/0", headers=auth_headers, json={"regenerate": "video"}
        )
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "SEGMENT_IN_PROGRESS"
        assert len(clients.kie.task_ids("video")) == 2
        assert _balance(client, auth_headers) == 380

    def test_segment_edit_rejected(self, client, clients, credits, auth_headers):
        project_id = self._to_segments(client, clients, auth_headers)
        single_id = _start(client, auth_headers).json()["project_id"]

        missing = client.patch(f"/api/projects/{project_id}/segments/5", headers=auth_headers, json={})
        single = client.patch(f"/api/projects/{single_id}/segments/0", headers=auth_headers, json={})
        photo = client.patch(f"/api/projects/{project_id}/segments/0", headers=auth_headers, json={"regenerate": "photo"})

        assert missing.status_code == 404
        assert missing.json()["error_code"] == "SEGMENT_NOT_FOUND"
        assert single.status_code == 409
        assert single.json()["error_code"] == "INVALID_STEP"
        assert photo.status_code == 400
        assert photo.json()["error_code"] == "VALIDATION_ERROR"


class TestMultiVariant:
    def test_variants_complete_without_merge(self, client, clients, credits, auth_headers):
        project = _start(client, auth_headers, workflow_type="multi_variant_ads", segment_count=3).json()["project"]
        assert project["credits_cost"] == 180

        clients.kie.succeed(project["cover_task_id"])
        _sweep(client)
        for task_id in clients.kie.task_ids("video"):
            clients.kie.succeed(task_id)
        report = _sweep(client)

        assert report["completed"] == 1
        status = _status(client, auth_headers, project["id"])
        assert status["project"]["status"] == "completed"
        assert status["project"]["segment_status"] == {"total": 3, "videosReady": 3}
        assert status["project"]["video_url"] == status["segments"][0]["video_url"]
        assert clients.fal.submitted == []

    def test_at_most_four_variants(self, client, credits, auth_headers):
        resp = _start(client, auth_headers, workflow_type="multi_variant_ads", segment_count=5)
        assert resp.status_code == 400


class TestCharacterAds:
    def test_review_then_confirm(self, client, clients, credits, auth_headers):
        project = _start(client, auth_headers, workflow_type="character_ads").json()["project"]
        assert project["status"] == "awaiting_review"
        assert project["prompts"]["setting"] == "city street at dawn"

        # 검토 대기 중에는 모니터도, 수동 실행도 진행시키지 않는다
        assert _sweep(client)["processed"] == 0
        resp = client.post(
            f"/api/projects/{project['id']}/process",
            headers=auth_headers,
            json={"step": "generating_cover"},
        )
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "INVALID_PROJECT_STATE"

        resp = client.patch(
            f"/api/projects/{project['id']}/confirm",
            headers=auth_headers,
            json={"prompts": {"setting": "rooftop at night"}},
        )
        assert resp.status_code == 200
        project = resp.json()["project"]
        assert project["status"] == "in_progress"
        assert project["prompts"]["setting"] == "rooftop at night"
        assert project["cover_task_id"] == clients.kie.last_task_id("image")

    def test_confirm_twice(self, client, clients, credits, auth_headers):
        project_id = _start(client, auth_headers, workflow_type="character_ads").json()["project_id"]
        client.patch(f"/api/projects/{project_id}/confirm", headers=auth_headers, json={})

        resp = client.patch(f"/api/projects/{project_id}/confirm", headers=auth_headers, json={})

        assert resp.status_code == 409
        assert resp.json()["error_code"] == "NOT_AWAITING_REVIEW"
        assert len(clients.kie.task_ids("image")) == 1


class TestRegenerate:
    def _completed(self, client, clients, headers) -> str:
        project = _start(client, headers).json()["project"]
        clients.kie.succeed(project["cover_task_id"])
        _sweep(client)
        clients.kie.succeed(clients.kie.last_task_id("video"))
        _sweep(client)
        return project["id"]

    def test_regenerate_image_reuses_video_charge(self, client, clients, credits, auth_headers):
        """커버 재생성 → 뒤 단계 산출물 초기화, 영상은 기존 차감분으로 다시 생성 (추가 차감 없음)."""
        project_id = self._completed(client, clients, auth_headers)
        assert _balance(client, auth_headers) == 440

        resp = client.post(
            f"/api/projects/{project_id}/regenerate",
            headers=auth_headers,
            json={"target": "image", "prompt": "sneaker on a mountain top"},
        )
        assert resp.status_code == 200
        project = resp.json()["project"]
        assert project["status"] == "in_progress"
        assert project["current_step"] == "generating_cover"
        assert project["progress_percentage"] == 30
        assert project["cover_image_url"] is None
        assert project["video_url"] is None
        assert clients.kie.submitted[-1]["payload"]["prompt"] == "sneaker on a mountain top"

        clients.kie.succeed(project["cover_task_id"])
        _sweep(client)
        clients.kie.succeed(clients.kie.last_task_id("video"))
        _sweep(client)

        assert _status(client, auth_headers, project_id)["project"]["status"] == "completed"
        assert len(clients.kie.task_ids("video")) == 2
        assert _balance(client, auth_headers) == 440

    def test_regenerate_video_charges_again(self, client, clients, credits, auth_headers):
        project_id = self._completed(client, clients, auth_headers)

        resp = client.post(
            f"/api/projects/{project_id}/regenerate", headers=auth_headers, json={"target": "video"}
        )

        assert resp.status_code == 200
        assert resp.json()["project"]["current_step"] == "generating_video"
        assert resp.json()["project"]["cover_image_url"] is not None
        assert _balance(client, auth_headers) == 380

    def test_unsupported_target(self, client, clients, credits, auth_headers):
        project_id = _start(client, auth_headers).json()["project_id"]

        resp = client.post(
            f"/api/projects/{project_id}/regenerate", headers=auth_headers, json={"target": "music"}
        )

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "UNSUPPORTED_REGENERATION"


class TestWatermarkRemoval:
    def test_rejects_non_sora_url(self, client, credits, auth_headers):
        resp = client.post(
            "/api/projects/start",
            headers=auth_headers,
            json={"workflow_type": "watermark_removal", "input_video_url": "https://youtube.com/watch?v=1"},
        )
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    def test_completes_via_monitor(self, client, clients, credits, auth_headers):
        resp = client.post(
            "/api/projects/start",
            headers=auth_headers,
            json={"workflow_type": "watermark_removal", "input_video_url": SORA_URL},
        )
        project = resp.json()["project"]
        assert project["current_step"] == "removing_watermark"
        assert clients.kie.submitted[0]["payload"] == {"video_url": SORA_URL}
        assert _balance(client, auth_headers) == 497

        clients.kie.succeed(project["video_task_id"], "https://cdn.test/clean.mp4")
        _sweep(client)

        project = _status(client, auth_headers, project["id"])["project"]
        assert project["status"] == "completed"
        assert project["video_url"] == "https://cdn.test/clean.mp4"


class TestOwnership:
    def test_other_users_project_forbidden(self, client, credits, auth_headers, second_user_headers):
        project_id = _start(client, auth_headers).json()["project_id"]

        resp = client.get(f"/api/projects/{project_id}/status", headers=second_user_headers)

        assert resp.status_code == 403
        assert resp.json()["error_code"] == "FORBIDDEN"

    def test_unknown_project(self, client, auth_headers):
        resp = client.get("/api/projects/doesnotexist/status", headers=auth_headers)

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "PROJECT_NOT_FOUND"

    def test_list_only_own_projects(self, client, credits, auth_headers, second_user_headers):
        _start(client, auth_headers)

        assert len(client.get("/api/projects", headers=auth_headers).json()["projects"]) == 1
        assert client.get("/api/projects", headers=second_user_headers).json()["projects"] == []

    def test_requires_auth(self, client):
        resp = client.post("/api/projects/start", json={"workflow_type": "standard_ads"})

        assert resp.status_code == 401
        assert resp.json()["error_code"] == "UNAUTHORIZED"

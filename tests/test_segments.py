"""세그먼트 저장소 + 병합 전제 조건 테스트."""

import pytest

from core.exceptions import InvalidProjectState, MergeInProgress, MergeNotReady
from model.project import SEGMENT_FAILED, SEGMENT_READY, Project
from workflow import segments


@pytest.fixture()
def record(session):
    project = Project(
        user_id="user_1",
        workflow_type="standard_ads",
        current_step="generating_video",
        segment_count=3,
        input_image_urls=["https://cdn.test/a.png"],
    )
    session.add(project)
    session.commit()
    session.refresh(project)
    return project


@pytest.fixture()
def rendering(session, record):
    """세그먼트 3개를 만들고 모두 task id를 붙여 rendering 상태로 둔다."""
    plans = [{"prompt": f"clip {i}", "first_frame_url": None} for i in range(3)]
    segments.create_segments(session, record, plans)
    session.commit()
    for segment in segments.list_segments(session, record.id):
        segments.record_segment_task(session, segment, f"veo-{segment.segment_index}")
    session.commit()
    return segments.list_segments(session, record.id)


class TestCreateAndList:
    def test_ordered_by_index(self, session, record):
        plans = [{"prompt": "a"}, {"prompt": "b", "first_frame_url": "https://f/1.png"}]
        segments.create_segments(session, record, plans)
        session.commit()

        rows = segments.list_segments(session, record.id)

        assert [(s.segment_index, s.prompt) for s in rows] == [(0, "a"), (1, "b")]
        assert rows[1].first_frame_url == "https://f/1.png"
        assert all(s.status == "pending" for s in rows)
        assert len(segments.unsubmitted_segments(session, record.id)) == 2

    def test_task_recorded_once(self, session, record):
        """같은 세그먼트에 두 번째 task id는 기록되지 않는다."""
        segments.create_segments(session, record, [{"prompt": "a"}])
        session.commit()
        segment = segments.list_segments(session, record.id)[0]

        assert segments.record_segment_task(session, segment, "veo-1") is True
        session.commit()
        assert segments.record_segment_task(session, segment, "veo-2") is False

        segment = segments.find_segment(session, record.id, "veo-1")
        assert segment.status == "rendering"
        assert segments.find_segment(session, record.id, "veo-2") is None
        assert segments.unsubmitted_segments(session, record.id) == []


class TestMarkAndSummarize:
    def test_duplicate_result_applied_once(self, session, record, rendering):
        segment = rendering[0]

        assert segments.mark_segment(session, segment, SEGMENT_READY, video_url="https://v/0.mp4") is True
        session.commit()
        assert segments.mark_segment(session, segment, SEGMENT_READY, video_url="https://v/0b.mp4") is False

        assert segments.ready_video_urls(session, record.id) == ["https://v/0.mp4"]

    def test_summary_and_urls_in_index_order(self, session, record, rendering):
        for segment in reversed(rendering):
            segments.mark_segment(session, segment, SEGMENT_READY, video_url=f"https://v/{segment.segment_index}.mp4")
        session.commit()

        assert segments.summarize(session, record.id) == {"total": 3, "videosReady": 3}
        assert segments.ready_video_urls(session, record.id) == [
            "https://v/0.mp4",
            "https://v/1.mp4",
            "https://v/2.mp4",
        ]

    def test_failed_segment_not_counted(self, session, record, rendering):
        segments.mark_segment(session, rendering[0], SEGMENT_READY, video_url="https://v/0.mp4")
        segments.mark_segment(session, rendering[1], SEGMENT_FAILED, error="timeout")
        session.commit()

        assert segments.summarize(session, record.id) == {"total": 3, "videosReady": 1}

    def test_delete(self, session, record, rendering):
        segments.delete_segments(session, record.id)
        session.commit()

        assert segments.list_segments(session, record.id) == []
        assert segments.summarize(session, record.id) == {"total": 0, "videosReady": 0}


class TestEnsureMergeReady:
    def test_no_segments(self, session, record):
        with pytest.raises(MergeNotReady):
            segments.ensure_merge_ready(session, record)

    def test_partially_ready(self, session, record, rendering):
        """3개 중 2개만 ready → MERGE_NOT_READY, 집계가 details로 나간다."""
        for segment in rendering[:2]:
            segments.mark_segment(session, segment, SEGMENT_READY, video_url="https://v.mp4")
        session.commit()

        with pytest.raises(MergeNotReady) as exc_info:
            segments.ensure_merge_ready(session, record)
        assert exc_info.value.details == {"total": 3, "videosReady": 2}

    def test_all_ready(self, session, record, rendering):
        for segment in rendering:
            segments.mark_segment(session, segment, SEGMENT_READY, video_url="https://v.mp4")
        session.commit()

        segments.ensure_merge_ready(session, record)

    def test_merge_already_submitted(self, session, record, rendering):
        record.merge_task_id = "fal-1"

        with pytest.raises(MergeInProgress):
            segments.ensure_merge_ready(session, record)

    def test_already_merged(self, session, record):
        record.merged_video_url = "https://v/merged.mp4"

        with pytest.raises(InvalidProjectState):
            segments.ensure_merge_ready(session, record)

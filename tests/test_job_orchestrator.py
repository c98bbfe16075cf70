import unittest
from pathlib import Path
from unittest.mock import MagicMock

from clipai.core.credits import INSUFFICIENT_CREDITS, CreditError, CreditLedger
from clipai.core.models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    Caption,
    HighlightClip,
    ProcessingJob,
    Thumbnail,
)
from clipai.core.status import StatusReader
from clipai.core.storage import FileManager
from clipai.workers.analyzer import AnalysisResult, CaptionDraft, RenderOutput
from clipai.workers.dispatch import ThreadPoolDispatcher
from clipai.workers.pipeline import (
    JobOrchestrator,
    JobStateError,
    VideoNotFoundError,
)

from factories import (
    FakeAnalyzer,
    RecordingDispatcher,
    count_rows,
    create_user,
    create_video,
    make_database,
    make_result,
    user_credits,
)


class FileWritingRenderer:
    """Writes one small file per item into the job's render directory."""

    def __init__(self, error=None, outside_root=None):
        self.error = error
        self.outside_root = outside_root

    def render(self, video_path, highlights, thumbnails, out_dir):
        out_dir.mkdir(parents=True, exist_ok=True)
        (out_dir / "partial.tmp").write_bytes(b"x")
        if self.error is not None:
            raise self.error
        target = self.outside_root or out_dir
        clips = []
        for index, _ in enumerate(highlights):
            path = target / f"clip_{index}.mp4"
            path.write_bytes(b"clip")
            clips.append(path)
        thumbs = []
        for index, _ in enumerate(thumbnails):
            path = target / f"thumb_{index}.jpg"
            path.write_bytes(b"jpg")
            thumbs.append(path)
        # last thumbnail failed to render
        if thumbs:
            thumbs[-1] = None
        return RenderOutput(clips=clips, thumbnails=thumbs)


class JobOrchestratorTests(unittest.TestCase):
    def setUp(self):
        self.session_factory, self.tmp = make_database(self)
        self.files = FileManager(self.tmp / "storage")
        (self.files.videos_dir / "input.mp4").write_bytes(b"fake")
        self.dispatcher = ThreadPoolDispatcher(max_workers=2)
        self.addCleanup(self.dispatcher.shutdown)
        self.ledger = CreditLedger(self.session_factory)
        self.reader = StatusReader(self.session_factory)

    def build(self, analyzer, renderer=None, ledger=None, dispatcher=None):
        return JobOrchestrator(
            session_factory=self.session_factory,
            ledger=ledger or self.ledger,
            analyzer=analyzer,
            files=self.files,
            dispatcher=dispatcher or self.dispatcher,
            renderer=renderer,
        )

    def run_to_end(self, orchestrator, video_id, user_id=None):
        start = orchestrator.start_processing(video_id, user_id)
        self.assertEqual(start.status, JOB_PROCESSING)
        self.assertTrue(self.dispatcher.wait(start.job_id, timeout=10))
        return self.reader.get_status(start.job_id)

    def test_successful_job_persists_everything_and_spends_one_credit(self):
        user_id = create_user(self.session_factory, credits=3)
        video_id = create_video(self.session_factory, user_id)
        analyzer = FakeAnalyzer(make_result(highlights=2, thumbnails=3, captions=1))

        status = self.run_to_end(self.build(analyzer), video_id, user_id)

        self.assertEqual(status.status, JOB_COMPLETED)
        self.assertEqual(status.progress, 100)
        self.assertIsNone(status.error_message)
        self.assertEqual(len(status.highlights), 2)
        self.assertEqual(len(status.thumbnails), 3)
        self.assertEqual(len(status.captions), 1)
        self.assertEqual(status.captions[0].hashtags, ["a", "b"])
        self.assertEqual(user_credits(self.session_factory, user_id), 2)
        self.assertEqual(analyzer.calls, [self.files.to_absolute_path("videos/input.mp4")])

    def test_clip_and_thumbnail_paths_follow_naming_convention(self):
        video_id = create_video(self.session_factory)
        analyzer = FakeAnalyzer(make_result(highlights=1, thumbnails=1, captions=0))

        status = self.run_to_end(self.build(analyzer), video_id)

        job_id = status.job.id
        self.assertEqual(
            status.highlights[0].file_path, f"clips/clip_{job_id}_0_moment_0.mp4"
        )
        self.assertEqual(status.thumbnails[0].file_path, f"thumbnails/thumb_{job_id}_0_5s.jpg")

    def test_analyzer_failure_refunds_and_marks_job_failed(self):
        user_id = create_user(self.session_factory, credits=1)
        video_id = create_video(self.session_factory, user_id)
        analyzer = FakeAnalyzer(error=RuntimeError("upstream unavailable"))

        status = self.run_to_end(self.build(analyzer), video_id, user_id)

        self.assertEqual(status.status, JOB_FAILED)
        self.assertEqual(status.error_message, "upstream unavailable")
        self.assertEqual(status.highlights, [])
        self.assertEqual(status.thumbnails, [])
        self.assertEqual(status.captions, [])
        self.assertEqual(user_credits(self.session_factory, user_id), 1)
        self.assertEqual(count_rows(self.session_factory, HighlightClip), 0)

    def test_insert_batch_failure_refunds_and_leaves_no_derived_rows(self):
        user_id = create_user(self.session_factory, credits=1)
        video_id = create_video(self.session_factory, user_id)
        result = make_result(highlights=2, thumbnails=3, captions=0)
        broken = AnalysisResult(
            highlights=result.highlights,
            thumbnails=result.thumbnails,
            captions=[CaptionDraft(platform="youtube", content=None)],
        )

        status = self.run_to_end(self.build(FakeAnalyzer(broken)), video_id, user_id)

        self.assertEqual(status.status, JOB_FAILED)
        self.assertTrue(status.error_message)
        self.assertEqual(user_credits(self.session_factory, user_id), 1)
        for model in (HighlightClip, Thumbnail, Caption):
            self.assertEqual(count_rows(self.session_factory, model), 0)

    def test_anonymous_job_never_touches_the_ledger(self):
        video_id = create_video(self.session_factory)
        ledger = MagicMock(spec=CreditLedger)

        status = self.run_to_end(self.build(FakeAnalyzer(), ledger=ledger), video_id)

        self.assertEqual(status.status, JOB_COMPLETED)
        self.assertIsNone(status.job.user_id)
        self.assertEqual(ledger.method_calls, [])

    def test_subscriber_jobs_do_not_spend_credits(self):
        user_id = create_user(self.session_factory, credits=0, is_subscribed=True)
        video_id = create_video(self.session_factory, user_id)
        orchestrator = self.build(FakeAnalyzer())

        first = self.run_to_end(orchestrator, video_id, user_id)
        second = self.run_to_end(orchestrator, video_id, user_id)

        self.assertEqual(first.status, JOB_COMPLETED)
        self.assertEqual(second.status, JOB_COMPLETED)
        self.assertNotEqual(first.job.id, second.job.id)
        self.assertEqual(user_credits(self.session_factory, user_id), 0)

    def test_denied_request_creates_no_job(self):
        user_id = create_user(self.session_factory, credits=0)
        video_id = create_video(self.session_factory, user_id)
        analyzer = FakeAnalyzer()
        dispatcher = RecordingDispatcher()

        with self.assertRaises(CreditError) as ctx:
            self.build(analyzer, dispatcher=dispatcher).start_processing(video_id, user_id)

        self.assertEqual(ctx.exception.reason, INSUFFICIENT_CREDITS)
        self.assertEqual(count_rows(self.session_factory, ProcessingJob), 0)
        self.assertEqual(dispatcher.dispatched, [])
        self.assertEqual(analyzer.calls, [])

    def test_missing_video_is_rejected_before_dispatch(self):
        user_id = create_user(self.session_factory, credits=2)
        dispatcher = RecordingDispatcher()

        with self.assertRaises(VideoNotFoundError):
            self.build(FakeAnalyzer(), dispatcher=dispatcher).start_processing(999, user_id)

        self.assertEqual(dispatcher.dispatched, [])
        self.assertEqual(user_credits(self.session_factory, user_id), 2)

    def test_each_submission_is_charged(self):
        user_id = create_user(self.session_factory, credits=3)
        video_id = create_video(self.session_factory, user_id)
        orchestrator = self.build(FakeAnalyzer())

        self.run_to_end(orchestrator, video_id, user_id)
        self.run_to_end(orchestrator, video_id, user_id)

        self.assertEqual(user_credits(self.session_factory, user_id), 1)

    def test_rendered_paths_are_backfilled(self):
        video_id = create_video(self.session_factory)
        analyzer = FakeAnalyzer(make_result(highlights=2, thumbnails=2, captions=0))

        status = self.run_to_end(
            self.build(analyzer, renderer=FileWritingRenderer()), video_id
        )

        job_id = status.job.id
        self.assertEqual(status.status, JOB_COMPLETED)
        self.assertEqual(
            [h.file_path for h in status.highlights],
            [f"renders/job_{job_id}/clip_0.mp4", f"renders/job_{job_id}/clip_1.mp4"],
        )
        self.assertEqual(
            [t.file_path for t in status.thumbnails],
            [f"renders/job_{job_id}/thumb_0.jpg", f"thumbnails/thumb_{job_id}_1_15s.jpg"],
        )

    def test_path_update_failure_still_completes(self):
        video_id = create_video(self.session_factory)
        outside = self.tmp / "elsewhere"
        outside.mkdir()
        analyzer = FakeAnalyzer(make_result(highlights=1, thumbnails=0, captions=0))

        status = self.run_to_end(
            self.build(analyzer, renderer=FileWritingRenderer(outside_root=outside)),
            video_id,
        )

        self.assertEqual(status.status, JOB_COMPLETED)
        self.assertEqual(
            status.highlights[0].file_path, f"clips/clip_{status.job.id}_0_moment_0.mp4"
        )

    def test_placeholder_results_are_not_rendered(self):
        video_id = create_video(self.session_factory)
        renderer = MagicMock()
        analyzer = FakeAnalyzer(make_result(placeholder=True))

        status = self.run_to_end(self.build(analyzer, renderer=renderer), video_id)

        self.assertEqual(status.status, JOB_COMPLETED)
        renderer.render.assert_not_called()

    def test_render_failure_refunds_and_removes_job_files(self):
        user_id = create_user(self.session_factory, credits=2)
        video_id = create_video(self.session_factory, user_id)
        renderer = FileWritingRenderer(error=RuntimeError("ffmpeg crashed"))

        status = self.run_to_end(
            self.build(FakeAnalyzer(), renderer=renderer), video_id, user_id
        )

        self.assertEqual(status.status, JOB_FAILED)
        self.assertEqual(status.error_message, "ffmpeg crashed")
        self.assertEqual(user_credits(self.session_factory, user_id), 2)
        self.assertFalse((self.files.renders_dir_root / f"job_{status.job.id}").exists())
        self.assertFalse((self.files.frames_dir_root / f"job_{status.job.id}").exists())
        for model in (HighlightClip, Thumbnail, Caption):
            self.assertEqual(count_rows(self.session_factory, model), 0)

    def test_run_job_ignores_jobs_that_are_not_processing(self):
        video_id = create_video(self.session_factory)
        analyzer = FakeAnalyzer()
        orchestrator = self.build(analyzer)
        status = self.run_to_end(orchestrator, video_id)

        orchestrator.run_job(status.job.id)
        orchestrator.run_job(4040)

        self.assertEqual(len(analyzer.calls), 1)
        self.assertEqual(self.reader.get_status(status.job.id).status, JOB_COMPLETED)

    def test_delete_job_removes_rows_and_files(self):
        video_id = create_video(self.session_factory)
        orchestrator = self.build(
            FakeAnalyzer(make_result(highlights=1, thumbnails=1, captions=1)),
            renderer=FileWritingRenderer(),
        )
        status = self.run_to_end(orchestrator, video_id)
        clip_file = self.files.to_absolute_path(status.highlights[0].file_path)
        self.assertTrue(clip_file.exists())

        orchestrator.delete_job(status.job.id)

        self.assertIsNone(self.reader.get_status(status.job.id))
        self.assertFalse(clip_file.exists())
        for model in (HighlightClip, Thumbnail, Caption):
            self.assertEqual(count_rows(self.session_factory, model), 0)

    def test_delete_job_refuses_running_job(self):
        video_id = create_video(self.session_factory)
        orchestrator = self.build(FakeAnalyzer(), dispatcher=RecordingDispatcher())
        start = orchestrator.start_processing(video_id)

        with self.assertRaises(JobStateError):
            orchestrator.delete_job(start.job_id)

        self.assertEqual(self.reader.get_status(start.job_id).status, JOB_PROCESSING)

    def test_delete_video_removes_every_job_and_the_upload(self):
        video_id = create_video(self.session_factory)
        orchestrator = self.build(
            FakeAnalyzer(make_result(highlights=1, thumbnails=1, captions=1)),
            renderer=FileWritingRenderer(),
        )
        first = self.run_to_end(orchestrator, video_id)
        second = self.run_to_end(orchestrator, video_id)
        video_file = self.files.videos_dir / "input.mp4"

        orchestrator.delete_video(video_id)

        self.assertFalse(video_file.exists())
        for status in (first, second):
            self.assertFalse((self.files.renders_dir_root / f"job_{status.job.id}").exists())
        for model in (ProcessingJob, HighlightClip, Thumbnail, Caption):
            self.assertEqual(count_rows(self.session_factory, model), 0)
        with self.assertRaises(VideoNotFoundError):
            orchestrator.delete_video(video_id)


class InsertBatchTests(unittest.TestCase):
    def test_operations_are_ordered_highlights_thumbnails_captions(self):
        session_factory, tmp = make_database(self)
        orchestrator = JobOrchestrator(
            session_factory=session_factory,
            ledger=MagicMock(),
            analyzer=FakeAnalyzer(),
            files=FileManager(Path(tmp) / "storage"),
            dispatcher=RecordingDispatcher(),
        )

        operations = orchestrator.build_insert_operations(
            7, make_result(highlights=2, thumbnails=3, captions=1)
        )

        tables = [op.statement.table.name for op in operations]
        self.assertEqual(
            tables,
            ["highlight_clips"] * 2 + ["thumbnails"] * 3 + ["captions"],
        )


if __name__ == "__main__":
    unittest.main()

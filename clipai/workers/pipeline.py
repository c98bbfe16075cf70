import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, insert, select, update
from sqlalchemy.orm import Session

from clipai.core.credits import INSUFFICIENT_CREDITS, CreditError, CreditLedger
from clipai.core.db import SessionLocal
from clipai.core.models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    Caption,
    HighlightClip,
    JobRecord,
    ProcessingJob,
    Thumbnail,
    Video,
    VideoRecord,
)
from clipai.core.normalizers import join_hashtags, normalize_error_message
from clipai.core.storage import FileManager
from clipai.core.transaction import (
    DatabaseTransaction,
    Inserted,
    Operation,
    SessionFactory,
    execute_with_transaction,
    with_transaction,
)
from clipai.workers.analyzer import (
    AnalysisResult,
    VideoAnalyzer,
    VideoRenderer,
    get_analyzer,
    get_renderer,
)
from clipai.workers.dispatch import JobDispatcher, get_dispatcher

logger = logging.getLogger(__name__)

jobs_table = ProcessingJob.__table__
highlights_table = HighlightClip.__table__
thumbnails_table = Thumbnail.__table__
captions_table = Caption.__table__

PROGRESS_CREDITS_RESERVED = 10
PROGRESS_ANALYZED = 60
PROGRESS_PERSISTED = 85
PROGRESS_DONE = 100


class VideoNotFoundError(LookupError):
    pass


class JobNotFoundError(LookupError):
    pass


class JobStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class JobStart:
    job_id: int
    status: str


def safe_commit(db: Session) -> None:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


class JobOrchestrator:
    """
    Turns one processing request into a job row plus a detached task.

    The task spends a credit (authenticated users only), runs the analyzer,
    persists every derived record in one atomic batch and marks the job
    completed. Any failure refunds the credit, removes files written for the
    job and marks it failed with the error message.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        ledger: CreditLedger,
        analyzer: VideoAnalyzer,
        files: FileManager,
        dispatcher: JobDispatcher,
        renderer: Optional[VideoRenderer] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.analyzer = analyzer
        self.files = files
        self.dispatcher = dispatcher
        self.renderer = renderer

    # ----------------------------
    # Request side
    # ----------------------------
    def start_processing(self, video_id: int, user_id: Optional[int] = None) -> JobStart:
        if user_id:
            check = self.ledger.check_credits(user_id)
            if not check.can_proceed:
                logger.info(
                    "JOB_DENIED video_id=%s user_id=%s reason=%s",
                    video_id,
                    user_id,
                    check.reason,
                )
                raise CreditError(check.reason or INSUFFICIENT_CREDITS)

        with self.session_factory() as db:
            video = db.get(Video, video_id)
            if video is None:
                raise VideoNotFoundError(f"Video {video_id} not found")

            job = ProcessingJob(
                video_id=video.id,
                user_id=user_id,
                status=JOB_PROCESSING,
                progress=0,
            )
            db.add(job)
            safe_commit(db)
            job_id = job.id

        logger.info("JOB_CREATED job_id=%s video_id=%s user_id=%s", job_id, video_id, user_id)
        self.dispatcher.dispatch(job_id, self.run_job)
        return JobStart(job_id=job_id, status=JOB_PROCESSING)

    def delete_job(self, job_id: int) -> None:
        with self.session_factory() as db:
            job = db.get(ProcessingJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status == JOB_PROCESSING:
                raise JobStateError("Job is still processing")
            recorded = self._recorded_paths(db, job_id)
            db.delete(job)
            safe_commit(db)
        self.files.cleanup_job_files(job_id, recorded)
        logger.info("JOB_DELETED job_id=%s", job_id)

    def delete_video(self, video_id: int) -> None:
        """Remove a video, every job for it (cascade) and all of their files."""
        with self.session_factory() as db:
            video = db.get(Video, video_id)
            if video is None:
                raise VideoNotFoundError(f"Video {video_id} not found")
            jobs = db.execute(
                select(jobs_table.c.id, jobs_table.c.status).where(jobs_table.c.video_id == video_id)
            ).all()
            if any(row.status == JOB_PROCESSING for row in jobs):
                raise JobStateError("Video has a job that is still processing")
            recorded = {row.id: self._recorded_paths(db, row.id) for row in jobs}
            file_path = video.file_path
            db.delete(video)
            safe_commit(db)

        for job_id, paths in recorded.items():
            self.files.cleanup_job_files(job_id, paths)
        self.files.delete_file(file_path)
        logger.info("VIDEO_DELETED video_id=%s jobs=%s", video_id, len(recorded))

    # ----------------------------
    # Background side
    # ----------------------------
    def _load(self, job_id: int) -> Tuple[Optional[JobRecord], Optional[VideoRecord]]:
        with self.session_factory() as db:
            job = db.get(ProcessingJob, job_id)
            if job is None:
                return None, None
            video = db.get(Video, job.video_id)
            return (
                JobRecord.from_model(job),
                VideoRecord.from_model(video) if video is not None else None,
            )

    def run_job(self, job_id: int) -> None:
        job, video = self._load(job_id)
        if job is None:
            logger.warning("JOB_SKIP job_id=%s reason=job_not_found", job_id)
            return
        if job.status != JOB_PROCESSING:
            logger.info("JOB_SKIP job_id=%s reason=status_%s", job_id, job.status)
            return

        logger.info("JOB_START job_id=%s video_id=%s user_id=%s", job.id, job.video_id, job.user_id)
        try:
            if video is None:
                raise VideoNotFoundError(f"Video {job.video_id} not found")
            if job.user_id:
                self.ledger.execute_with_rollback(
                    job.user_id, lambda: self._perform(job, video)
                )
            else:
                self._perform(job, video)
        except Exception as exc:
            logger.error("JOB_FAILED job_id=%s error=%s", job_id, exc, exc_info=True)
            self._cleanup(job_id)
            self._mark_failed(job_id, exc)
            return

        logger.info("JOB_COMPLETED job_id=%s", job_id)

    def _perform(self, job: JobRecord, video: VideoRecord) -> int:
        self._set_progress(job.id, PROGRESS_CREDITS_RESERVED)
        video_path = self.files.to_absolute_path(video.file_path)

        try:
            result = self.analyzer.analyze(video_path, self.files.frames_dir(job.id))
        finally:
            self.files.cleanup_frames(job.id)
        logger.info(
            "ANALYSIS_DONE job_id=%s highlights=%s thumbnails=%s captions=%s placeholder=%s",
            job.id,
            len(result.highlights),
            len(result.thumbnails),
            len(result.captions),
            result.placeholder,
        )
        self._set_progress(job.id, PROGRESS_ANALYZED)

        operations = self.build_insert_operations(job.id, result)
        results = with_transaction(self.session_factory, operations)
        logger.info(
            "ARTIFACTS_PERSISTED job_id=%s records=%s", job.id, len(operations)
        )
        self._set_progress(job.id, PROGRESS_PERSISTED)

        if self.renderer is not None and not result.placeholder and video_path.exists():
            highlight_ids = [_inserted_id(r) for r in results[: len(result.highlights)]]
            thumbnail_ids = [
                _inserted_id(r)
                for r in results[
                    len(result.highlights) : len(result.highlights) + len(result.thumbnails)
                ]
            ]
            self._render_and_backfill(job.id, video_path, result, highlight_ids, thumbnail_ids)
        else:
            logger.info("RENDER_SKIPPED job_id=%s", job.id)

        self._mark_completed(job.id)
        return job.id

    def build_insert_operations(self, job_id: int, result: AnalysisResult) -> List[Operation]:
        """Highlights first, then thumbnails, then captions, each in analyzer order."""
        operations: List[Operation] = []
        for index, highlight in enumerate(result.highlights):
            clip_path = self.files.clip_path(job_id, index, highlight.title)
            operations.append(
                Operation.write(
                    insert(highlights_table).values(
                        job_id=job_id,
                        title=highlight.title,
                        description=highlight.description or None,
                        file_path=self.files.to_relative_path(clip_path),
                        duration=highlight.duration,
                        start_time=highlight.start_time,
                        end_time=highlight.end_time,
                        confidence=highlight.confidence,
                    )
                )
            )
        for index, thumbnail in enumerate(result.thumbnails):
            thumb_path = self.files.thumbnail_path(job_id, index, thumbnail.timestamp)
            operations.append(
                Operation.write(
                    insert(thumbnails_table).values(
                        job_id=job_id,
                        file_path=self.files.to_relative_path(thumb_path),
                        timestamp=thumbnail.timestamp,
                        confidence=thumbnail.confidence,
                        description=thumbnail.description or None,
                    )
                )
            )
        for caption in result.captions:
            operations.append(
                Operation.write(
                    insert(captions_table).values(
                        job_id=job_id,
                        platform=caption.platform,
                        content=caption.content,
                        hashtags=join_hashtags(caption.hashtags),
                    )
                )
            )
        return operations

    def _render_and_backfill(
        self,
        job_id: int,
        video_path: Path,
        result: AnalysisResult,
        highlight_ids: Sequence[Optional[int]],
        thumbnail_ids: Sequence[Optional[int]],
    ) -> None:
        rendered = self.renderer.render(
            video_path,
            result.highlights,
            result.thumbnails,
            self.files.renders_dir(job_id),
        )
        updated = 0
        for table, row_ids, paths in (
            (highlights_table, highlight_ids, rendered.clips),
            (thumbnails_table, thumbnail_ids, rendered.thumbnails),
        ):
            for row_id, path in zip(row_ids, paths):
                if row_id is None or path is None:
                    continue
                try:
                    execute_with_transaction(
                        self.session_factory,
                        Operation.write(
                            update(table)
                            .where(table.c.id == row_id)
                            .values(file_path=self.files.to_relative_path(path))
                        ),
                    )
                    updated += 1
                except Exception as exc:
                    logger.warning(
                        "ARTIFACT_PATH_UPDATE_FAILED job_id=%s table=%s row_id=%s error=%s",
                        job_id,
                        table.name,
                        row_id,
                        exc,
                    )
        logger.info("ARTIFACT_PATHS_UPDATED job_id=%s updated=%s", job_id, updated)

    def _set_progress(self, job_id: int, progress: int) -> None:
        # advisory only
        try:
            execute_with_transaction(
                self.session_factory,
                Operation.write(
                    update(jobs_table)
                    .where(jobs_table.c.id == job_id, jobs_table.c.status == JOB_PROCESSING)
                    .values(progress=progress)
                ),
            )
        except Exception as exc:
            logger.warning("JOB_PROGRESS_FAILED job_id=%s progress=%s error=%s", job_id, progress, exc)

    def _mark_completed(self, job_id: int) -> None:
        execute_with_transaction(
            self.session_factory,
            Operation.write(
                update(jobs_table)
                .where(jobs_table.c.id == job_id, jobs_table.c.status == JOB_PROCESSING)
                .values(status=JOB_COMPLETED, progress=PROGRESS_DONE, error_message=None)
            ),
        )

    def _recorded_paths(self, db: Session, job_id: int) -> List[str]:
        paths: List[str] = []
        for table in (highlights_table, thumbnails_table):
            paths.extend(
                db.execute(select(table.c.file_path).where(table.c.job_id == job_id)).scalars()
            )
        return paths

    def _cleanup(self, job_id: int) -> None:
        try:
            with self.session_factory() as db:
                recorded = self._recorded_paths(db, job_id)
            self.files.cleanup_job_files(job_id, recorded)
        except Exception:
            logger.exception("CLEANUP_FAILED job_id=%s", job_id)

    def _mark_failed(self, job_id: int, exc: BaseException) -> None:
        message = normalize_error_message(exc)

        def stage(transaction: DatabaseTransaction) -> None:
            # derived rows only survive here if the failure came after the insert batch
            for table in (highlights_table, thumbnails_table, captions_table):
                transaction.add_write(delete(table).where(table.c.job_id == job_id))
            transaction.add_write(
                update(jobs_table)
                .where(jobs_table.c.id == job_id, jobs_table.c.status == JOB_PROCESSING)
                .values(status=JOB_FAILED, error_message=message)
            )

        try:
            DatabaseTransaction.run(self.session_factory, stage)
        except Exception:
            logger.exception("JOB_FAIL_UPDATE_FAILED job_id=%s", job_id)


def _inserted_id(result) -> Optional[int]:
    return result.id if isinstance(result, Inserted) else None


def build_orchestrator(
    session_factory: Optional[SessionFactory] = None,
    dispatcher: Optional[JobDispatcher] = None,
) -> JobOrchestrator:
    session_factory = session_factory or SessionLocal
    return JobOrchestrator(
        session_factory=session_factory,
        ledger=CreditLedger(session_factory),
        analyzer=get_analyzer(),
        files=FileManager(),
        dispatcher=dispatcher or get_dispatcher(),
        renderer=get_renderer(),
    )

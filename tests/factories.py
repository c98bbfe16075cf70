import itertools
import tempfile
from pathlib import Path
from typing import List, Optional

from clipai.core import models
from clipai.core.db import Base, make_engine, make_session_factory
from clipai.workers.analyzer import (
    AnalysisResult,
    CaptionDraft,
    Highlight,
    ThumbnailCandidate,
)

_emails = itertools.count(1)


def make_database(testcase):
    """Fresh file-backed SQLite schema for one test. Returns (session_factory, tmp_dir)."""
    tmp = tempfile.TemporaryDirectory()
    testcase.addCleanup(tmp.cleanup)
    engine = make_engine(f"sqlite:///{tmp.name}/clipai-test.db")
    testcase.addCleanup(engine.dispose)
    Base.metadata.create_all(bind=engine)
    return make_session_factory(engine), Path(tmp.name)


def create_user(
    session_factory,
    credits: int = 3,
    is_subscribed: bool = False,
    expires_at=None,
    email: Optional[str] = None,
) -> int:
    with session_factory() as db:
        user = models.User(
            email=email or f"user{next(_emails)}@example.com",
            credits=credits,
            is_subscribed=is_subscribed,
            subscription_expires_at=expires_at,
        )
        db.add(user)
        db.commit()
        return user.id


def create_video(
    session_factory,
    user_id: Optional[int] = None,
    file_path: str = "videos/input.mp4",
) -> int:
    with session_factory() as db:
        video = models.Video(
            user_id=user_id,
            original_filename="input.mp4",
            file_path=file_path,
            file_size=4,
            mime_type="video/mp4",
        )
        db.add(video)
        db.commit()
        return video.id


def user_credits(session_factory, user_id: int) -> int:
    with session_factory() as db:
        return db.get(models.User, user_id).credits


def count_rows(session_factory, model) -> int:
    with session_factory() as db:
        return db.query(model).count()


def make_result(
    highlights: int = 2,
    thumbnails: int = 3,
    captions: int = 1,
    placeholder: bool = False,
) -> AnalysisResult:
    return AnalysisResult(
        highlights=[
            Highlight(
                title=f"Moment {index}",
                start_time=float(index * 30),
                end_time=float(index * 30 + 20),
                duration=20.0,
                confidence=0.8,
                description="",
            )
            for index in range(highlights)
        ],
        thumbnails=[
            ThumbnailCandidate(timestamp=float(index * 10 + 5), confidence=0.7)
            for index in range(thumbnails)
        ],
        captions=[
            CaptionDraft(platform="youtube", content=f"Caption {index}", hashtags=["a", "b"])
            for index in range(captions)
        ],
        placeholder=placeholder,
    )


class FakeAnalyzer:
    def __init__(self, result: Optional[AnalysisResult] = None, error: Optional[Exception] = None):
        self.result = result or make_result()
        self.error = error
        self.calls: List[Path] = []

    def analyze(self, video_path: Path, work_dir: Path) -> AnalysisResult:
        self.calls.append(video_path)
        if self.error is not None:
            raise self.error
        return self.result


class RecordingDispatcher:
    """Keeps dispatched jobs without running them."""

    def __init__(self):
        self.dispatched: List[int] = []

    def dispatch(self, job_id, runner) -> None:
        self.dispatched.append(job_id)

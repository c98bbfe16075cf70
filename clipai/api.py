import logging
import os
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse, PlainTextResponse
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clipai.core.credits import CreditError, CreditLedger
from clipai.core.db import SessionLocal
from clipai.core.deps import get_current_user_id, get_db
from clipai.core.downloads import DownloadError, download_video
from clipai.core.models import (
    JOB_COMPLETED,
    Caption,
    HighlightClip,
    ProcessingJob,
    Thumbnail,
    Video,
)
from clipai.core.normalizers import split_hashtags
from clipai.core.status import StatusReader
from clipai.core.storage import FileManager
from clipai.schemas import (
    CreditsOut,
    JobHistoryOut,
    JobOut,
    JobStatusOut,
    VideoListOut,
    VideoOut,
    VideoUrlCreate,
)
from clipai.workers.pipeline import (
    JobNotFoundError,
    JobOrchestrator,
    JobStateError,
    VideoNotFoundError,
    build_orchestrator,
)

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_BYTES", str(500 * 1024 * 1024)))
ALLOWED_VIDEO_TYPES = {
    value.strip().lower()
    for value in os.environ.get(
        "ALLOWED_VIDEO_TYPES",
        "video/mp4,video/quicktime,video/x-msvideo,video/webm,video/x-matroska",
    ).split(",")
    if value.strip()
}
UPLOAD_CHUNK_BYTES = 1024 * 1024


# ----------------------------
# Collaborators (overridable through app.dependency_overrides)
# ----------------------------
@lru_cache(maxsize=1)
def get_file_manager() -> FileManager:
    return FileManager()


@lru_cache(maxsize=1)
def get_orchestrator() -> JobOrchestrator:
    return build_orchestrator(SessionLocal)


@lru_cache(maxsize=1)
def get_status_reader() -> StatusReader:
    return StatusReader(SessionLocal)


@lru_cache(maxsize=1)
def get_ledger() -> CreditLedger:
    return CreditLedger(SessionLocal)


# ----------------------------
# Envelope helpers
# ----------------------------
def build_meta(request: Request | None = None) -> dict:
    request_id = getattr(request.state, "request_id", None) if request else None
    return {
        "request_id": request_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def ok_response(data: dict, request: Request | None = None) -> dict:
    return {"ok": True, "data": data, "meta": build_meta(request)}


def error_detail(code: str, message: str, details: dict | None = None) -> dict:
    payload = {"code": code, "message": message}
    if details:
        payload["details"] = details
    return payload


def ensure_owner(owner_id: Optional[int], user_id: Optional[int]) -> None:
    if owner_id is not None and owner_id != user_id:
        raise HTTPException(
            status_code=403,
            detail=error_detail("ACCESS_DENIED", "Access denied"),
        )


def require_user(user_id: Optional[int]) -> int:
    if user_id is None:
        raise HTTPException(
            status_code=401,
            detail=error_detail("AUTH_REQUIRED", "Authentication required"),
        )
    return user_id


def _video_out(video: Video) -> VideoOut:
    return VideoOut(
        video_id=video.id,
        original_filename=video.original_filename,
        file_size=video.file_size,
        mime_type=video.mime_type,
        status=video.status,
        source_url=video.source_url,
        uploaded_at=video.created_at.isoformat() if video.created_at else None,
    )


# ----------------------------
# Videos
# ----------------------------
@router.post("/videos")
def upload_video(
    request: Request,
    file: UploadFile = File(...),
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileManager = Depends(get_file_manager),
):
    mime_type = (file.content_type or "").lower()
    if mime_type not in ALLOWED_VIDEO_TYPES:
        raise HTTPException(
            status_code=400,
            detail=error_detail(
                "INVALID_FILE_TYPE",
                "Unsupported video type.",
                {"content_type": mime_type, "allowed": sorted(ALLOWED_VIDEO_TYPES)},
            ),
        )

    original_filename = file.filename or "video.mp4"
    dst_path = files.unique_video_path(original_filename)
    size = 0
    try:
        with open(dst_path, "wb") as out:
            while True:
                chunk = file.file.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                size += len(chunk)
                if size > MAX_UPLOAD_BYTES:
                    raise HTTPException(
                        status_code=413,
                        detail=error_detail("FILE_TOO_LARGE", "Video exceeds the upload limit."),
                    )
                out.write(chunk)
    except Exception:
        files.delete_file(dst_path)
        raise

    video = Video(
        user_id=user_id,
        original_filename=original_filename,
        file_path=files.to_relative_path(dst_path),
        file_size=size,
        mime_type=mime_type,
        status="uploaded",
    )
    db.add(video)
    db.commit()
    db.refresh(video)
    logger.info("VIDEO_UPLOADED video_id=%s user_id=%s bytes=%s", video.id, user_id, size)
    return ok_response(_video_out(video).model_dump(), request)


@router.post("/videos/from-url")
def create_video_from_url(
    payload: VideoUrlCreate,
    request: Request,
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileManager = Depends(get_file_manager),
):
    remote_name = Path(urlsplit(payload.url).path).name or "remote.mp4"
    dst_path = files.unique_video_path(remote_name)
    try:
        content_type = download_video(payload.url, dst_path, max_bytes=MAX_UPLOAD_BYTES)
    except DownloadError as exc:
        raise HTTPException(
            status_code=400,
            detail=error_detail("DOWNLOAD_FAILED", str(exc)),
        ) from exc

    video = Video(
        user_id=user_id,
        original_filename=remote_name,
        file_path=files.to_relative_path(dst_path),
        file_size=files.file_size(dst_path),
        mime_type=content_type or "video/mp4",
        source_url=payload.url,
        status="downloaded",
    )
    db.add(video)
    db.commit()
    db.refresh(video)
    logger.info("VIDEO_FROM_URL video_id=%s user_id=%s", video.id, user_id)
    return ok_response(_video_out(video).model_dump(), request)


@router.get("/videos")
def list_videos(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    require_user(user_id)
    videos = db.execute(
        select(Video)
        .where(Video.user_id == user_id)
        .order_by(Video.created_at.desc(), Video.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars()
    total = db.scalar(select(func.count(Video.id)).where(Video.user_id == user_id))
    payload = VideoListOut(
        videos=[_video_out(video) for video in videos],
        total=total or 0,
        limit=limit,
        offset=offset,
    )
    return ok_response(payload.model_dump(), request)


@router.get("/videos/{video_id}")
def get_video(
    video_id: int,
    request: Request,
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    video = db.get(Video, video_id)
    if not video:
        raise HTTPException(
            status_code=404,
            detail=error_detail("VIDEO_NOT_FOUND", "Video not found"),
        )
    ensure_owner(video.user_id, user_id)
    return ok_response(_video_out(video).model_dump(), request)


@router.delete("/videos/{video_id}")
def delete_video(
    video_id: int,
    request: Request,
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    require_user(user_id)
    video = db.get(Video, video_id)
    if not video:
        raise HTTPException(
            status_code=404,
            detail=error_detail("VIDEO_NOT_FOUND", "Video not found"),
        )
    if video.user_id != user_id:
        raise HTTPException(
            status_code=403,
            detail=error_detail("ACCESS_DENIED", "Only the owner can delete a video"),
        )
    try:
        orchestrator.delete_video(video_id)
    except VideoNotFoundError as exc:
        raise HTTPException(
            status_code=404,
            detail=error_detail("VIDEO_NOT_FOUND", "Video not found"),
        ) from exc
    except JobStateError as exc:
        raise HTTPException(
            status_code=409,
            detail=error_detail("JOB_IN_PROGRESS", str(exc)),
        ) from exc
    return ok_response({"video_id": video_id, "deleted": True}, request)


@router.post("/videos/{video_id}/process")
def process_video(
    video_id: int,
    request: Request,
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    video = db.get(Video, video_id)
    if not video:
        raise HTTPException(
            status_code=404,
            detail=error_detail("VIDEO_NOT_FOUND", "Video not found"),
        )
    ensure_owner(video.user_id, user_id)

    try:
        start = orchestrator.start_processing(video_id, user_id)
    except CreditError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail=error_detail("PAYMENT_REQUIRED", exc.reason),
        ) from exc
    except VideoNotFoundError as exc:
        raise HTTPException(
            status_code=404,
            detail=error_detail("VIDEO_NOT_FOUND", "Video not found"),
        ) from exc

    return ok_response(JobOut(job_id=start.job_id, status=start.status).model_dump(), request)


# ----------------------------
# Jobs
# ----------------------------
@router.get("/jobs/{job_id}")
def job_status(
    job_id: int,
    request: Request,
    user_id: Optional[int] = Depends(get_current_user_id),
    reader: StatusReader = Depends(get_status_reader),
):
    status = reader.get_status(job_id)
    if status is None:
        raise HTTPException(
            status_code=404,
            detail=error_detail("JOB_NOT_FOUND", "Job not found"),
        )
    ensure_owner(status.job.user_id, user_id)
    return ok_response(JobStatusOut.from_status(status).model_dump(by_alias=True), request)


@router.delete("/jobs/{job_id}")
def delete_job(
    job_id: int,
    request: Request,
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    job = db.get(ProcessingJob, job_id)
    if not job:
        raise HTTPException(
            status_code=404,
            detail=error_detail("JOB_NOT_FOUND", "Job not found"),
        )
    if job.user_id is None or job.user_id != user_id:
        raise HTTPException(
            status_code=403,
            detail=error_detail("ACCESS_DENIED", "Only the owner can delete a job"),
        )

    try:
        orchestrator.delete_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(
            status_code=404,
            detail=error_detail("JOB_NOT_FOUND", "Job not found"),
        ) from exc
    except JobStateError as exc:
        raise HTTPException(
            status_code=409,
            detail=error_detail("JOB_IN_PROGRESS", str(exc)),
        ) from exc
    return ok_response({"job_id": job_id, "deleted": True}, request)


# ----------------------------
# Downloads
# ----------------------------
def _completed_job(db: Session, job_id: int, user_id: Optional[int]) -> ProcessingJob:
    job = db.get(ProcessingJob, job_id)
    if job is None or job.status != JOB_COMPLETED:
        raise HTTPException(
            status_code=404,
            detail=error_detail("ARTIFACT_NOT_FOUND", "Artifact not found"),
        )
    ensure_owner(job.user_id, user_id)
    return job


def _artifact_file(
    db: Session,
    files: FileManager,
    artifact,
    user_id: Optional[int],
) -> Path:
    _completed_job(db, artifact.job_id, user_id)
    path = files.to_absolute_path(artifact.file_path)
    if not path.is_file():
        raise HTTPException(
            status_code=404,
            detail=error_detail("FILE_NOT_FOUND", "Rendered file is not available"),
        )
    return path


@router.get("/download/clip/{clip_id}")
def download_clip(
    clip_id: int,
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileManager = Depends(get_file_manager),
):
    clip = db.get(HighlightClip, clip_id)
    if not clip:
        raise HTTPException(
            status_code=404,
            detail=error_detail("ARTIFACT_NOT_FOUND", "Clip not found"),
        )
    path = _artifact_file(db, files, clip, user_id)
    filename = f"{FileManager.sanitize_filename(clip.title) or 'clip'}.mp4"
    return FileResponse(path, media_type="video/mp4", filename=filename)


@router.get("/download/thumbnail/{thumbnail_id}")
def download_thumbnail(
    thumbnail_id: int,
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileManager = Depends(get_file_manager),
):
    thumbnail = db.get(Thumbnail, thumbnail_id)
    if not thumbnail:
        raise HTTPException(
            status_code=404,
            detail=error_detail("ARTIFACT_NOT_FOUND", "Thumbnail not found"),
        )
    path = _artifact_file(db, files, thumbnail, user_id)
    return FileResponse(path, media_type="image/jpeg", filename=path.name)


def _caption_text(caption: Caption) -> str:
    tags = " ".join(f"#{tag}" for tag in split_hashtags(caption.hashtags))
    return f"{caption.content}\n\nHashtags: {tags}\n"


@router.get("/download/caption/{caption_id}")
def download_caption(
    caption_id: int,
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    caption = db.get(Caption, caption_id)
    if not caption:
        raise HTTPException(
            status_code=404,
            detail=error_detail("ARTIFACT_NOT_FOUND", "Caption not found"),
        )
    _completed_job(db, caption.job_id, user_id)
    return PlainTextResponse(
        _caption_text(caption),
        headers={
            "Content-Disposition": f'attachment; filename="caption_{caption.platform}.txt"'
        },
    )


@router.get("/download/job/{job_id}")
def download_job_bundle(
    job_id: int,
    user_id: Optional[int] = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileManager = Depends(get_file_manager),
):
    _completed_job(db, job_id, user_id)
    paths = list(
        db.execute(select(HighlightClip.file_path).where(HighlightClip.job_id == job_id)).scalars()
    )
    paths.extend(
        db.execute(select(Thumbnail.file_path).where(Thumbnail.job_id == job_id)).scalars()
    )
    captions = db.execute(
        select(Caption).where(Caption.job_id == job_id).order_by(Caption.id)
    ).scalars()
    texts = {
        f"captions/{index}_{caption.platform}.txt": _caption_text(caption)
        for index, caption in enumerate(captions)
    }
    bundle = files.write_bundle(job_id, paths, texts)
    logger.info("JOB_BUNDLE job_id=%s files=%s captions=%s", job_id, len(paths), len(texts))
    return FileResponse(bundle, media_type="application/zip", filename=bundle.name)


# ----------------------------
# Users
# ----------------------------
@router.get("/users/me/credits")
def my_credits(
    request: Request,
    user_id: Optional[int] = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_ledger),
):
    require_user(user_id)
    record = ledger.get_user_credits(user_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail=error_detail("USER_NOT_FOUND", "User not found"),
        )
    return ok_response(CreditsOut.from_record(record).model_dump(by_alias=True), request)


@router.get("/users/me/jobs")
def my_jobs(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: Optional[int] = Depends(get_current_user_id),
    reader: StatusReader = Depends(get_status_reader),
):
    require_user(user_id)
    history = reader.list_jobs(user_id, limit=limit, offset=offset)
    return ok_response(JobHistoryOut.from_history(history).model_dump(by_alias=True), request)

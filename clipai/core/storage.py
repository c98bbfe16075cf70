import logging
import os
import re
import shutil
import zipfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Union
from uuid import uuid4

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

STORAGE_ROOT = Path(os.getenv("STORAGE_ROOT", "./uploads"))

_HANGUL_RE = re.compile(r"[가-힣]")
_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9\s.-]")


def _keep_workdir() -> bool:
    return os.environ.get("KEEP_WORKDIR", "0") == "1"


class FileManager:
    """Path layout and best-effort file removal under one storage root."""

    def __init__(self, root: Optional[PathLike] = None):
        self.root = Path(root or STORAGE_ROOT).resolve()
        self.videos_dir = self.root / "videos"
        self.clips_dir = self.root / "clips"
        self.thumbnails_dir = self.root / "thumbnails"
        self.frames_dir_root = self.root / "frames"
        self.renders_dir_root = self.root / "renders"
        for directory in (
            self.videos_dir,
            self.clips_dir,
            self.thumbnails_dir,
            self.frames_dir_root,
            self.renders_dir_root,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def sanitize_filename(filename: str, max_length: int = 50) -> str:
        value = _HANGUL_RE.sub("", filename or "")
        value = _UNSAFE_RE.sub("_", value)
        value = re.sub(r"\s+", "_", value)
        value = re.sub(r"_{2,}", "_", value)
        value = value[:max_length].strip("_")
        return value.lower()

    def unique_video_path(self, original_filename: str) -> Path:
        original = Path(original_filename or "video.mp4")
        sanitized = self.sanitize_filename(original.stem) or "video"
        extension = original.suffix or ".mp4"
        return self.videos_dir / f"{uuid4().hex[:12]}_{sanitized}{extension}"

    def clip_path(self, job_id: int, index: int, title: str) -> Path:
        sanitized = self.sanitize_filename(title, max_length=20) or "clip"
        return self.clips_dir / f"clip_{job_id}_{index}_{sanitized}.mp4"

    def thumbnail_path(self, job_id: int, index: int, timestamp: float) -> Path:
        return self.thumbnails_dir / f"thumb_{job_id}_{index}_{round(timestamp)}s.jpg"

    def frames_dir(self, job_id: int) -> Path:
        path = self.frames_dir_root / f"job_{job_id}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def renders_dir(self, job_id: int) -> Path:
        path = self.renders_dir_root / f"job_{job_id}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def write_bundle(
        self,
        job_id: int,
        file_paths: Iterable[PathLike],
        texts: Optional[Dict[str, str]] = None,
    ) -> Path:
        """Zip a job's files into its render directory. Missing files are skipped."""
        bundle_path = self.renders_dir(job_id) / f"clipai_job_{job_id}.zip"
        with zipfile.ZipFile(bundle_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, content in (texts or {}).items():
                zf.writestr(name, content)
            for recorded in file_paths:
                path = self.to_absolute_path(recorded)
                if path.is_file():
                    zf.write(path, arcname=path.name)
        return bundle_path

    def to_relative_path(self, absolute_path: PathLike) -> str:
        path = Path(absolute_path)
        if not path.is_absolute():
            return path.as_posix()
        return path.resolve().relative_to(self.root).as_posix()

    def to_absolute_path(self, relative_path: PathLike) -> Path:
        path = Path(relative_path)
        if path.is_absolute():
            return path
        return self.root / path

    def file_exists(self, file_path: PathLike) -> bool:
        return self.to_absolute_path(file_path).exists()

    def file_size(self, file_path: PathLike) -> int:
        try:
            path = self.to_absolute_path(file_path)
            return path.stat().st_size if path.exists() else 0
        except OSError:
            logger.exception("Failed to get file size for %s", file_path)
            return 0

    def delete_file(self, file_path: PathLike) -> bool:
        try:
            path = self.to_absolute_path(file_path)
            if path.is_file():
                path.unlink()
                logger.info("Deleted file: %s", path)
                return True
            return False
        except OSError:
            logger.exception("Failed to delete file %s", file_path)
            return False

    def _remove_tree(self, path: Path) -> None:
        if not path.exists():
            return
        if _keep_workdir():
            logger.info("KEEP_WORKDIR=1 leaving %s", path)
            return
        shutil.rmtree(path, ignore_errors=True)

    def cleanup_frames(self, job_id: int) -> None:
        try:
            self._remove_tree(self.frames_dir_root / f"job_{job_id}")
        except OSError:
            logger.exception("Failed to cleanup frames for job %s", job_id)

    def cleanup_renders(self, job_id: int) -> None:
        path = self.renders_dir_root / f"job_{job_id}"
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

    def cleanup_job_files(self, job_id: int, recorded_paths: Iterable[PathLike] = ()) -> int:
        """Remove everything written for a job. Returns the number of deleted files."""
        deleted = 0
        try:
            for recorded in recorded_paths:
                if recorded and self.delete_file(recorded):
                    deleted += 1
            for pattern, directory in (
                (f"clip_{job_id}_*", self.clips_dir),
                (f"thumb_{job_id}_*", self.thumbnails_dir),
            ):
                for path in directory.glob(pattern):
                    if self.delete_file(path):
                        deleted += 1
        except Exception:
            logger.exception("CLEANUP_FAILED job_id=%s", job_id)
        self.cleanup_frames(job_id)
        self.cleanup_renders(job_id)
        logger.info("Cleaned up files for job %s deleted=%s", job_id, deleted)
        return deleted

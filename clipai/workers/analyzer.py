import base64
import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import OpenAI

from clipai.core.env import env_int

logger = logging.getLogger(__name__)


class AnalysisError(RuntimeError):
    pass


@dataclass(frozen=True)
class Highlight:
    title: str
    start_time: float
    end_time: float
    duration: float
    confidence: float = 0.0
    description: str = ""


@dataclass(frozen=True)
class ThumbnailCandidate:
    timestamp: float
    confidence: float = 0.0
    description: str = ""


@dataclass(frozen=True)
class CaptionDraft:
    platform: str
    content: str
    hashtags: List[str] = field(default_factory=list)


def _pick(item: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in item and item[key] is not None:
            return item[key]
    return default


def _parse_highlight(item: Dict[str, Any]) -> Highlight:
    title = str(_pick(item, "title", default="")).strip()
    if not title:
        raise AnalysisError("Highlight is missing a title")
    start = float(_pick(item, "startTime", "start_time", "start"))
    end = float(_pick(item, "endTime", "end_time", "end"))
    if start < 0 or end <= start:
        raise AnalysisError(f"Highlight '{title}' has an invalid time range {start}-{end}")
    duration = float(_pick(item, "duration", default=end - start))
    return Highlight(
        title=title,
        start_time=start,
        end_time=end,
        duration=duration,
        confidence=float(_pick(item, "confidence", default=0.0)),
        description=str(_pick(item, "description", default="")),
    )


def _parse_thumbnail(item: Dict[str, Any]) -> ThumbnailCandidate:
    timestamp = float(_pick(item, "timestamp", "time_sec"))
    if timestamp < 0:
        raise AnalysisError(f"Thumbnail has a negative timestamp {timestamp}")
    return ThumbnailCandidate(
        timestamp=timestamp,
        confidence=float(_pick(item, "confidence", default=0.0)),
        description=str(_pick(item, "description", default="")),
    )


def _parse_caption(item: Dict[str, Any]) -> CaptionDraft:
    platform = str(_pick(item, "platform", default="")).strip().lower()
    content = str(_pick(item, "content", default="")).strip()
    if not platform or not content:
        raise AnalysisError("Caption requires platform and content")
    hashtags = _pick(item, "hashtags", default=[]) or []
    if isinstance(hashtags, str):
        hashtags = [tag for tag in hashtags.split(",") if tag.strip()]
    return CaptionDraft(
        platform=platform,
        content=content,
        hashtags=[str(tag).strip() for tag in hashtags],
    )


@dataclass(frozen=True)
class AnalysisResult:
    highlights: List[Highlight] = field(default_factory=list)
    thumbnails: List[ThumbnailCandidate] = field(default_factory=list)
    captions: List[CaptionDraft] = field(default_factory=list)
    # True when no real analysis ran; nothing can be rendered from it.
    placeholder: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], placeholder: bool = False) -> "AnalysisResult":
        if not isinstance(payload, dict):
            raise AnalysisError("Analysis payload must be an object")
        try:
            return cls(
                highlights=[_parse_highlight(h) for h in payload.get("highlights") or []],
                thumbnails=[_parse_thumbnail(t) for t in payload.get("thumbnails") or []],
                captions=[_parse_caption(c) for c in payload.get("captions") or []],
                placeholder=placeholder,
            )
        except AnalysisError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise AnalysisError(f"Malformed analysis payload: {exc}") from exc


@dataclass(frozen=True)
class RenderOutput:
    # aligned with the highlights/thumbnails passed to render(); None where rendering failed
    clips: List[Optional[Path]] = field(default_factory=list)
    thumbnails: List[Optional[Path]] = field(default_factory=list)


class VideoAnalyzer(Protocol):
    def analyze(self, video_path: Path, work_dir: Path) -> AnalysisResult:
        ...


class VideoRenderer(Protocol):
    def render(
        self,
        video_path: Path,
        highlights: Sequence[Highlight],
        thumbnails: Sequence[ThumbnailCandidate],
        out_dir: Path,
    ) -> RenderOutput:
        ...


# ----------------------------
# ffmpeg helpers
# ----------------------------
def _run(cmd: List[str]) -> str:
    res = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    if res.returncode != 0:
        raise RuntimeError(f"Command failed: {' '.join(cmd)}\nSTDERR:\n{res.stderr}")
    return (res.stdout or "").strip()


def probe_video_meta(path: Path) -> Dict:
    try:
        out = _run(
            [
                "ffprobe",
                "-v",
                "error",
                "-print_format",
                "json",
                "-show_format",
                "-show_streams",
                str(path),
            ]
        )
        return json.loads(out)
    except Exception:
        return {}


def get_duration_seconds(meta: Dict) -> Optional[float]:
    try:
        duration = meta.get("format", {}).get("duration")
        if duration is None:
            return None
        return float(duration)
    except (TypeError, ValueError):
        return None


def build_frame_timestamps(duration: Optional[float], frame_count: int) -> List[float]:
    if frame_count <= 0:
        return []
    if not duration or duration <= 0:
        return [float(i * 10) for i in range(frame_count)]
    step = duration / (frame_count + 1)
    return [round(step * (i + 1), 3) for i in range(frame_count)]


def ffmpeg_extract_frame(input_path: Path, output_path: Path, timestamp: float) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    _run(
        [
            "ffmpeg",
            "-y",
            "-ss",
            f"{timestamp:.3f}",
            "-i",
            str(input_path),
            "-frames:v",
            "1",
            "-q:v",
            "2",
            str(output_path),
        ]
    )


def ffmpeg_extract_segment(
    input_path: Path, output_path: Path, start: float, duration: float
) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    _run(
        [
            "ffmpeg",
            "-y",
            "-ss",
            f"{start:.3f}",
            "-i",
            str(input_path),
            "-t",
            f"{duration:.3f}",
            "-c",
            "copy",
            str(output_path),
        ]
    )


# ----------------------------
# OpenAI analyzer
# ----------------------------
ANALYSIS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "highlights": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "title": {"type": "string"},
                    "startTime": {"type": "number"},
                    "endTime": {"type": "number"},
                    "duration": {"type": "number"},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "description": {"type": "string"},
                },
                "required": [
                    "title",
                    "startTime",
                    "endTime",
                    "duration",
                    "confidence",
                    "description",
                ],
            },
        },
        "thumbnails": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "timestamp": {"type": "number"},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "description": {"type": "string"},
                },
                "required": ["timestamp", "confidence", "description"],
            },
        },
        "captions": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "platform": {"type": "string", "enum": ["youtube", "tiktok", "instagram"]},
                    "content": {"type": "string"},
                    "hashtags": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["platform", "content", "hashtags"],
            },
        },
    },
    "required": ["highlights", "thumbnails", "captions"],
}


SYSTEM_PROMPT = (
    "You are a short-form video editor. You receive evenly spaced frames from one video "
    "with their timestamps in seconds and the total duration. Pick 2-5 highlight segments "
    "of 15-60 seconds, 3 thumbnail timestamps, and one caption per platform "
    "(youtube, tiktok, instagram). Only use timestamps inside the video duration."
)


def _extract_output_json(response: Any) -> Dict[str, Any]:
    if hasattr(response, "output_text") and response.output_text:
        return json.loads(response.output_text)
    outputs = getattr(response, "output", []) or []
    for output in outputs:
        for content in getattr(output, "content", []) or []:
            content_type = getattr(content, "type", None)
            if content_type == "output_text":
                text = getattr(content, "text", None)
                if text:
                    return json.loads(text)
    raise AnalysisError("No JSON output found in OpenAI response.")


class OpenAIVideoAnalyzer:
    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        frame_count: Optional[int] = None,
        client: Optional[OpenAI] = None,
    ):
        self.model = model or (os.environ.get("OPENAI_MODEL") or "gpt-4o").strip()
        self.frame_count = frame_count or env_int("ANALYSIS_FRAME_COUNT", 12, minimum=1)
        self.client = client or OpenAI(api_key=api_key, base_url=base_url)

    def _extract_frames(self, video_path: Path, work_dir: Path, duration: Optional[float]):
        frames = []
        for index, timestamp in enumerate(build_frame_timestamps(duration, self.frame_count)):
            frame_path = work_dir / f"frame_{index:04d}.jpg"
            try:
                ffmpeg_extract_frame(video_path, frame_path, timestamp)
            except RuntimeError as exc:
                logger.warning("FRAME_EXTRACT_FAILED ts=%s error=%s", timestamp, exc)
                continue
            frames.append((timestamp, frame_path))
        return frames

    def analyze(self, video_path: Path, work_dir: Path) -> AnalysisResult:
        if not video_path.exists():
            raise AnalysisError(f"Video file not found: {video_path.name}")

        meta = probe_video_meta(video_path)
        duration = get_duration_seconds(meta)
        frames = self._extract_frames(video_path, work_dir, duration)
        if not frames:
            raise AnalysisError("No frames could be extracted from the video")

        content: List[Dict[str, Any]] = [
            {
                "type": "input_text",
                "text": json.dumps(
                    {
                        "duration_sec": duration,
                        "frame_timestamps_sec": [ts for ts, _ in frames],
                    }
                ),
            }
        ]
        for _, frame_path in frames:
            encoded = base64.b64encode(frame_path.read_bytes()).decode("ascii")
            content.append(
                {"type": "input_image", "image_url": f"data:image/jpeg;base64,{encoded}"}
            )

        logger.info(
            "ANALYSIS_REQUEST model=%s frames=%s duration=%s", self.model, len(frames), duration
        )
        response = self.client.responses.create(
            model=self.model,
            input=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            text={
                "format": {
                    "type": "json_schema",
                    "name": "video_highlights",
                    "schema": ANALYSIS_SCHEMA,
                    "strict": True,
                }
            },
        )
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.info("ANALYSIS_OK model=%s usage=%s", self.model, usage)
        return AnalysisResult.from_payload(_extract_output_json(response))


# ----------------------------
# Placeholder analyzer
# ----------------------------
PLACEHOLDER_PAYLOAD: Dict[str, Any] = {
    "highlights": [
        {
            "title": "Opening Scene",
            "startTime": 5,
            "endTime": 35,
            "duration": 30,
            "confidence": 0.95,
            "description": "Engaging opening with strong hook",
        },
        {
            "title": "Main Content",
            "startTime": 60,
            "endTime": 105,
            "duration": 45,
            "confidence": 0.87,
            "description": "Core content with visual examples",
        },
        {
            "title": "Conclusion",
            "startTime": 120,
            "endTime": 155,
            "duration": 35,
            "confidence": 0.92,
            "description": "Strong conclusion with call-to-action",
        },
    ],
    "thumbnails": [
        {"timestamp": 20, "confidence": 0.9, "description": "Expressive face with good lighting"},
        {"timestamp": 85, "confidence": 0.8, "description": "Visual demonstration moment"},
        {"timestamp": 140, "confidence": 0.85, "description": "Reaction shot with emotion"},
    ],
    "captions": [
        {
            "platform": "youtube",
            "content": "Practical tips anyone can follow, step by step. Watch to the end!",
            "hashtags": ["tips", "beginners", "stepbystep"],
        },
        {
            "platform": "tiktok",
            "content": "This one trick is all you need. Try it today!",
            "hashtags": ["lifehack", "tips", "howto"],
        },
        {
            "platform": "instagram",
            "content": "Save this for later and share it with a friend who needs it.",
            "hashtags": ["dailytips", "usefulinfo", "savethis"],
        },
    ],
}


class PlaceholderAnalyzer:
    """Metadata-only result used when no analysis backend is configured."""

    def analyze(self, video_path: Path, work_dir: Path) -> AnalysisResult:
        logger.info("ANALYSIS_PLACEHOLDER video=%s", video_path.name)
        return AnalysisResult.from_payload(PLACEHOLDER_PAYLOAD, placeholder=True)


class FfmpegRenderer:
    def render(
        self,
        video_path: Path,
        highlights: Sequence[Highlight],
        thumbnails: Sequence[ThumbnailCandidate],
        out_dir: Path,
    ) -> RenderOutput:
        out_dir.mkdir(parents=True, exist_ok=True)
        clips: List[Optional[Path]] = []
        for index, highlight in enumerate(highlights):
            clip_path = out_dir / f"clip_{index:03d}.mp4"
            try:
                ffmpeg_extract_segment(
                    video_path, clip_path, highlight.start_time, highlight.duration
                )
                clips.append(clip_path)
            except RuntimeError as exc:
                logger.warning("CLIP_RENDER_FAILED index=%s error=%s", index, exc)
                clips.append(None)

        thumbs: List[Optional[Path]] = []
        for index, thumbnail in enumerate(thumbnails):
            thumb_path = out_dir / f"thumb_{index:03d}.jpg"
            try:
                ffmpeg_extract_frame(video_path, thumb_path, thumbnail.timestamp)
                thumbs.append(thumb_path)
            except RuntimeError as exc:
                logger.warning("THUMBNAIL_RENDER_FAILED index=%s error=%s", index, exc)
                thumbs.append(None)

        logger.info(
            "RENDER_DONE clips=%s thumbnails=%s",
            sum(1 for c in clips if c),
            sum(1 for t in thumbs if t),
        )
        return RenderOutput(clips=clips, thumbnails=thumbs)


def get_analyzer() -> VideoAnalyzer:
    api_key = (os.environ.get("OPENAI_API_KEY") or "").strip()
    if not api_key:
        return PlaceholderAnalyzer()
    base_url = (os.environ.get("OPENAI_BASE_URL") or "").strip() or None
    return OpenAIVideoAnalyzer(api_key=api_key, base_url=base_url)


def get_renderer() -> Optional[VideoRenderer]:
    if os.environ.get("RENDER_MEDIA", "1") != "1":
        return None
    return FfmpegRenderer()

import json
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_error_message(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, BaseException):
        return str(value) or value.__class__.__name__
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        if not value:
            return None
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def join_hashtags(hashtags: Iterable[str] | None) -> str:
    if not hashtags:
        return ""
    return ",".join(tag.strip().lstrip("#") for tag in hashtags if tag and tag.strip())


def split_hashtags(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [tag for tag in (part.strip() for part in value.split(",")) if tag]

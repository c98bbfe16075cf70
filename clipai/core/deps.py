from typing import Iterator, Optional

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from clipai.core.db import SessionLocal


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[int]:
    # Identity is asserted by the upstream auth gateway.
    if x_user_id is None or not x_user_id.strip():
        return None
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_USER", "message": "X-User-Id must be an integer"},
        ) from exc

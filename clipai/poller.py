import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from clipai.core.models import TERMINAL_JOB_STATUSES

logger = logging.getLogger(__name__)


class PollTimeoutError(TimeoutError):
    def __init__(self, job_id: int, attempts: int, last_status: Optional[str] = None):
        super().__init__(
            f"Job {job_id} did not finish after {attempts} attempts "
            f"(last status: {last_status or 'unknown'})"
        )
        self.job_id = job_id
        self.attempts = attempts
        self.last_status = last_status


class PollError(RuntimeError):
    pass


def poll_job(
    base_url: str,
    job_id: int,
    user_id: Optional[int] = None,
    max_attempts: int = 60,
    interval: float = 2.0,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> Dict[str, Any]:
    """
    Poll ``GET /jobs/{job_id}`` until the job completes or fails.

    Returns the ``data`` object of the final response. Raises PollTimeoutError
    once ``max_attempts`` responses came back without a terminal status, and
    PollError when the server answers with an error envelope.
    """
    http = session or requests.Session()
    url = f"{base_url.rstrip('/')}/jobs/{job_id}"
    headers = {"X-User-Id": str(user_id)} if user_id is not None else {}

    last_status: Optional[str] = None
    for attempt in range(1, max_attempts + 1):
        response = http.get(url, headers=headers, timeout=10)
        body = response.json()
        if response.status_code >= 400 or not body.get("ok"):
            error = body.get("error") or {}
            raise PollError(
                f"{error.get('code', 'HTTP_ERROR')}: {error.get('message', response.status_code)}"
            )

        data = body.get("data") or {}
        last_status = data.get("status")
        logger.info(
            "JOB_POLL job_id=%s attempt=%s status=%s progress=%s",
            job_id,
            attempt,
            last_status,
            data.get("progress"),
        )
        if on_progress is not None:
            on_progress(data)
        if last_status in TERMINAL_JOB_STATUSES:
            return data
        if attempt < max_attempts:
            sleep(interval)

    raise PollTimeoutError(job_id, max_attempts, last_status)

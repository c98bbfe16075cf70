import os
import sys

from clipai.poller import PollError, PollTimeoutError, poll_job


def main() -> int:
    if len(sys.argv) not in (2, 3):
        print("Usage: python scripts/poll_job.py <job_id> [user_id]")
        return 2

    job_id = int(sys.argv[1])
    user_id = int(sys.argv[2]) if len(sys.argv) == 3 else None
    base_url = os.environ.get("CLIPAI_API_URL", "http://localhost:8000").strip()

    def report(data: dict) -> None:
        print(f"job_id={job_id} status={data.get('status')} progress={data.get('progress')}")

    try:
        data = poll_job(base_url, job_id, user_id=user_id, on_progress=report)
    except PollTimeoutError as exc:
        print(str(exc))
        return 1
    except PollError as exc:
        print(f"Polling failed: {exc}")
        return 1

    if data.get("status") == "failed":
        print(f"Job failed: {data.get('errorMessage')}")
        return 1
    print(
        f"Job completed: highlights={len(data.get('highlights') or [])} "
        f"thumbnails={len(data.get('thumbnails') or [])} "
        f"captions={len(data.get('captions') or [])}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

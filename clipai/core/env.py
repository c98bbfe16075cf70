import os
from pathlib import Path

from dotenv import load_dotenv


def is_production_env() -> bool:
    return (
        os.getenv("APP_ENV", "").lower() == "production"
        or os.getenv("ENV", "").lower() == "production"
    )


def env_int(name: str, default: int, minimum: int | None = None) -> int:
    try:
        value = int(os.environ.get(name, str(default)))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def load_env() -> None:
    env_path = Path(os.getenv("ENV_FILE", ".env"))
    load_dotenv(dotenv_path=env_path, override=False)

    def _apply_env_alias(primary: str, aliases: list[str]) -> None:
        value = (os.getenv(primary) or "").strip()
        if not value:
            for alias in aliases:
                alias_value = (os.getenv(alias) or "").strip()
                if alias_value:
                    value = alias_value
                    os.environ[primary] = alias_value
                    break
        if value:
            for alias in aliases:
                if not (os.getenv(alias) or "").strip():
                    os.environ[alias] = value

    database_path = (os.getenv("DATABASE_PATH") or "").strip()
    if database_path and not (os.getenv("DATABASE_URL") or "").strip():
        os.environ["DATABASE_URL"] = f"sqlite:///{database_path}"

    _apply_env_alias("STORAGE_ROOT", ["UPLOAD_PATH"])
    _apply_env_alias("REDIS_URL", ["CELERY_BROKER_URL"])

    if is_production_env() and (os.getenv("JOB_DISPATCH_BACKEND") or "").lower() == "celery":
        if not (os.getenv("REDIS_URL") or "").strip():
            raise RuntimeError(
                "REDIS_URL must be set when JOB_DISPATCH_BACKEND=celery in production."
            )

import os
from dataclasses import dataclass
from functools import lru_cache

DUPLICATE_NORMALIZATION_MODES = ("trim_casefold", "collapse_whitespace", "exact")
AUTOSAVE_ORDERING_KEYS = ("sequence", "client_timestamp")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./quizdesk.db"
    openai_api_key: str | None = None
    model: str = "gpt-5"
    suggestion_timeout_seconds: float = 8.0
    max_upload_bytes: int = 10 * 1024 * 1024
    duplicate_normalization: str = "trim_casefold"
    autosave_ordering: str = "sequence"
    default_time_limit_minutes: int = 60
    default_question_count: int = 10
    max_regenerations_per_day: int = 3
    log_level: str = "INFO"

    def __post_init__(self):
        if self.duplicate_normalization not in DUPLICATE_NORMALIZATION_MODES:
            raise ValueError(
                f"QUIZDESK_DUPLICATE_NORMALIZATION must be one of {', '.join(DUPLICATE_NORMALIZATION_MODES)}"
            )
        if self.autosave_ordering not in AUTOSAVE_ORDERING_KEYS:
            raise ValueError(f"QUIZDESK_AUTOSAVE_ORDERING must be one of {', '.join(AUTOSAVE_ORDERING_KEYS)}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./quizdesk.db"),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        model=os.getenv("QUIZDESK_MODEL", "gpt-5"),
        suggestion_timeout_seconds=_env_float("QUIZDESK_SUGGESTION_TIMEOUT_SECONDS", 8.0),
        max_upload_bytes=_env_int("QUIZDESK_MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
        duplicate_normalization=os.getenv("QUIZDESK_DUPLICATE_NORMALIZATION", "trim_casefold"),
        autosave_ordering=os.getenv("QUIZDESK_AUTOSAVE_ORDERING", "sequence"),
        default_time_limit_minutes=_env_int("QUIZDESK_DEFAULT_TIME_LIMIT_MINUTES", 60),
        default_question_count=_env_int("QUIZDESK_DEFAULT_QUESTION_COUNT", 10),
        max_regenerations_per_day=_env_int("QUIZDESK_MAX_REGENERATIONS_PER_DAY", 3),
        log_level=os.getenv("QUIZDESK_LOG_LEVEL", "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()

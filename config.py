import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_DATABASE_URL = f"sqlite:///{BASE_DIR / 'app.db'}"

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


class Settings(BaseModel):
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-flash-latest"
    native_system_instruction: bool = False
    generation_timeout_seconds: float = Field(default=60.0, gt=0)

    database_url: str = DEFAULT_DATABASE_URL
    redis_url: str | None = None
    rate_limit_requests: int = Field(default=20, gt=0)
    rate_limit_window_seconds: int = Field(default=3600, gt=0)

    cors_origins: list[str] = ["http://localhost:3000"]
    expose_error_details: bool = False

    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("redis_url")
    @classmethod
    def _blank_is_unset(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    def require_api_key(self) -> str:
        if not self.gemini_api_key:
            raise RuntimeError("Missing GEMINI_API_KEY")
        return self.gemini_api_key

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "Settings":
        load_dotenv(env_file or BASE_DIR / ".env")

        origins = os.getenv("CORS_ORIGINS", "http://localhost:3000")
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-flash-latest"),
            native_system_instruction=_flag("NATIVE_SYSTEM_INSTRUCTION"),
            generation_timeout_seconds=float(os.getenv("GENERATION_TIMEOUT_SECONDS", "60")),
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            redis_url=os.getenv("REDIS_URL"),
            rate_limit_requests=int(os.getenv("RATE_LIMIT_REQUESTS", "20")),
            rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "3600")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            expose_error_details=_flag("EXPOSE_ERROR_DETAILS"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_flag("LOG_JSON", "true"),
        )

from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024
DEFAULT_SIZE_THRESHOLD = 900 * MIB
MAX_SIZE_THRESHOLD = 1024 * MIB
HYSTERESIS_RATIO = 0.9

SIZE_THRESHOLD_KEY = "repository_size_threshold"
NAME_TEMPLATE_KEY = "repository_name_template"
INITIAL_NAME_KEY = "initial_repository_name"
INITIAL_OWNER_KEY = "initial_repository_owner"

DEFAULT_BASE_NAME = "images-repo"


class Settings(BaseSettings):
    GITHUB_TOKEN: Optional[str] = None
    GITHUB_OWNER: Optional[str] = None
    GITHUB_REPO: Optional[str] = None
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_BRANCH: str = "main"

    DEPLOY_HOOK: Optional[str] = None
    SITE_URL: str = "http://localhost:8788"

    # Cloudflare Pages project whose REPOS variable lists every store
    CF_API_TOKEN: Optional[str] = None
    CF_ACCOUNT_ID: Optional[str] = None
    CF_PROJECT_NAME: Optional[str] = None
    CF_API_URL: str = "https://api.cloudflare.com/client/v4"
    REPOS: str = ""

    DATABASE_URL: str = "sqlite:///./pixrepo.db"

    SESSION_TTL_SECONDS: int = 600
    SESSION_STORE: str = "memory"
    SESSION_DIR: Path = Path("./upload-sessions")
    SESSION_S3_BUCKET: Optional[str] = None
    SESSION_S3_PREFIX: str = "upload-sessions"
    SESSION_S3_REGION: str = "us-east-1"
    SESSION_S3_ENDPOINT: Optional[str] = None
    MAX_TOTAL_CHUNKS: int = 10000

    REPO_INIT_WAIT_SECONDS: float = 3.0
    FOLDER_CREATE_TIMEOUT_SECONDS: float = 10.0
    PATH_UTC_OFFSET_HOURS: int = 8
    RECONCILE_INTERVAL_MINUTES: int = 0

    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[Path] = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def discovery_enabled(self) -> bool:
        return bool(self.CF_API_TOKEN and self.CF_ACCOUNT_ID and self.CF_PROJECT_NAME)

    @property
    def has_default_store(self) -> bool:
        return bool(self.GITHUB_REPO and self.GITHUB_OWNER)


def check_size_threshold(value: int) -> int:
    if value <= 0:
        raise ValueError("repository_size_threshold must be positive")
    if value > MAX_SIZE_THRESHOLD:
        raise ValueError(
            f"repository_size_threshold may not exceed {MAX_SIZE_THRESHOLD} bytes (1GB)"
        )
    return value


class StoreSettings(BaseModel):
    """Typed view of the key/value ``settings`` table.

    Values are stored as strings; they are parsed and range-checked here once
    so the allocator and reconciler only ever see validated integers.
    """

    repository_size_threshold: int = DEFAULT_SIZE_THRESHOLD
    repository_name_template: Optional[str] = None

    @field_validator("repository_size_threshold")
    @classmethod
    def _check_threshold(cls, value: int) -> int:
        return check_size_threshold(value)

    @field_validator("repository_name_template")
    @classmethod
    def _blank_template_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def reactivate_below(self) -> float:
        return self.repository_size_threshold * HYSTERESIS_RATIO

    @classmethod
    def from_rows(cls, rows: dict[str, str]) -> "StoreSettings":
        values = {}

        raw_threshold = rows.get(SIZE_THRESHOLD_KEY)
        if raw_threshold not in (None, ""):
            try:
                threshold = int(str(raw_threshold).strip())
                check_size_threshold(threshold)
                values["repository_size_threshold"] = threshold
            except ValueError:
                logger.warning(
                    f"Ignoring invalid {SIZE_THRESHOLD_KEY}={raw_threshold!r}, "
                    f"using default {DEFAULT_SIZE_THRESHOLD}"
                )

        if rows.get(NAME_TEMPLATE_KEY) is not None:
            values["repository_name_template"] = rows[NAME_TEMPLATE_KEY]

        return cls(**values)

    def to_rows(self) -> dict[str, str]:
        return {
            SIZE_THRESHOLD_KEY: str(self.repository_size_threshold),
            NAME_TEMPLATE_KEY: self.repository_name_template or "",
        }


def get_settings() -> Settings:
    return Settings()

"""Application configuration contract."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")

    # Managed tree layout
    managed_root: str = Field(alias="SKILLOPS_ROOT", default=".skills")
    manifest_file: str = Field(alias="SKILLOPS_MANIFEST_FILE", default="manifest.json")
    system_paths: str = Field(
        alias="SKILLOPS_SYSTEM_PATHS",
        default="skills,commands,instructions.md,manifest.json",
    )
    protected_paths: str = Field(
        alias="SKILLOPS_PROTECTED_PATHS",
        default="tasks,history,settings.local.json",
    )
    backup_dir: str = Field(alias="SKILLOPS_BACKUP_DIR", default=".skillops/backups")
    staging_dir: str = Field(alias="SKILLOPS_STAGING_DIR", default=".skillops/staging")

    # Remote release endpoints
    version_url: str = Field(alias="SKILLOPS_VERSION_URL", default="")
    archive_url: str = Field(alias="SKILLOPS_ARCHIVE_URL", default="")
    http_timeout_seconds: float = Field(alias="SKILLOPS_HTTP_TIMEOUT_SECONDS", default=15.0)

    # Session finalization
    session_log: str = Field(alias="SKILLOPS_SESSION_LOG", default=".skills/history/sessions.md")
    lint_command: str = Field(alias="SKILLOPS_LINT_COMMAND", default="")
    lint_fix_command: str = Field(alias="SKILLOPS_LINT_FIX_COMMAND", default="")
    build_command: str = Field(alias="SKILLOPS_BUILD_COMMAND", default="")
    gate_timeout_seconds: int = Field(alias="SKILLOPS_GATE_TIMEOUT_SECONDS", default=600)
    trunk_branch: str = Field(alias="SKILLOPS_TRUNK_BRANCH", default="main")
    remote: str = Field(alias="SKILLOPS_REMOTE", default="origin")

    github_token: str = Field(alias="GITHUB_TOKEN", default="")
    github_api_base_url: str = Field(alias="GITHUB_API_BASE_URL", default="https://api.github.com")
    github_repo: str = Field(alias="GITHUB_REPO", default="")

    # Review gate policy
    review_bot_login: str = Field(alias="REVIEW_BOT_LOGIN", default="")
    review_threshold: float = Field(alias="REVIEW_THRESHOLD", default=4.0)
    review_max_attempts: int = Field(alias="REVIEW_MAX_ATTEMPTS", default=3)
    review_poll_interval_seconds: float = Field(
        alias="REVIEW_POLL_INTERVAL_SECONDS", default=30.0
    )
    review_poll_timeout_seconds: float = Field(alias="REVIEW_POLL_TIMEOUT_SECONDS", default=600.0)
    review_file_limit: int = Field(alias="REVIEW_FILE_LIMIT", default=100)
    review_fix_command: str = Field(alias="REVIEW_FIX_COMMAND", default="")

    @property
    def root_path(self) -> Path:
        return Path(self.managed_root).expanduser()

    @property
    def manifest_path(self) -> Path:
        return self.root_path / self.manifest_file

    @property
    def backup_path(self) -> Path:
        return Path(self.backup_dir).expanduser()

    @property
    def staging_path(self) -> Path:
        return Path(self.staging_dir).expanduser()


def validate_settings_for_env(settings: Settings) -> None:
    problems: list[str] = []

    if not 0 <= settings.review_threshold <= 5:
        problems.append("REVIEW_THRESHOLD(must be within 0..5)")
    if settings.review_max_attempts < 0:
        problems.append("REVIEW_MAX_ATTEMPTS(must be >= 0)")
    if settings.review_poll_interval_seconds <= 0:
        problems.append("REVIEW_POLL_INTERVAL_SECONDS(must be > 0)")
    if settings.review_poll_timeout_seconds <= 0:
        problems.append("REVIEW_POLL_TIMEOUT_SECONDS(must be > 0)")
    if settings.review_poll_interval_seconds > settings.review_poll_timeout_seconds:
        problems.append("REVIEW_POLL_INTERVAL_SECONDS(must not exceed poll timeout)")
    if settings.review_file_limit <= 0:
        problems.append("REVIEW_FILE_LIMIT(must be > 0)")
    if settings.http_timeout_seconds <= 0:
        problems.append("SKILLOPS_HTTP_TIMEOUT_SECONDS(must be > 0)")

    system = {entry.strip("/") for entry in split_csv(settings.system_paths)}
    protected = {entry.strip("/") for entry in split_csv(settings.protected_paths)}
    if not system:
        problems.append("SKILLOPS_SYSTEM_PATHS(must not be empty)")
    # Nesting counts as overlap in either direction.
    overlapping = sorted(
        right
        for right in protected
        for left in system
        if right == left or right.startswith(f"{left}/") or left.startswith(f"{right}/")
    )
    if overlapping:
        overlap = ",".join(overlapping)
        problems.append(f"SKILLOPS_PROTECTED_PATHS(overlaps system paths: {overlap})")
    if settings.manifest_file not in system:
        problems.append("SKILLOPS_MANIFEST_FILE(must be listed in SKILLOPS_SYSTEM_PATHS)")

    if settings.app_env == "prod":
        required_non_empty = {
            "SKILLOPS_VERSION_URL": settings.version_url,
            "SKILLOPS_ARCHIVE_URL": settings.archive_url,
        }
        for key, value in required_non_empty.items():
            if not value.strip():
                problems.append(key)
        if settings.review_bot_login.strip() and not settings.github_token.strip():
            problems.append("GITHUB_TOKEN")

    if problems:
        keys = ", ".join(sorted(set(problems)))
        raise ValueError(f"invalid configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

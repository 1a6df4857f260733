from datetime import tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from memora.domain.constants import (
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RESYNC_ATTEMPTS,
    DEFAULT_SYNC_INTERVAL,
    PUSH_BATCH_SIZE,
    REQUEST_TIMEOUT,
)


def config_files() -> list[Path]:
    return [
        Path.home() / ".config/memora/config.toml",
        Path.home() / ".memora.toml",
    ]


class AppConfig(BaseSettings):
    """
    Runtime configuration for memora.
    Supports loading from:
    1. Config file (~/.config/memora/config.toml or ~/.memora.toml)
    2. Environment variables (MEMORA_*)
    3. Manual overrides (CLI)
    """

    model_config = SettingsConfigDict(env_prefix="MEMORA_", extra="ignore")

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local/share/memora")
    mirror_path: Path | None = None
    server_db: Path | None = None

    # Server
    server_url: str = "http://localhost:8777"
    request_timeout: float = Field(default=REQUEST_TIMEOUT, gt=0)

    # Study
    timezone: str = "UTC"

    # Sync
    sync_interval: float = Field(default=DEFAULT_SYNC_INTERVAL, gt=0)
    max_backoff: float = Field(default=DEFAULT_MAX_BACKOFF, gt=0)
    max_resync_attempts: int = Field(default=DEFAULT_MAX_RESYNC_ATTEMPTS, ge=1)
    push_batch_size: int = Field(default=PUSH_BATCH_SIZE, ge=1)

    # 0 warnings, 1 info, 2+ debug
    verbose: int = Field(default=0, ge=0)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Earlier sources win: CLI overrides, then env, then the first config file found.
        toml_file = next((f for f in config_files() if f.exists()), None)
        if toml_file:
            return (
                init_settings,
                env_settings,
                TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            )
        return (init_settings, env_settings)

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {v!r}") from e
        return v

    @model_validator(mode="after")
    def default_db_paths(self) -> "AppConfig":
        if self.mirror_path is None:
            self.mirror_path = self.data_dir / "mirror.db"
        if self.server_db is None:
            self.server_db = self.data_dir / "server.db"
        return self

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)


def resolve_config(cli_overrides: dict[str, Any] | None = None) -> AppConfig:
    """
    Resolve configuration, later layers winning:
    1. Defaults in AppConfig
    2. ~/.config/memora/config.toml (if exists)
    3. Environment variables (MEMORA_*)
    4. cli_overrides (passed from Typer, None values dropped)
    """
    overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    return AppConfig(**overrides)

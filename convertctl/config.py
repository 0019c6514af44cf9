"""Process configuration loaded from the environment."""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings, overridable with CONVERTCTL_* environment variables."""
    model_config = SettingsConfigDict(env_prefix="CONVERTCTL_")

    data_dir: Path = Path(".convertctl")
    ffmpeg_path: str = "ffmpeg"
    poll_interval: float = 1.0
    log_dir: Optional[Path] = None
    log_level: str = "INFO"
    default_output_dir: Optional[Path] = None

    @property
    def resolved_log_dir(self) -> Path:
        return self.log_dir if self.log_dir is not None else self.data_dir / "logs"


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()

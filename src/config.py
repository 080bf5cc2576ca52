import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.4.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 9999
    # Port for the multiview static file server, defaults to PORT + 1
    MULTIVIEW_PORT: Optional[int] = None
    LOG_LEVEL: str = "info"
    DEBUG: bool = False

    # Storage locations
    DATA_DIR: str = "data"
    CACHE_DIR: str = "cache"
    MULTIVIEW_DIR: str = "multiview"
    MULTIVIEW_MASTER_NAME: str = "master.m3u8"
    # Hard limit on one multiview FFmpeg run, in seconds
    MULTIVIEW_MAX_RUNTIME: float = 432000

    # Encoder used by the multiview composer
    FFMPEG_PATH: str = "ffmpeg"
    FFMPEG_ENCODER: str = "libx264"
    FFMPEG_LOGGING: bool = False

    # Account credentials (override the stored credentials file when set)
    ACCOUNT_USERNAME: Optional[str] = None
    ACCOUNT_PASSWORD: Optional[str] = None

    # Optional basic auth protection for the gateway
    PAGE_USERNAME: Optional[str] = None
    PAGE_PASSWORD: Optional[str] = None

    # Upstream fetch behaviour
    UPSTREAM_RETRY_ATTEMPTS: int = 2
    UPSTREAM_RETRY_DELAY: float = 1.0
    UPSTREAM_TIMEOUT: float = 30.0
    USER_AGENT: str = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:87.0) Gecko/20100101 Firefox/87.0"

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )

    @property
    def multiview_port(self) -> int:
        return self.MULTIVIEW_PORT or self.PORT + 1

    @property
    def log_level(self) -> str:
        return "debug" if self.DEBUG else self.LOG_LEVEL.lower()

    @property
    def credentials_file(self) -> str:
        return os.path.join(self.DATA_DIR, "credentials.json")

    @property
    def session_file(self) -> str:
        return os.path.join(self.DATA_DIR, "session.json")

    @property
    def preferences_file(self) -> str:
        return os.path.join(self.DATA_DIR, "preferences.json")

    @property
    def protection_enabled(self) -> bool:
        return bool(self.PAGE_USERNAME and self.PAGE_PASSWORD)


# Global settings instance
settings = Settings()

"""Application configuration."""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # App info
    VERSION: str = "1.0.0"
    APP_NAME: str = "DevPulse Engine"
    DEBUG: bool = False

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 5000
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Paths
    DATA_PATH: Path = Path.home() / ".devpulse"
    WORKSPACE_PATH: Optional[Path] = None
    DATABASE_URL: Optional[str] = None

    # Git
    GIT_PATH: str = "git"
    CLONE_TIMEOUT: int = 300  # 5 minutes

    # Coding agent - the instruction is written to stdin
    AGENT_COMMAND: str = "cline"
    AGENT_ARGS: List[str] = ["--oneshot"]
    AGENT_TIMEOUT: int = 600  # 10 minutes
    AGENT_MIN_OUTPUT_CHARS: int = 100
    ANTHROPIC_API_KEY: Optional[str] = None

    # GitHub
    GITHUB_API_URL: str = "https://api.github.com"
    BOT_NAME: str = "DevPulse AI"
    BOT_EMAIL: str = "ai@devpulse.app"
    FIX_BRANCH_PREFIX: str = "devpulse-ai-fix"
    DEFAULT_BASE_BRANCH: str = "main"

    # Analysis
    DEFAULT_QUALITY_SCORE: int = 75
    MAX_BUG_FIXES: int = 5

    # Progress streaming
    STREAM_POLL_INTERVAL: float = 1.0

    # Job reconciliation
    STALE_JOB_MINUTES: int = 45
    SWEEP_INTERVAL: int = 60

    # Auth
    JWT_SECRET: str = ""

    model_config = SettingsConfigDict(
        env_prefix="PULSE_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.WORKSPACE_PATH is None:
            self.WORKSPACE_PATH = self.DATA_PATH / "workspaces"
        if self.DATABASE_URL is None:
            self.DATABASE_URL = f"sqlite+aiosqlite:///{self.DATA_PATH / 'devpulse.db'}"

        # Create directories
        self.DATA_PATH.mkdir(parents=True, exist_ok=True)
        self.WORKSPACE_PATH.mkdir(parents=True, exist_ok=True)


@lru_cache()
def get_settings() -> Settings:
    """Settings loaded from the environment, built once per process."""
    return Settings()

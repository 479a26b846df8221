"""Configuration settings for the HostHarness control plane."""

import tempfile
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_DEFAULT_STATE_DIR = Path(tempfile.gettempdir()) / "hostharness"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HARNESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # General Settings
    agent_name: str = Field("HostHarness", description="Name reported in logs and status")
    log_level: str = Field("INFO", description="Logging level")
    log_dir: Path = Field(Path("./logs"), description="Log directory")

    # Audit Settings
    audit_max_entries: int = Field(10_000, description="Maximum retained audit entries")
    action_log_max_entries: int = Field(200, description="Maximum retained action records")

    # Safety Settings
    rate_limit_per_second: int = Field(0, description="Max mutating commands per second, 0 disables")
    confirmation_dir: Path = Field(_DEFAULT_STATE_DIR / "confirmations", description="Confirmation file directory")
    monitor_output_dir: Path = Field(_DEFAULT_STATE_DIR / "monitors", description="Monitor JSONL output directory")
    use_default_policy: bool = Field(True, description="Seed the destructive-command blocklist")
    blocked_programs: List[str] = Field(default_factory=list, description="Extra blocked program names")
    blocked_patterns: List[str] = Field(default_factory=list, description="Extra blocked regex patterns")

    # Shell Settings
    shell_timeout_seconds: int = Field(60, description="Default shell command timeout in seconds")
    shell_max_output_chars: int = Field(100_000, description="Maximum captured stdout characters")

    # Emergency Stop Settings
    enable_emergency_hotkey: bool = Field(True, description="Listen for the global emergency hotkey")
    emergency_hotkey: str = Field("<ctrl>+<shift>+<esc>", description="Global emergency stop hotkey")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level setting."""
        allowed = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("audit_max_entries", "action_log_max_entries")
    @classmethod
    def validate_capacity(cls, v):
        """Bounded logs need a positive capacity."""
        if v <= 0:
            raise ValueError("Log capacity must be positive")
        return v

    @field_validator("rate_limit_per_second")
    @classmethod
    def validate_rate_limit(cls, v):
        """Negative limits mean disabled."""
        return max(0, v)


# Global settings instance
settings = Settings()

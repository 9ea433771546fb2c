"""
Settings for the stockflow engine and its HTTP surface
Every value can be overridden by a STOCKFLOW_-prefixed environment variable or a .env file
"""

import logging
from typing import List, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine and service settings

    Resolver limits and stateful-function sizes apply to every run; the
    logging, CORS and request options only matter to the API process.
    """

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "human"] = "json"
    log_file: Optional[str] = None
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    env: str = "development"
    debug: bool = False

    # HTTP surface
    allowed_origins: str = "*"  # Comma-separated
    max_request_size: int = 1 * 1024 * 1024
    simulation_timeout: int = Field(300, gt=0, description="Seconds per /simulate request")

    # Run loop
    progress_report_interval: int = Field(100, ge=1, description="Progress callbacks per run")
    max_simulation_steps: int = Field(1_000_000, ge=1)

    # Step resolver
    max_aux_passes: int = Field(20, ge=1)
    aux_error_grace_passes: int = Field(5, ge=0)
    aux_convergence_tolerance: float = Field(1e-10, ge=0)
    strict_convergence: bool = False

    # Stateful functions
    pink_noise_octaves: int = Field(16, ge=1, le=32)
    max_lookup_table_points: int = Field(1000, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="STOCKFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level '{v}'")
        return level

    @field_validator("log_format", mode="before")
    @classmethod
    def normalize_log_format(cls, v):
        return v.lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def grace_within_pass_limit(self) -> "Settings":
        if self.aux_error_grace_passes >= self.max_aux_passes:
            raise ValueError("aux_error_grace_passes must be below max_aux_passes")
        # Production logs are always structured
        if self.is_production:
            self.log_format = "json"
        return self

    @property
    def log_format_json(self) -> bool:
        return self.log_format == "json"

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    @property
    def allowed_origins_list(self) -> List[str]:
        origins = [origin.strip() for origin in self.allowed_origins.split(",")]
        if "*" in origins:
            return ["*"]
        return origins


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Process-wide settings, loaded on first use

    Returns:
        The shared Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

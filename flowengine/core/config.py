"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1, le=65535)
    debug: bool = Field(default=False)
    cors_origins: List[str] = Field(default_factory=list)

    # Persistence
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    completed_ttl: int = Field(default=86400, ge=60)  # terminal checkpoints

    # Scheduler
    max_parallel_nodes: int = Field(default=4, ge=1, le=64)
    node_timeout: float = Field(default=300.0, gt=0)
    max_delay_seconds: float = Field(default=86400.0, gt=0)
    condition_match_policy: Literal["first", "all"] = Field(default="first")

    # Lease / recovery
    lease_ttl: int = Field(default=30, ge=5)
    lease_renew_interval: float = Field(default=10.0, gt=0)
    recovery_enabled: bool = Field(default=True)
    sweep_interval: int = Field(default=60, ge=1)

    # Execution Engine
    dlq_enabled: bool = Field(default=False)
    event_queue_size: int = Field(default=1000, ge=10)

    # AI providers (used when a node carries no secret reference)
    openai_api_key: Optional[str] = Field(default=None)
    anthropic_api_key: Optional[str] = Field(default=None)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="console")
    log_file: Optional[str] = Field(default=None)

    @field_validator("lease_renew_interval")
    @classmethod
    def validate_renew_interval(cls, v, info):
        """Lease must be renewed well before it expires."""
        ttl = info.data.get("lease_ttl")
        if ttl is not None and v >= ttl:
            raise ValueError("lease_renew_interval must be shorter than lease_ttl")
        return v

    @field_validator("log_file")
    @classmethod
    def validate_log_file(cls, v):
        """Ensure log directory exists."""
        if v:
            Path(v).parent.mkdir(parents=True, exist_ok=True)
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }

#!/usr/bin/env python3
"""
Pydantic models for HvBackup configuration validation.
"""

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

HVBACKUP_CONFIG_FILE = ".hvbackup.yaml"


class PollingSettings(BaseModel):
    """How the job monitor waits on vendor jobs."""

    initial_interval: float = Field(default=0.5, ge=0, description="First poll delay in seconds")
    max_interval: float = Field(default=5.0, ge=0, description="Upper bound on poll delay")
    backoff_factor: float = Field(default=2.0, ge=1.0, description="Delay multiplier per poll")
    timeout_seconds: Optional[float] = Field(
        default=None, gt=0, description="Give up waiting after this many seconds"
    )
    max_transient_retries: int = Field(
        default=5, ge=0, description="Consecutive transient polling errors tolerated"
    )

    @model_validator(mode="after")
    def max_not_below_initial(self) -> "PollingSettings":
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must be >= initial_interval")
        return self


class ConnectionSettings(BaseModel):
    """Where the management service lives."""

    host: str = Field(default=".", description="Hyper-V host ('.' for local)")
    namespace: str = Field(default="root\\virtualization\\v2", description="WMI namespace")
    username: Optional[str] = Field(default=None, description="Remote user")
    password: Optional[str] = Field(default=None, description="Remote password")

    @field_validator("host")
    @classmethod
    def host_must_be_set(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("host cannot be empty")
        return v.strip()


class EngineConfig(BaseModel):
    """Complete HvBackup configuration with validation."""

    version: str = Field(default="1", description="Config version")
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)

    @field_validator("version")
    @classmethod
    def version_supported(cls, v: str) -> str:
        if str(v) != "1":
            raise ValueError(f"Unsupported config version: {v}")
        return str(v)

    def save(self, path: Path) -> None:
        """Save configuration to YAML file."""
        config_dict = self.model_dump(exclude_none=True)
        path.write_text(yaml.dump(config_dict, default_flow_style=False, sort_keys=False))

    @classmethod
    def load(cls, path: Path) -> "EngineConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        if path.is_dir():
            path = path / HVBACKUP_CONFIG_FILE
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(data)

"""Configuration management for mdlive."""

import os
from pathlib import Path
from typing import Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator


DEFAULT_PROJECTS_FILE = Path.home() / ".mdlive.json"


class ServerConfig(BaseModel):
    host: str = "localhost"
    port: int = 4000

    @field_validator('port')
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return v


class SyncConfig(BaseModel):
    """Live reload timing."""
    debounce_ms: int = 100
    heartbeat_s: float = 15.0

    @field_validator('debounce_ms', 'heartbeat_s')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @property
    def debounce_s(self) -> float:
        return self.debounce_ms / 1000.0


class SearchConfig(BaseModel):
    limit: int = 15
    max_limit: int = 100

    @field_validator('limit', 'max_limit')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class Config(BaseModel):
    """Main configuration for the mdlive daemon."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    projects_file: Path = DEFAULT_PROJECTS_FILE
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @field_validator('projects_file')
    @classmethod
    def expand_projects_file(cls, v: Path) -> Path:
        return Path(v).expanduser()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from a YAML file.

        Without an explicit path the default locations are tried in order;
        if none exists the built-in defaults are used. ``PORT`` in the
        environment overrides the configured port.
        """
        if config_path is None:
            candidates = [
                Path("mdlive.yaml"),
                Path.home() / ".config" / "mdlive" / "config.yaml",
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break

        if config_path is None:
            logger.debug("No config file found, using defaults")
            data = {}
        else:
            config_path = Path(config_path)
            if not config_path.exists():
                raise FileNotFoundError(f"Config file not found: {config_path}")
            logger.info(f"Loading config from: {config_path}")
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}

        config = cls(**data)

        port = os.environ.get("PORT")
        if port:
            config.server = ServerConfig(host=config.server.host, port=int(port))

        return config

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)

"""
Application Configuration Module

This module provides Pydantic-based configuration models for the llama manager.
All configuration is validated and type-checked at load time.

Configuration Sections:
    - ApiConfig: API server settings (host, port, CORS)
    - EngineConfig: llama-server process settings (port, models dir, commands, timeouts)
    - ProxyConfig: Upstream HTTP client and retry settings
    - LoggingConfig: Log level, format and directory
    - AppConfig: Root configuration container

Runtime settings that operators change over HTTP (context size, GPU layers,
reasoning effort...) are not part of the static config. They live in the
durable state file and are modelled by RuntimeSettings.

Environment Variables:
    - CONFIG_PATH: Override config file path (default: config.json)
    - LLAMA_PORT: Override engine port
    - MODELS_DIR: Override model root directory
    - API_PORT: Override API server port
    - STATE_PATH: Override state file path

Usage:
    from llama_manager.core.config import load_config

    config = load_config("config.json")
    print(config.api.port, config.engine.models_dir)
"""

import os
import json
import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SCRIPTS_DIR = PROJECT_ROOT / "scripts"

ReasoningEffort = Literal["low", "medium", "high"]


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{value}'")


class ApiConfig(BaseModel):
    """
    API server configuration.

    Attributes:
        host: IP address to bind (0.0.0.0 for all interfaces)
        port: Port number (1024-65535)
        cors_origins: List of allowed CORS origins
    """

    host: str = Field(
        default="0.0.0.0",
        description="IP address for API server binding"
    )
    port: int = Field(
        default=3001,
        ge=1024,
        le=65535,
        description="Port for API server (1024-65535)"
    )
    cors_origins: List[str] = Field(
        default=["*"],
        description="Allowed origins for CORS"
    )

    @model_validator(mode="after")
    def apply_env_override(self) -> "ApiConfig":
        port = _env_int("API_PORT")
        if port is not None:
            logger.info(f"Using API port from ENV: {port}")
            self.port = port
        return self


class EngineConfig(BaseModel):
    """
    Engine (llama-server) process configuration.

    The engine is launched through an external command. Router mode and
    single-preset mode each have their own command; both receive their
    parameters through environment variables.
    """

    host: str = Field(
        default="127.0.0.1",
        description="Host the engine listens on"
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port the engine listens on"
    )
    models_dir: str = Field(
        default="~/models",
        description="Root directory for model files"
    )
    router_command: List[str] = Field(
        default_factory=lambda: ["bash", str(SCRIPTS_DIR / "start-router.sh")],
        description="Command used to launch the engine in router mode"
    )
    preset_command: List[str] = Field(
        default_factory=lambda: ["bash", str(SCRIPTS_DIR / "start-preset.sh")],
        description="Command used to launch the engine for a single preset"
    )
    process_name: str = Field(
        default="llama-server",
        description="Process name used for orphan cleanup"
    )
    kill_orphans: bool = Field(
        default=True,
        description="Kill stray engine processes by name and port on stop"
    )

    # Timeout settings
    graceful_stop_timeout_sec: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Time to wait after SIGTERM before SIGKILL"
    )
    force_kill_timeout_sec: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Time to wait after SIGKILL before giving up"
    )
    health_timeout_sec: float = Field(
        default=60.0,
        gt=0,
        le=3600,
        description="Maximum time to wait for the engine health check"
    )
    health_poll_interval_sec: float = Field(
        default=0.5,
        gt=0,
        le=10,
        description="Interval between health checks during startup"
    )
    restart_lock_timeout_sec: float = Field(
        default=60.0,
        gt=0,
        le=3600,
        description="Maximum time to wait for a concurrent restart to finish"
    )
    restart_settle_delay_sec: float = Field(
        default=1.0,
        ge=0,
        le=30,
        description="Delay between stopping and starting the engine"
    )

    @field_validator("models_dir")
    @classmethod
    def validate_models_dir(cls, v: str) -> str:
        """
        Resolve the model root directory.

        Priority order:
        1. MODELS_DIR environment variable
        2. Value from config file
        """
        env_path = os.getenv("MODELS_DIR")
        if env_path:
            logger.info(f"Using models dir from ENV: {env_path}")
            v = env_path
        return str(Path(v).expanduser())

    @field_validator("router_command", "preset_command")
    @classmethod
    def validate_command(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("Engine command must not be empty")
        return v

    @model_validator(mode="after")
    def apply_env_override(self) -> "EngineConfig":
        port = _env_int("LLAMA_PORT")
        if port is not None:
            logger.info(f"Using engine port from ENV: {port}")
            self.port = port
        return self

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class ProxyConfig(BaseModel):
    """Upstream HTTP client and retry configuration."""

    connect_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries after a connection-level failure to the engine"
    )
    retry_base_delay_sec: float = Field(
        default=1.0,
        ge=0,
        le=30,
        description="Base delay for exponential backoff between attempts"
    )
    request_timeout_sec: float = Field(
        default=600.0,
        ge=10,
        le=3600,
        description="Read timeout for inference requests (seconds)"
    )

    # HTTP client settings
    max_keepalive: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Max keepalive connections"
    )
    max_connections: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Max total HTTP connections"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Root log level"
    )
    structured: bool = Field(
        default=False,
        description="Emit JSON log lines instead of human-readable ones"
    )
    log_dir: str = Field(
        default="logs",
        description="Directory for the manager log file"
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return v


class AppConfig(BaseModel):
    """
    Root application configuration.

    Attributes:
        api: API server configuration
        engine: Engine process configuration
        proxy: Upstream proxy configuration
        logging: Logging configuration
        state_path: Path of the durable state file (presets, aliases, settings)
    """

    api: ApiConfig = Field(default_factory=ApiConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state_path: str = Field(
        default="data/state.json",
        description="Path of the durable state file"
    )

    @field_validator("state_path")
    @classmethod
    def validate_state_path(cls, v: str) -> str:
        env_path = os.getenv("STATE_PATH")
        if env_path:
            logger.info(f"Using state path from ENV: {env_path}")
            v = env_path
        return str(Path(v).expanduser())


class RuntimeSettings(BaseModel):
    """
    Operator-editable runtime settings.

    Stored in the state file with camelCase keys and editable over HTTP.
    These are the defaults used when launching the engine in router mode and
    the fallbacks for presets that leave a launch field unset.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    context_size: int = Field(default=8192, ge=512, le=262144)
    models_max: int = Field(default=2, ge=1, le=10)
    auto_start: bool = True
    no_warmup: bool = False
    flash_attn: bool = False
    gpu_layers: int = Field(default=99, ge=0, le=999)
    default_reasoning_effort: Optional[ReasoningEffort] = None
    model_reasoning_effort: Dict[str, ReasoningEffort] = Field(default_factory=dict)

    @field_validator("model_reasoning_effort")
    @classmethod
    def validate_patterns(cls, v: Dict[str, str]) -> Dict[str, str]:
        for pattern in v:
            if not pattern.strip():
                raise ValueError("Reasoning effort pattern must not be empty")
        return v

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True)


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load and validate configuration from JSON file.

    Args:
        path: Path to config.json file. If None, uses CONFIG_PATH env var
              or defaults to 'config.json' in working directory.

    Returns:
        Validated AppConfig instance

    Raises:
        FileNotFoundError: If an explicitly requested config file is missing
        ValueError: If JSON is invalid or validation fails
    """
    explicit = path is not None or "CONFIG_PATH" in os.environ
    if path is None:
        path = os.getenv("CONFIG_PATH", "config.json")

    if not os.path.exists(path):
        if explicit:
            raise FileNotFoundError(f"Config file not found: '{path}'")
        logger.info(f"No config file at '{path}', using defaults")
        return AppConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")

    try:
        config = AppConfig(**data)
    except ValueError as e:
        raise ValueError(f"Config validation failed: {e}")

    logger.info(f"Configuration loaded from '{path}'")
    logger.info(f"Engine at {config.engine.base_url}, models in {config.engine.models_dir}")
    return config

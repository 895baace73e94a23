"""Application settings.

Every field of ``AppConfig`` can be set from an environment variable named
``AUTOMATION_ENGINE_<FIELD>`` (``AUTOMATION_ENGINE_MAX_CONCURRENT_EXECUTIONS=8``).
``load_config`` reads a dotenv file into the environment first. List
fields take comma separated values; pydantic does the remaining coercion.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "AUTOMATION_ENGINE_"

SUPPORTED_DATABASE_SCHEMES = ("sqlite", "postgresql", "mysql")


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Settings for the API process, its workers and the scheduler."""

    app_name: str = "Automation Engine"
    app_version: str = "1.0.0"
    debug: bool = False

    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = False

    database_url: str = "sqlite:///./automation_engine.db"
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    # Execution
    max_concurrent_executions: int = Field(default=10, ge=1, description="Worker threads advancing executions")
    execution_queue_size: int = Field(default=1000, ge=1, description="Executions that may wait for a free worker")
    node_retry_base_delay: float = Field(default=1.0, ge=0, description="Seconds before the first node retry; doubles per retry")
    default_execution_max_retries: int = Field(default=3, ge=0, description="Manual retries allowed per failed execution")
    loop_max_concurrency: int = Field(default=4, ge=1, description="Upper bound on concurrent LOOP iterations")

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_poll_interval: float = Field(default=5.0, ge=0, description="Seconds between wake-up passes")

    # Delivery
    webhook_delivery_url: Optional[str] = Field(default=None, description="POST action payloads here instead of recording them")
    webhook_timeout: float = 10.0

    # Analytics windows, in days
    analytics_default_days: int = Field(default=30, ge=1)
    error_analytics_default_days: int = Field(default=7, ge=1)

    websocket_max_connections: int = Field(default=100, ge=1)

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: Optional[str] = Field(default=None, description="Text log format; the engine default shows execution context")
    log_file: Optional[str] = None
    log_structured: bool = Field(default=False, description="Emit one JSON document per line")
    log_max_size: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    # HTTP
    slow_request_threshold: float = Field(default=5.0, description="Requests slower than this many seconds are logged")
    enable_performance_monitoring: bool = True
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_methods: List[str] = Field(default_factory=lambda: ["GET", "POST", "PUT", "PATCH", "DELETE"])

    @field_validator("database_url")
    @classmethod
    def check_database_scheme(cls, v: str) -> str:
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split("://", 1)[0].split("+", 1)[0].lower()
        if scheme not in SUPPORTED_DATABASE_SCHEMES:
            raise ValueError(f"Unsupported database scheme '{scheme}', expected one of {SUPPORTED_DATABASE_SCHEMES}")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_loop_concurrency(self) -> "AppConfig":
        if self.loop_max_concurrency > self.max_concurrent_executions * 4:
            raise ValueError("loop_max_concurrency may be at most four times max_concurrent_executions")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.lower().startswith("sqlite")

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug,
        }

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "AppConfig":
        """Build settings from ``AUTOMATION_ENGINE_*`` variables; unset ones keep their defaults."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if getattr(field.annotation, "__origin__", None) is list:
                values[name] = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                values[name] = raw
        return cls.model_validate(values)


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Process-wide settings, read from the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load a dotenv file (``config_file`` or ``./.env``) and rebuild the process settings."""
    global _config
    from dotenv import load_dotenv

    env_file = config_file if config_file and os.path.exists(config_file) else ".env"
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def _ensure_parent_dir(path: str, label: str, errors: List[str]) -> None:
    directory = os.path.dirname(path)
    if not directory or os.path.isdir(directory):
        return
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        errors.append(f"Cannot create {label} directory {directory}: {e}")


def validate_config(config: AppConfig) -> None:
    """Check the settings against the host: database and log directories must be creatable."""
    errors: List[str] = []
    if config.is_sqlite and ":memory:" not in config.database_url:
        _ensure_parent_dir(config.database_url.split(":///", 1)[-1], "database", errors)
    if config.log_file:
        _ensure_parent_dir(config.log_file, "log", errors)
    if errors:
        raise ValueError("Invalid configuration: " + "; ".join(errors))


def get_development_config() -> AppConfig:
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        scheduler_poll_interval=1.0
    )


def get_production_config() -> AppConfig:
    return AppConfig(log_structured=True, cors_origins=[])


def get_testing_config() -> AppConfig:
    """In-memory database, no scheduler thread and no retry backoff."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=2,
        node_retry_base_delay=0.0,
        scheduler_enabled=False,
        enable_performance_monitoring=False
    )

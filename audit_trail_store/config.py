"""
Configuration module for the audit trail store.

Provides a single validated settings object for storage, pagination,
recovery and authentication.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union, get_args, get_origin

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .exceptions import ConfigurationError


class LogLevel(str, Enum):
    """Log levels accepted by the CLI and server."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class AuditTrailConfig(BaseModel):
    """Central configuration for the audit trail store.

    Configuration can be set programmatically, loaded from environment
    variables or read from a JSON/YAML file. One instance is built at process
    start and handed to the store, the HTTP app and the CLI.

    Example:
        >>> config = AuditTrailConfig(database_url="sqlite:///audit.db")
        >>> config = AuditTrailConfig.from_env()
        >>> config = AuditTrailConfig.from_file("audit_trail.yaml")

    Environment Variables:
        Every field can be set with the AUDIT_TRAIL_ prefix, for example
        AUDIT_TRAIL_DATABASE_URL or AUDIT_TRAIL_RECOVER_WINDOW_DAYS.
    """

    # General settings
    application_name: str = Field(
        "Audit Trail", description="Name of the application writing the log"
    )
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )
    log_level: LogLevel = Field(LogLevel.INFO, description="Root log level")

    # Storage settings
    database_url: str = Field(
        "sqlite:///./audit_trail.db", description="SQLAlchemy connection string"
    )
    pool_size: int = Field(10, description="Connection pool size", gt=0)
    max_overflow: int = Field(20, description="Connections beyond pool_size", ge=0)
    echo_sql: bool = Field(False, description="Echo SQL statements")

    # Listing settings
    default_page_size: int = Field(
        20, description="Page size when the caller gives none", gt=0
    )
    max_page_size: int = Field(100, description="Upper bound for page size", gt=0)

    # Recovery settings
    recover_window_days: Optional[int] = Field(
        None, description="Days a deletion stays recoverable (None = forever)", gt=0
    )

    # Authentication settings
    jwt_secret: Optional[str] = Field(
        None, description="Shared secret for verifying bearer tokens"
    )
    jwt_algorithm: str = Field("HS256", description="Bearer token algorithm")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @model_validator(mode="after")
    def validate_page_sizes(self) -> "AuditTrailConfig":
        """Ensure the default page size fits under the maximum."""
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size cannot exceed max_page_size")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")

    def engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for sqlalchemy.create_engine."""
        options: Dict[str, Any] = {"pool_pre_ping": True, "echo": self.echo_sql}
        if not self.database_url.startswith("sqlite"):
            # SQLite doesn't support pool_size and max_overflow
            options["pool_size"] = self.pool_size
            options["max_overflow"] = self.max_overflow
        return options

    @classmethod
    def from_env(cls, prefix: str = "AUDIT_TRAIL_") -> "AuditTrailConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        import os

        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var not in os.environ:
                continue
            value = os.environ[env_var]

            field_type = field_info.annotation

            # Handle Optional types
            if get_origin(field_type) is Union:
                args = get_args(field_type)
                field_type = next((arg for arg in args if arg is not type(None)), str)

            try:
                if field_type is bool:
                    config_dict[field_name] = value.lower() in (
                        "true",
                        "1",
                        "yes",
                        "on",
                    )
                elif field_type is int:
                    config_dict[field_name] = int(value)
                elif isinstance(field_type, type) and issubclass(field_type, Enum):
                    config_dict[field_name] = field_type(value.upper())
                else:
                    config_dict[field_name] = value
            except (ValueError, TypeError):
                # Let pydantic report the invalid raw value
                config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "AuditTrailConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: File path; ``.yaml``/``.yml`` is parsed as YAML, anything
                else as JSON

        Returns:
            Configuration instance

        Raises:
            ConfigurationError: If the file is missing or malformed
        """
        file_path = Path(path)
        try:
            text = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {file_path}: {e}")

        try:
            if file_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(text) or {}
            else:
                data = json.loads(text)
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Malformed config file {file_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {file_path} must hold a mapping")

        return cls.model_validate(data)

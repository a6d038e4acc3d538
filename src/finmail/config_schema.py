"""Pydantic configuration schema for finmail.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from finmail.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

DEFAULT_FINANCIAL_QUERIES = [
    "from:(amazon.com OR paypal.com OR stripe.com OR square.com)",
    "subject:(receipt OR invoice OR bill OR statement OR payment)",
    "from:billing OR from:noreply OR from:receipts",
    "has:attachment (receipt OR invoice OR statement)",
]


def _reject_traversal(v: str, what: str) -> str:
    if not v or not v.strip():
        raise ValueError(f"{what} cannot be empty")
    if ".." in v:
        raise ValueError(f"{what} cannot contain '..' (path traversal)")
    return v


class GoogleConfig(BaseModel):
    """Google OAuth client configuration.

    The client secret is read from the GOOGLE_CLIENT_SECRET environment
    variable when not set here.
    """

    client_id: str = Field(default="", description="Google OAuth client ID")
    client_secret: str | None = Field(
        default=None,
        description="Google OAuth client secret (prefer the environment variable)",
    )
    redirect_uri: str = Field(
        default="http://localhost:8080/auth/callback",
        description="OAuth redirect URI registered in Google Cloud Console",
    )
    scopes: list[str] = Field(
        default=[
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.labels",
            "https://www.googleapis.com/auth/gmail.modify",
            "https://www.googleapis.com/auth/userinfo.email",
        ],
        description="OAuth scopes requested at consent",
    )


class GmailConfig(BaseModel):
    """Gmail sync configuration."""

    max_results: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum financial emails fetched per sync",
    )
    financial_queries: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FINANCIAL_QUERIES),
        min_length=1,
        description="Gmail search queries that select financial emails",
    )


class BatchConfig(BaseModel):
    """Bulk operation tracker configuration."""

    item_delay_ms: int = Field(
        default=100,
        ge=0,
        le=60000,
        description="Delay awaited per item, standing in for real work",
    )
    max_items: int = Field(
        default=5000,
        ge=1,
        description="Maximum entities a single batch job may select",
    )
    recent_jobs_limit: int = Field(
        default=20,
        ge=1,
        le=500,
        description="How many jobs the job list endpoint returns",
    )


class DatabaseConfig(BaseModel):
    """SQLite database configuration."""

    path: str = Field(default="data/finmail.db", description="Path to the SQLite file")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        return _reject_traversal(v, "Database path")


class ExportConfig(BaseModel):
    """Export file configuration."""

    directory: str = Field(default="data/exports", description="Where export files are written")
    default_format: Literal["csv", "json", "xlsx"] = Field(
        default="csv",
        description="Format used when an export request names none",
    )

    @field_validator("directory")
    @classmethod
    def validate_directory(cls, v: str) -> str:
        """Ensure export directory doesn't contain path traversal."""
        return _reject_traversal(v, "Export directory")


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


class AppConfig(BaseModel):
    """Root configuration schema for finmail.

    This model validates the entire config.yaml structure. On startup and
    hot-reload, the YAML is parsed and validated against this schema.
    Every section has defaults, so an empty file is a valid config.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    google: GoogleConfig = Field(default_factory=GoogleConfig)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

"""Application configuration with validation."""

from enum import Enum
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import List


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigurationError(Exception):
    """Raised when application configuration is invalid for the environment."""
    pass


class Settings(BaseSettings):
    """
    Application settings with validation.

    Credentials for the sandbox control plane, the agent and GitHub are
    optional at startup. The gateways check them at call time so a
    half-configured deployment still serves reads and health checks.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # CORS Configuration
    cors_allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:3001",
        description="Allowed CORS origins (comma-separated)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./repolens.db",
        description="Database connection URL"
    )
    # Connection pool tuning (PostgreSQL only; ignored for SQLite).
    db_pool_size: int = Field(default=5, description="Number of persistent database connections")
    db_max_overflow: int = Field(default=10, description="Extra connections allowed during traffic bursts")
    db_pool_recycle: int = Field(
        default=1800,
        description="Seconds before a connection is recycled (prevents stale connections)"
    )

    # Rate Limiting
    rate_limit_per_minute: int = Field(
        default=120,
        description="Maximum requests per client per minute"
    )

    # Job intake
    allowed_repo_prefixes: str = Field(
        default="https://github.com/",
        description="Accepted repository URL prefixes (comma-separated)"
    )

    # Sandbox control plane
    sandbox_api_url: str = Field(default="", description="Base URL of the sandbox control plane API")
    sandbox_api_key: str = Field(default="", description="API key for the sandbox control plane")
    sandbox_region: str = Field(default="us-pdx-1")
    sandbox_image: str = Field(default="blaxel/base-image:latest")
    sandbox_memory_mb: int = Field(default=4096)
    sandbox_exec_timeout_seconds: float = Field(
        default=120.0,
        description="Upper bound for a single command executed inside a sandbox"
    )
    repo_path: str = Field(
        default="/repo",
        description="Fixed location of the cloned repository inside the sandbox"
    )
    clone_max_attempts: int = Field(default=3, description="Clone attempts before giving up")
    clone_backoff_seconds: float = Field(
        default=2.0,
        description="Initial delay between clone attempts; doubles after each failure"
    )

    # Agent
    agent_url: str = Field(default="", description="Base URL of the analysis agent")
    agent_api_key: str = Field(default="", description="Credential sent to the agent runtime")
    anthropic_api_key: str = Field(default="", description="LLM provider key forwarded to the agent")
    agent_model: str = Field(default="claude-haiku-4-5")
    agent_timeout_seconds: float = Field(
        default=900.0,
        description="Upper bound for one agent call including all of its tool turns"
    )
    agent_failure_threshold: int = Field(
        default=3,
        description="Consecutive agent failures before the circuit opens"
    )
    agent_cooldown_seconds: float = Field(
        default=60.0,
        description="Seconds the agent circuit stays open before a trial request is allowed"
    )

    # Ownership lookups
    # GITHUB_TOKEN is optional: without it the API is rate limited harder but still usable.
    github_token: str = Field(default="", description="GitHub token for contributor lookups")
    github_api_base: str = Field(default="https://api.github.com")

    # Artifact export
    export_dir: str = Field(default="./exports", description="Root directory for exported artifacts")

    # Live progress and idle handling
    event_buffer_size: int = Field(
        default=100,
        description="Number of recent events kept per job for late subscribers"
    )
    event_retention_seconds: float = Field(
        default=600.0,
        description="How long a finished job's events stay replayable once no client is streaming"
    )
    stream_keepalive_seconds: float = Field(
        default=15.0,
        description="Interval between SSE keepalive comments"
    )
    idle_timeout_seconds: float = Field(
        default=30.0,
        description="Inactivity after a chat call before the sandbox is marked paused"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    def get_cors_origins(self) -> List[str]:
        """
        Get CORS origins as a list.

        Parses comma-separated string and validates no wildcards.
        """
        origins = [origin.strip() for origin in self.cors_allowed_origins.split(',') if origin.strip()]

        # SECURITY: Prevent wildcard CORS
        if "*" in origins:
            raise ValueError(
                "Wildcard CORS (*) not allowed. "
                "Specify explicit origins in CORS_ALLOWED_ORIGINS"
            )

        return origins

    def get_repo_prefixes(self) -> List[str]:
        """Accepted repository URL prefixes as a list."""
        return [p.strip() for p in self.allowed_repo_prefixes.split(',') if p.strip()]

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('event_buffer_size', 'clone_max_attempts')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Must be at least 1")
        return v

    def validate_production_config(self) -> None:
        """Validate configuration for production environment.

        In production, fails startup if CORS still points at local origins.
        Missing gateway credentials are not checked here; they surface as
        typed errors when a stage first needs them.

        Raises:
            ConfigurationError: If production config is insecure.
        """
        errors: list[str] = []

        origins = self.get_cors_origins()
        localhost_origins = [o for o in origins if "localhost" in o or "127.0.0.1" in o]
        if localhost_origins:
            errors.append(
                f"CORS allows localhost origins: {localhost_origins}. "
                "Remove localhost origins for production."
            )

        if errors and self.environment == Environment.PRODUCTION:
            raise ConfigurationError(
                "Production configuration is insecure:\n  - " + "\n  - ".join(errors)
            )


# Global settings instance
settings = Settings()

"""
Controller configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main controller settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BACKUP_CONTROLLER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="ArangoBackup Controller", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Server (health probes and metrics)
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, ge=1, le=65535, description="Server port")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    namespace: str = Field(default="default", description="Namespace watched by the controller")
    component_name: str = Field(default="arango-backup-operator", description="Event source component")

    # Custom resources
    backup_group: str = Field(default="backup.arangodb.com", description="ArangoBackup API group")
    backup_version: str = Field(default="v1alpha", description="ArangoBackup API version")
    backup_plural: str = Field(default="arangobackups", description="ArangoBackup plural name")
    backup_kind: str = Field(default="ArangoBackup", description="ArangoBackup kind")
    deployment_group: str = Field(default="database.arangodb.com", description="ArangoDeployment API group")
    deployment_version: str = Field(default="v1alpha", description="ArangoDeployment API version")
    deployment_plural: str = Field(default="arangodeployments", description="ArangoDeployment plural name")
    deployment_kind: str = Field(default="ArangoDeployment", description="ArangoDeployment kind")

    # Reconciliation
    refresh_interval: float = Field(default=120.0, gt=0, description="Seconds between out-of-band backup scans")
    status_update_attempts: int = Field(default=25, ge=1, description="Attempts for a conflicting status write")
    status_update_delay: float = Field(default=1.0, ge=0, description="Seconds between status write attempts")
    error_retry_delay: float = Field(
        default=30.0, ge=0, description="Seconds a backup stays in an error state before retrying"
    )
    operator_workers: int = Field(default=4, ge=1, le=64, description="Concurrent work queue consumers")
    resync_interval: float = Field(default=30.0, gt=0, description="Seconds between full backup resyncs")
    requeue_delay: float = Field(default=5.0, ge=0, description="Seconds before a failed item is retried")

    # ArangoDB driver
    arango_port: int = Field(default=8529, ge=1, le=65535, description="ArangoDB coordinator port")
    arango_client_timeout: float = Field(default=30.0, gt=0, description="ArangoDB client timeout in seconds")
    arango_username: Optional[str] = Field(default=None, description="ArangoDB username")
    arango_password: Optional[str] = Field(default=None, description="ArangoDB password")

    # Monitoring
    prometheus_enabled: bool = Field(default=True, description="Enable Prometheus metrics")
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "testing", "staging", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# Global settings instance
settings = Settings()

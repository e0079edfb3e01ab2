"""Configuration management for the Freebox machine controller."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FREEBOX_CAPI_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # Freebox API settings
    freebox_endpoint: str = Field(
        default="http://mafreebox.freebox.fr", description="Freebox API endpoint"
    )
    freebox_api_version: str = Field(default="v4", description="Freebox API version")
    freebox_session_token: str = Field(
        default="", description="Opened Freebox session token (X-Fbx-App-Auth)"
    )
    freebox_verify_ssl: bool = Field(default=True, description="Verify the Freebox TLS certificate")
    request_timeout_seconds: int = Field(default=10, description="Freebox API request timeout")

    # Storage layout on the appliance; discovered from the API when empty
    download_dir: str = Field(default="", description="Freebox download directory")
    vm_storage_path: str = Field(default="", description="Directory holding VM disk images")
    lan_interface: str = Field(default="pub", description="LAN browser interface for VM hosts")

    # Reconciliation timing
    poll_interval_seconds: float = Field(
        default=10, description="Requeue delay while a remote task is in progress"
    )
    step_interval_seconds: float = Field(
        default=1, description="Requeue delay between two pipeline steps"
    )
    stop_poll_interval_seconds: float = Field(
        default=1, description="Requeue delay while waiting for a VM to stop"
    )
    stop_poll_attempts: int = Field(
        default=30, description="Stop checks before deleting a VM anyway"
    )

    # Kubernetes settings
    cluster_api_version: str = Field(
        default="v1beta2", description="API version of cluster.x-k8s.io Machines"
    )

    # Driver settings
    watch_namespace: str = Field(default="", description="Namespace to watch, empty for all")
    workers: int = Field(default=4, description="Concurrent reconcile workers")
    backoff_base_seconds: float = Field(default=1, description="Initial failure backoff")
    backoff_max_seconds: float = Field(default=300, description="Maximum failure backoff")

    # Logging
    log_level: str = Field(default="INFO", description="Minimum log level")
    log_format: str = Field(default="json", description="Log renderer: json or console")

    @property
    def freebox_api_url(self) -> str:
        """Base URL of the versioned Freebox API."""
        return f"{self.freebox_endpoint.rstrip('/')}/api/{self.freebox_api_version}"


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()

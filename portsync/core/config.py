"""
Application configuration settings.

Central configuration module using Pydantic BaseSettings with environment variable support.
Loads from .env file and environment variables.
"""
import json
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Union

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if it exists (python-dotenv)
env_path = Path(".env")
if env_path.exists():
    load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Target cloud security list (OCID). Cloud sync is skipped when unset.
    SECURITY_LIST_ID: Optional[str] = Field(
        default=None,
        description="Default OCI security list OCID used when --security-list is not given",
    )

    # Ports that must always be open, regardless of discovery results
    BASELINE_PORTS: Union[str, List[str]] = Field(
        default=["22/tcp", "80/tcp", "443/tcp"],
        description="Always-open ports as port/protocol (JSON list or comma-separated)",
    )

    @field_validator("BASELINE_PORTS")
    @classmethod
    def parse_baseline_ports(cls, v):
        """Parse BASELINE_PORTS from string or list."""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not JSON, treat as comma-separated
                return [port.strip() for port in v.split(",") if port.strip()]
        return v

    # Local packet filter (iptables)
    CHAIN_NAME: str = Field(default="PORTSYNC-PORTS", description="Dedicated iptables chain")
    PARENT_CHAIN: str = Field(default="INPUT", description="Chain the dedicated chain is hooked into")
    IPTABLES_BIN: str = "iptables"
    PERSIST_COMMAND: str = Field(
        default="netfilter-persistent save",
        description="Command that saves iptables rules across restarts",
    )

    # Cloud security list (OCI CLI)
    OCI_BIN: str = "oci"
    OCI_AUTH: Optional[str] = Field(
        default=None,
        description="OCI CLI --auth value; auto-detects instance_principal when no config file exists",
    )
    OCI_CONFIG_FILE: str = "~/.oci/config"

    # Discovery sources
    DOCKER_ENABLED: bool = True
    GATEWAY_ENDPOINT: Optional[str] = Field(
        default=None,
        description="Gateway management endpoint as host:port; read from the management URL file when unset",
    )
    GATEWAY_MANAGEMENT_URL_FILE: str = "/var/run/casaos/management.url"
    GATEWAY_URL_FILE: str = "/var/run/casaos/gateway.url"
    GATEWAY_ROUTES_PATH: str = "/v1/gateway/routes"
    DISCOVER_LISTENING_SOCKETS: bool = Field(
        default=False,
        description="Also open ports of sockets listening on wildcard addresses",
    )

    # Timeouts and retries for every external call
    COMMAND_TIMEOUT: float = Field(default=60.0, gt=0, description="Seconds per CLI invocation")
    HTTP_TIMEOUT: float = Field(default=5.0, gt=0, description="Seconds per HTTP request")
    RETRY_COUNT: int = Field(default=1, ge=0, le=3, description="Retries for transient failures")

    # Scheduling
    SYNC_INTERVAL_MINUTES: int = Field(default=10, ge=1, le=59)
    SERVICE_NAME: str = "portsync"
    SYSTEMD_DIR: str = "/etc/systemd/system"
    LOCK_FILE: str = "/run/lock/portsync.lock"

    # Observability
    LAST_RUN_FILE: str = Field(
        default="/var/lib/portsync/last-run.json",
        description="Last-run summary, written for observability only",
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    LOG_DIR: str = Field(default="logs", description="Directory for the rotating log file")

    def oci_auth_args(self) -> List[str]:
        """Return the --auth arguments for the OCI CLI."""
        if self.OCI_AUTH:
            return ["--auth", self.OCI_AUTH]
        if Path(self.OCI_CONFIG_FILE).expanduser().exists():
            return []
        return ["--auth", "instance_principal"]


# Create global settings instance
@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

# Module-level instance used as the default by every service
settings = get_settings()

"""
Application Settings
Loads configuration from environment variables
"""

from pydantic_settings import BaseSettings
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application configuration"""

    # App Info
    app_name: str = "Trusted Devices Proxy"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # Database (operation journal)
    database_url: str = "sqlite:///./trusted_devices.db"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Local proxy management API
    proxy_base_url: str = "http://localhost:8100"
    proxy_username: str = "admin"
    proxy_password: str = ""
    machine_id_path: str = "/machineId"
    local_request_timeout: float = 5.0

    # Remote devices
    remote_request_timeout: float = 15.0
    remote_verify_tls: bool = False
    remote_client_cert: Optional[str] = None
    remote_client_key: Optional[str] = None
    min_certificate_delete_version: int = 13

    # Device groups
    device_group_prefix: str = "TrustProxy_"
    max_devices_per_group: int = 10
    trust_add_concurrency: int = 1

    # Device states
    active_state: str = "ACTIVE"
    in_progress_states: List[str] = [
        "PENDING",
        "FRAMEWORK_DEPLOYMENT_PENDING",
        "CERTIFICATE_INSTALL",
        "PENDING_DELETE",
        "UNDISCOVERED",
    ]

    # Reachability monitor
    monitor_enabled: bool = True
    device_query_interval: int = 30000  # milliseconds
    failed_device_removal_milliseconds: int = 0  # 0 disables auto-removal

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

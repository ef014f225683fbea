"""
Connector settings loaded from environment variables.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # ── Identity ─────────────────────────────────────────────────────────
    connector_id: str = ""
    connector_name: str = ""
    connector_version: str = "0.0.0"
    hostname: str = ""                  # overrides the advertised name
    deployment: str = ""

    # ── Orchestration service ────────────────────────────────────────────
    registration_token: Optional[str] = None
    device_endpoint: str = "https://connect.aloma.io/"
    websocket_endpoint: str = "wss://transport.aloma.io/transport/"

    # ── Key material (base64 encoded PEM) ────────────────────────────────
    private_key: Optional[str] = None
    public_key: Optional[str] = None
    key_size: int = 2048

    # ── OAuth overrides ──────────────────────────────────────────────────
    oauth_client_id: Optional[str] = None
    oauth_client_secret: Optional[str] = None
    oauth_scope: Optional[str] = None

    # ── Outbound HTTP ────────────────────────────────────────────────────
    default_retry: int = 5
    retry_delay_seconds: float = 0.5
    http_timeout_seconds: float = 30.0

    # ── Peer requests / lifecycle ────────────────────────────────────────
    request_timeout_seconds: float = 30.0
    shutdown_grace_seconds: float = 10.0

    debug: bool = False

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def advertised_name(self, fallback: str) -> str:
        """Name sent at registration: ``HOSTNAME`` wins over the connector name."""
        return self.hostname or self.connector_name or fallback


config = Settings()

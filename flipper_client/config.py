"""
Client configuration loaded from environment variables and an optional .env file.

All variables use the ``FLIPPER_`` prefix, e.g. ``FLIPPER_URL_BASE=localhost:8333``.
"""

import json
import logging
import os
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLIPPER_"


class ClientSettings(BaseSettings):
    """Connection, identification, logging and tracing settings."""

    # Connection
    url_base: str = Field(default="localhost:8333", description="host:port of the Flipper WebSocket server")
    origin: str = Field(default="localhost:", description="Origin header the host expects from local clients")
    connect_timeout: float = Field(default=10.0, description="Seconds allowed for the WebSocket handshake")
    reconnect_interval: float = Field(default=5.0, ge=0, description="Seconds between automatic reconnect attempts")
    max_retry_attempts: int = Field(default=5, ge=0, description="Consecutive failed reconnect attempts before giving up")

    # Identification (detected from the process when unset)
    app_name: Optional[str] = Field(default=None, description="App name shown in the host")
    app_version: str = Field(default="1.0", description="Prefixed to the device id")
    device_name: Optional[str] = Field(default=None, description="Device model shown in the host")
    device_id: Optional[str] = Field(default=None, description="Stable device identifier")
    os_name: Optional[str] = Field(default=None, description="OS name reported to the host")

    # Plugins - JSON list of "module:attribute" factories, e.g. '["myapp.flipper:LoggerPlugin"]'
    plugins_json: str = Field(default="[]", description="Plugins instantiated by the entry point")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    log_format: str = Field(default='%(asctime)s - %(name)s - %(levelname)s - %(message)s', description="Logging format string")
    log_to_file: bool = Field(default=False, description="Enable logging to a rotating file")
    log_file_path: str = Field(default="logs/flipper_client.log", description="Path to the log file")
    log_max_bytes: int = Field(default=1_000_000, description="Maximum size of one log file")
    log_max_files: int = Field(default=5, description="Number of log files to keep")

    # Tracing
    tracing_enabled: bool = Field(default=False, description="Export OpenTelemetry spans over OTLP/HTTP")

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        env_prefix=ENV_PREFIX,
        extra='ignore',
        case_sensitive=False,
    )

    @property
    def plugin_specs(self) -> List[str]:
        """Parsed ``plugins_json``; malformed values yield an empty list."""
        try:
            specs = json.loads(self.plugins_json)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse FLIPPER_PLUGINS_JSON: {e}")
            return []
        if not isinstance(specs, list) or not all(isinstance(spec, str) for spec in specs):
            logger.error(f"FLIPPER_PLUGINS_JSON must be a JSON list of strings, got: {self.plugins_json}")
            return []
        return specs


def load_settings(env_file: Optional[str] = '.env') -> ClientSettings:
    """Load settings, letting variables from ``env_file`` fill gaps in the environment."""
    if env_file:
        try:
            from dotenv import load_dotenv
            loaded = load_dotenv(env_file, override=False)
            logger.debug(f".env loading from {os.path.abspath(env_file)}: {loaded}")
        except Exception as e:
            logger.warning(f"Failed to load {env_file}: {e}")

    try:
        settings = ClientSettings()
    except Exception as e:
        logger.exception(f"Critical error loading client configuration: {e}")
        raise ValueError(f"Failed to load configuration: {e}") from e
    logger.info(f"Client configuration loaded (host: {settings.url_base})")
    return settings

import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

# Application version
VERSION = "1.0.0"

# Repository root, used to locate the bundled static page
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    STATIC_DIR: str = os.path.join(ROOT_DIR, "static")

    # Source discovery
    # Page whose body links to the current primary .mp3 stream
    SOURCE_PAGE_URL: str = "https://923fm.radiostream321.com/"
    # Ordered fallback list, tried in rotation when the primary is down.
    # Set as a JSON array in the environment.
    BACKUP_STREAM_URLS: List[str] = [
        "https://uk24freenew.listen2myradio.com/live.mp3?typeportmount=s1_14899_stream_645397155",
    ]
    # 3 minutes between background resolutions
    RESOLVE_INTERVAL: float = 180.0
    PAGE_FETCH_TIMEOUT: float = 8.0

    # Probe budget: headers must arrive within the connect timeout and the
    # first body bytes within the first-byte timeout
    PROBE_CONNECT_TIMEOUT: float = 5.0
    PROBE_FIRST_BYTE_TIMEOUT: float = 3.0
    PROBE_RANGE_BYTES: int = 8192

    # Relay configuration
    RELAY_TIMEOUT: float = 15.0
    # Mobile networks get a wider window to establish the upstream
    MOBILE_RELAY_TIMEOUT: float = 20.0
    # Upstream silence tolerated mid-stream before the relay gives up
    RELAY_READ_TIMEOUT: float = 60.0
    # No upstream data within this window -> 504 to the client
    FIRST_BYTE_TIMEOUT: float = 15.0
    # Idle interval after which an empty write is sent to the client
    KEEPALIVE_INTERVAL: float = 30.0
    # Chunks buffered between the upstream reader and the client writer
    RELAY_QUEUE_CHUNKS: int = 64

    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()

"""
Configuration Management

All runtime knobs for the stream client, the extraction chain and the
ClickUp dispatcher live here. Values are loaded from environment variables
(and an optional .env file) by pydantic-settings, so "5" becomes 5 and a
missing optional credential becomes None.

Every component also takes its parameters through its constructor; the
module-level `settings` instance is only consulted for defaults.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """
    Application Settings

    Variable names match field names (case-insensitive), e.g.
    ZOOM_CLIENT_ID -> zoom_client_id.
    """

    log_level: str = "INFO"
    log_categories: Optional[str] = None  # Comma-separated categories (stream,auth,dispatch,extraction,media,clickup,events,system). If None, show all logs.
    port: int = 8000
    host: str = "0.0.0.0"

    # Zoom Configuration
    zoom_account_id: Optional[str] = None
    zoom_client_id: Optional[str] = None
    zoom_client_secret: Optional[str] = None
    zoom_subscription_id: Optional[str] = None
    zoom_ws_url: str = "wss://ws.zoom.us/ws"
    zoom_token_url: str = "https://zoom.us/oauth/token"
    zoom_api_base: str = "https://api.zoom.us/v2"

    # Event stream (WebSocket) Configuration
    stream_enabled: bool = True
    stream_heartbeat_interval: float = 30.0  # seconds between liveness probes
    stream_max_reconnect_attempts: int = 10
    stream_reconnect_base_delay: float = 5.0  # first reconnect delay in seconds
    stream_max_reconnect_delay: float = 60.0  # reconnect delay ceiling in seconds
    stream_reconnect_jitter: float = 0.1  # +/- ratio applied to each delay

    # Extraction Configuration
    openai_api_key: Optional[str] = None
    openai_transcription_model: str = "whisper-1"
    interpretation_model: str = "gpt-4o-mini"
    transcription_language: Optional[str] = "es"
    openai_max_upload_mb: float = 25.0
    local_whisper_enabled: bool = False
    whisper_model: str = "base"  # tiny, base, small, medium, large
    use_gpu: bool = False
    default_project: str = "Prj"

    # ClickUp dispatch Configuration
    clickup_api_key: Optional[str] = None
    clickup_api_base: str = "https://api.clickup.com/api/v2"
    dispatch_max_requests: int = 3  # requests per window
    dispatch_time_window: float = 1.0  # window in seconds
    dispatch_retry_delay: float = 1.0  # multiplied by the attempt number
    dispatch_max_retries: int = 5
    dispatch_poll_interval: float = 0.1
    dispatch_item_delay: float = 1.0  # between facts of one character
    dispatch_group_delay: float = 2.0  # between characters

    # Media Configuration
    media_temp_dir: str = "tmp"
    http_timeout_seconds: float = 30.0

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()

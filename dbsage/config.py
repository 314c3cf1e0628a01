"""
dbsage Application Configuration
================================

PURPOSE:
    Pydantic-Settings based configuration for the dbsage workers.
    All settings can be overridden via environment variables (DBSAGE_ prefix).

KEY MATERIAL:
    DBSAGE_ENCRYPTION_KEY holds the active AES-256 key as 64 hex characters and
    DBSAGE_ENCRYPTION_KEY_ID names it. Keys retired by a rotation stay in
    DBSAGE_RETIRED_ENCRYPTION_KEYS (JSON object of key id -> hex key) until every
    stored password has been re-encrypted under the active key.
    Generate a key with: python -c "import secrets; print(secrets.token_hex(32))"
"""

import logging
from typing import Dict, Literal, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime settings for the sync and suggestion pipelines."""

    app_name: str = "dbsage"
    debug: bool = False

    # Telemetry store (SQLite by default, PostgreSQL supported)
    database_url: str = "sqlite:///data/dbsage.db"

    # Credential vault
    encryption_key: Optional[str] = None
    encryption_key_id: str = "default"
    retired_encryption_keys: Dict[str, str] = {}

    # Outbound path to customer databases. socks5://[user:pass@]host:port
    socks_proxy_url: Optional[str] = None

    # Connector limits
    connector_connect_timeout_s: int = 5
    connector_statement_timeout_ms: int = 30_000
    connector_call_timeout_s: int = 300  # per fetch, including pool wait

    # Suggestion pipeline
    slow_query_threshold_ms: float = 1000.0
    suggestion_context_limit: int = 10
    suggestion_timeout_s: int = 120

    # LLM Settings
    llm_provider: Literal["openai", "anthropic"] = "openai"
    llm_model: Optional[str] = None  # provider default when unset
    llm_temperature: float = 0.2
    llm_max_tokens: int = 2048
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None

    # Scheduling
    default_polling_interval_minutes: int = 1440

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "DBSAGE_"


settings = Settings()

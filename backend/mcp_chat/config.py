from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # LLM Configuration
    # Gemini は OpenAI 互換エンドポイントを公開しているため openai クライアントで扱う
    gemini_api_key: str = Field(default="", validation_alias="GEMINI_API_KEY")
    llm_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    llm_model: str = "gemini-2.0-flash-exp"
    llm_temperature: float = 0.7
    llm_max_output_tokens: int = 2048

    # MCP Negotiation Configuration
    probe_tier1_timeout_seconds: float = 5.0
    probe_tier2_timeout_seconds: float = 10.0
    probe_user_agent: str = "MCP-Client/1.0"
    mcp_protocol_version: str = "2024-11-05"
    mcp_client_name: str = "mcp-chat-console"
    mcp_client_version: str = "0.1.0"

    # Chat Driver Configuration
    # ドライバーが接続するストリーミングエンドポイント(ブラウザ以外のクライアント用)
    chat_stream_url: str = "http://localhost:8000/api/chat/stream"
    chat_request_timeout_seconds: float = 60.0

    # Storage Configuration
    data_dir: str = "data"
    servers_storage_key: str = "mcp-servers"
    chat_history_storage_key: str = "gemini-chat-history"

    # CORS Configuration
    cors_origins: str = "http://localhost:3000"

    # Application Configuration
    log_level: str = "INFO"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def llm_configured(self) -> bool:
        """API キーが設定済みかどうか。"""
        return bool(self.gemini_api_key.strip())


settings = Settings()

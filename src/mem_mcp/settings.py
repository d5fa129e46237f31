from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Missing key is reported at startup; tool calls fail until it is set
    mem_api_key: str | None = None
    mem_api_base_url: str = "https://api.mem.ai"
    mem_request_timeout: float = 30.0

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    mcp_cors_origins: list[str] = ["*"]
    mcp_session_idle_timeout: float = 1800.0
    mcp_reaper_interval: float = 60.0
    mcp_json_response: bool = False


settings = Settings()

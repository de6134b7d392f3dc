from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    host: str = "0.0.0.0"
    port: int = 8003
    data_dir: str = "/data"
    files_dir: str = "/data/objects"
    log_level: str = "INFO"

    # base URL used for presigned object links and as the default download base
    public_base_url: str = "http://localhost:8003"
    signing_secret: str = "change-me"

    download_link_ttl_seconds: int = 900
    token_ttl_days: int = 28

    archive_prefix: str = "archives"
    archive_pipe_chunks: int = 16
    chunk_size: int = 1024 * 1024  # 1MB

    mail_relay_url: str | None = None
    ses_source_email: str | None = None
    reply_to_fallback: str = "no-reply@example.com"

    queue_visibility_timeout: float = 300.0
    queue_max_receive_count: int = 5

    @property
    def db_url(self) -> str:
        return f"sqlite:///{self.data_dir.rstrip('/')}/archive_service.db"


settings = Settings()

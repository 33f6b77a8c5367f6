from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    data_dir: str = "/data"
    files_dir: str = "/data/files"
    scratch_dir: str = "/data/scratch"

    file_ttl_seconds: int = 3600
    sweep_interval_seconds: int = 600

    max_files_per_request: int = 10
    max_request_bytes: int = 10 * MIB
    rate_limit_bytes: int = 50 * MIB
    rate_limit_window_seconds: int = 3600

    descriptor_tool: str = "jadmaker"
    descriptor_tool_timeout_seconds: float = 30.0

    @property
    def db_url(self) -> str:
        # index of live uploads; the bytes live in files_dir
        return f"sqlite:///{self.data_dir.rstrip('/')}/filehost.db"


settings = Settings()

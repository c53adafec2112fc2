from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Answer-generation backend
    api_base_url: str = "http://localhost:8080/api"
    stream_path: str = "/assistant/query/stream"
    default_mode: str = "FLEXIBLE"  # FLEXIBLE | ARTICLE_ONLY

    # Request lifecycle
    request_timeout_s: float = 60.0  # whole-request deadline, not per read
    connect_timeout_s: float = 10.0

    # View
    render_interval_s: float = 1 / 60  # one display refresh
    citation_quote_collapse_threshold: int = 140

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_to_file: bool = True

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def stream_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/{self.stream_path.lstrip('/')}"


settings = Settings()

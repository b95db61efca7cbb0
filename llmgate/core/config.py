from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_env: str = "development"

    # Models whose name starts with this prefix are served by a local vLLM,
    # whatever provider they were routed through (LiteLLM naming convention)
    hosted_model_prefix: str = "hosted_vllm/"

    # Batch dispatch
    batch_concurrency: int = 20  # Max in-flight chat completions per round
    transcription_concurrency: int = 3  # Audio uploads are much larger
    batch_divider: str = "\n\n---\n\n"

    # Per-request retry (connection errors, 5xx, 429)
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 8.0

    # Timeouts (seconds). Generation is slow, read timeouts are minutes-scale.
    connect_timeout: float = 5.0
    read_timeout: float = 120.0
    transcription_read_timeout: float = 300.0

    # Base URI overrides for self-hosted backends
    lite_llm_base_uri: str = "http://localhost:4000/v1/"
    vllm_base_uri: str = "http://localhost:8000/v1/"
    vllm2_base_uri: str = "http://localhost:8001/v1/"
    slm_base_uri: str = "http://localhost:8002/v1/"
    home_server_base_uri: str = "http://api3.ieltsscience.fun/v1/"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs
    gateway_log_level: str = ""  # overrides log_level for llmgate.* only, e.g. DEBUG
    httpx_log_level: str = "WARNING"

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.batch_concurrency < 1:
        errors.append("BATCH_CONCURRENCY must be at least 1")

    if settings.transcription_concurrency < 1:
        errors.append("TRANSCRIPTION_CONCURRENCY must be at least 1")

    if settings.max_attempts < 1:
        errors.append("MAX_ATTEMPTS must be at least 1")

    if settings.app_env == "production":
        if settings.home_server_base_uri.startswith("http://localhost"):
            errors.append("HOME_SERVER_BASE_URI must not point to localhost in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))

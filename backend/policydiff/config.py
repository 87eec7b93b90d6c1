from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Policy Diff API"
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"

    # Static credential table, comma separated `user:password` pairs.
    auth_users: str = "admin:123456"
    auth_enabled: bool = False
    session_secret: str = ""
    session_algorithm: str = "HS256"
    session_ttl_seconds: int = 12 * 60 * 60

    coze_api_base_url: str = "https://api.coze.cn"
    coze_api_token: str = ""
    coze_token_header: str = "X-Coze-Token"
    coze_policy_workflow_id: str = "7588132283023786047"
    coze_standard_workflow_id: str = "7589638340099620891"
    coze_file_compare_workflow_id: str = "7588132283023786047"
    coze_request_timeout_seconds: float = 300.0
    workflow_max_attempts: int = 5
    workflow_retry_delay_ms: int = 2000
    default_compare_prompt: str = "请分析这两个文件的内容差异"

    database_url: str = "sqlite:///./policydiff.db"

    storage_backend: str = "local"  # local|s3
    storage_root: str = "data/uploads"
    storage_public_base_url: str = "http://localhost:8000/files"
    aws_region: str = "us-east-1"
    s3_bucket: str = ""
    s3_prefix: str = ""
    # S3-compatible endpoints (e.g. Qiniu Kodo) need an explicit endpoint and public domain.
    s3_endpoint_url: str = ""
    s3_public_domain: str = ""
    remote_fetch_timeout_seconds: float = 60.0

    max_upload_files: int = 20
    max_upload_file_bytes: int = 50 * 1024 * 1024
    max_upload_batch_bytes: int = 200 * 1024 * 1024
    upload_concurrency: int = 3

    markdown_pdf_api_url: str = "https://api.gugudata.com/imagerecognition/markdown2pdf"
    markdown_pdf_appkey: str = ""
    markdown_pdf_timeout_seconds: float = 60.0

    cities_file: str = "data/city.txt"

    records_page_size_default: int = 100
    records_export_limit: int = 1000

    task_batch_size: int = 5
    task_max_retries: int = 3
    task_retry_delay_seconds: int = 30

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def auth_users_map(self) -> dict[str, str]:
        users: dict[str, str] = {}
        for pair in self.auth_users.split(","):
            username, sep, password = pair.strip().partition(":")
            if not sep or not username.strip():
                continue
            users[username.strip()] = password
        return users

    @property
    def coze_workflow_run_url(self) -> str:
        return f"{self.coze_api_base_url.rstrip('/')}/v1/workflow/run"


settings = Settings()

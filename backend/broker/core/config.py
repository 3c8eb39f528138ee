from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Connection & Credit Broker"
    app_env: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "broker"
    postgres_user: str = "broker"
    postgres_password: str = "broker"

    redis_host: str = "localhost"
    redis_port: int = 6379

    database_url: str | None = None
    redis_url: str | None = None
    frontend_origin: str = "http://localhost:3000"
    additional_frontend_origins: str = ""

    jwt_secret_key: str = "change_this_in_production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60
    token_encryption_key: str | None = None
    platform_admin_user_ids: str = ""

    public_api_url: str = "http://localhost:8000"
    dashboard_redirect_url: str = "http://localhost:3000/dashboard/connections"

    oauth_state_ttl_seconds: int = 900
    oauth_initiate_max_attempts: int = 5
    oauth_initiate_window_seconds: int = 900
    oauth_callback_max_attempts_per_ip: int = 30
    oauth_callback_window_seconds: int = 900
    rate_limit_backend: str = "database"
    connection_expiry_warning_days: int = 90

    oauth_state_retention_seconds: int = 86400
    rate_limit_record_retention_seconds: int = 3600

    twitter_client_id: str | None = None
    twitter_client_secret: str | None = None
    twitter_oauth_scope: str = "tweet.read tweet.write users.read offline.access"

    reddit_client_id: str | None = None
    reddit_client_secret: str | None = None
    reddit_oauth_scope: str = "identity submit read"
    reddit_user_agent: str = "connection-credit-broker/0.1"

    adapter_timeout_seconds: float = 20.0

    signup_bonus_credits: int = 0
    low_balance_threshold: int = 5
    credit_refund_attempts: int = 3
    credit_refund_task_max_retries: int = 8

    @property
    def platform_admin_id_list(self) -> list[str]:
        if not self.platform_admin_user_ids.strip():
            return []
        return [value.strip().lower() for value in self.platform_admin_user_ids.split(",") if value.strip()]

    @property
    def cors_allowed_origins(self) -> list[str]:
        origins = [self.frontend_origin.strip()]
        if self.additional_frontend_origins.strip():
            origins.extend(
                [value.strip() for value in self.additional_frontend_origins.split(",") if value.strip()]
            )
        unique: list[str] = []
        for origin in origins:
            if origin and origin not in unique:
                unique.append(origin)
        return unique

    @property
    def oauth_callback_url(self) -> str:
        return f"{self.public_api_url.rstrip('/')}/auth/callback"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cache_redis_url(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/0"


settings = Settings()

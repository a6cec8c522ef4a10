import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "y", "on")


@dataclass
class Settings:
    env: str
    api_base_url: str
    account_service_url: str
    account_service_key: str | None
    request_timeout: float
    retry_base_delay: float
    retry_max_delay: float
    max_attempts: int
    polling_interval: float
    enable_polling: bool
    enable_focus_refresh: bool
    storage_key: str
    offline_queue_key: str
    client_id: str
    redis_host: str | None
    redis_port: int
    redis_password: str | None
    redis_tls: bool
    redis_db: int
    channel_prefix: str
    use_local_redis: bool


def get_settings() -> Settings:
    env = os.getenv("APP_ENV", "development").strip().lower()
    use_local = _str_to_bool(os.getenv("USE_LOCAL_REDIS"))

    # Profil test: une seule tentative, timeout court
    if env == "test":
        default_timeout = "5"
        default_attempts = "1"
    elif env == "production":
        default_timeout = "15"
        default_attempts = "3"
    else:
        default_timeout = "30"
        default_attempts = "3"

    if use_local:
        host = "127.0.0.1"
        port = 6379
        password = None
        tls = False
    else:
        host = os.getenv("POS_REDIS_HOST")
        port = int(os.getenv("POS_REDIS_PORT") or "6379")
        password = os.getenv("POS_REDIS_PASSWORD")
        tls = _str_to_bool(os.getenv("POS_REDIS_TLS"))

    return Settings(
        env=env,
        api_base_url=os.getenv("POS_API_URL", "http://localhost:5000").rstrip("/"),
        account_service_url=os.getenv("ACCOUNT_SERVICE_URL", "http://localhost:9999/auth/v1").rstrip("/"),
        account_service_key=os.getenv("ACCOUNT_SERVICE_KEY"),
        request_timeout=float(os.getenv("POS_REQUEST_TIMEOUT", default_timeout)),
        retry_base_delay=float(os.getenv("POS_RETRY_BASE_DELAY", "1.0")),
        retry_max_delay=float(os.getenv("POS_RETRY_MAX_DELAY", "10.0")),
        max_attempts=int(os.getenv("POS_MAX_ATTEMPTS", default_attempts)),
        polling_interval=float(os.getenv("POS_POLLING_INTERVAL", "30")),
        enable_polling=_str_to_bool(os.getenv("POS_ENABLE_POLLING"), default=True),
        enable_focus_refresh=_str_to_bool(os.getenv("POS_ENABLE_FOCUS_REFRESH"), default=True),
        storage_key=os.getenv("POS_STORAGE_KEY", "pos-terminals-data"),
        offline_queue_key=os.getenv("POS_OFFLINE_QUEUE_KEY", "api_offline_queue"),
        client_id=os.getenv("POS_CLIENT_ID", "default"),
        redis_host=host,
        redis_port=port,
        redis_password=password or None,
        redis_tls=tls,
        redis_db=int(os.getenv("POS_REDIS_DB") or "0"),
        channel_prefix=os.getenv("POS_CHANNEL_PREFIX", "pos:"),
        use_local_redis=use_local,
    )

import math

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./stocksync.db"
    redis_url: str = ""  # 비어 있으면 프로세스 내 메모리 캐시/SQL 락 사용
    log_level: str = "INFO"

    # 플랫폼 (A = 원화 소스, B = 외화 타겟)
    platform_a_name: str = "platform_a"
    platform_b_name: str = "platform_b"
    platform_a_currency: str = "KRW"
    platform_b_currency: str = "USD"
    platform_adapter_factory: str = ""  # "module.path:callable" -> (platform_a, platform_b)
    platform_call_timeout: float = 10.0  # 외부 호출 1건당 제한 시간 (초)
    platform_retry_attempts: int = 3  # tenacity 재시도 횟수
    platform_retry_backoff: float = 1.0  # 지수 백오프 배수 (초)
    platform_retry_max_wait: float = 30.0

    # 환율
    exchange_rate_default: float = 0.00075
    exchange_rate_cache_ttl: int = 3600
    exchange_rate_api_validity_hours: int = 24
    exchange_rate_manual_validity_hours: int = 24
    exchange_rate_change_threshold: float = 0.001  # 0.1% 미만 변동은 저장하지 않음
    exchange_rate_max_plausible: float = 10000.0
    exchange_rate_provider_timeout: float = 5.0
    exchange_rate_api_url: str = "https://api.exchangerate-api.com/v4/latest"
    frankfurter_api_url: str = "https://api.frankfurter.app"
    open_exchange_rates_url: str = "https://openexchangerates.org/api"
    open_exchange_rates_app_id: str = ""
    price_rate_direction: str = "multiply"  # target = source × rate

    # 가격
    pricing_default_margin_rate: float = 1.15
    pricing_default_rounding: str = "nearest"
    price_warning_floor: float = 1.0
    price_swing_warning_ratio: float = 0.5
    price_conflict_tolerance: float = 0.05
    price_history_window: int = 5
    price_history_tolerance: float = 0.10

    # 재고
    inventory_critical_threshold: int = 10
    inventory_cache_ttl: int = 600
    report_cache_ttl: int = 60

    # 락
    lock_ttl_seconds: float = 300.0

    # 동기화 잡
    sync_concurrency: int = 5  # 잡 하나 안에서 동시에 처리할 상품 수
    sync_max_concurrent_jobs: int = 3
    sync_max_batch_size: int = 1000
    sync_job_timeout_seconds: float = 3600.0
    sync_poll_interval: float = 1.0
    sync_retry_max_attempts: int = 3
    sync_retry_base_delay: float = 1.0
    sync_retry_multiplier: float = 2.0
    sync_retry_max_delay: float = 300.0
    sync_fail_on_default_rate: bool = True
    sync_max_job_errors: int = 1000

    # 스케줄러
    scheduler_inventory_interval: float = 300.0
    scheduler_price_interval: float = 3600.0
    scheduler_exchange_rate_interval: float = 3600.0
    scheduler_state_path: str = "var/scheduler_state.json"

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL은 'postgresql' 또는 'sqlite'로 시작해야 합니다.")
        return v

    @field_validator("exchange_rate_api_url", "frankfurter_api_url", "open_exchange_rates_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL은 'http://' 또는 'https://'로 시작해야 합니다.")
        return v

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        if v and not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("Redis URL은 'redis://' 또는 'rediss://'로 시작해야 합니다.")
        return v

    @field_validator(
        "platform_call_timeout",
        "platform_retry_backoff",
        "platform_retry_max_wait",
        "exchange_rate_provider_timeout",
        "sync_retry_base_delay",
        "sync_retry_max_delay",
        "sync_poll_interval",
        "lock_ttl_seconds",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("대기 시간은 0 이상이어야 합니다.")
        return v

    @field_validator("sync_max_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if not 1 <= v <= 1000:
            raise ValueError("sync_max_batch_size는 1에서 1000 사이여야 합니다.")
        return v

    @field_validator("sync_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if not 1 <= v <= 50:
            raise ValueError("sync_concurrency는 1에서 50 사이여야 합니다.")
        return v

    @field_validator("platform_retry_attempts", "sync_retry_max_attempts", "sync_max_concurrent_jobs")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("값은 1 이상이어야 합니다.")
        return v

    @field_validator("pricing_default_rounding")
    @classmethod
    def validate_rounding(cls, v: str) -> str:
        if v not in ("up", "down", "nearest"):
            raise ValueError("반올림 전략은 'up', 'down', 'nearest' 중 하나여야 합니다.")
        return v

    @field_validator("price_rate_direction")
    @classmethod
    def validate_rate_direction(cls, v: str) -> str:
        if v != "multiply":
            raise ValueError("환율 적용 방향은 'multiply'(원가 × 환율)만 지원합니다.")
        return v

    @field_validator("platform_a_currency", "platform_b_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        code = v.strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError("통화 코드는 3자리 알파벳이어야 합니다.")
        return code

    @model_validator(mode="after")
    def validate_default_rate(self) -> "Settings":
        rate = self.exchange_rate_default
        if not math.isfinite(rate) or rate <= 0 or rate > self.exchange_rate_max_plausible:
            raise ValueError("기본 환율이 허용 범위를 벗어났습니다.")
        return self

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()

"""Pytest configuration and fixtures."""

from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stocksync.context import SyncContext, build_context
from stocksync.models import ProductMapping, SyncBase
from stocksync.platforms.base import PlatformConnection
from stocksync.platforms.memory import InMemoryPlatform
from stocksync.providers.exchange_rates import CurrencyPair, ExchangeRateProvider
from stocksync.services.cache import MemoryCache
from stocksync.settings import Settings


class FakeRateProvider(ExchangeRateProvider):
    """호출 횟수를 기록하는 테스트용 환율 제공자"""

    def __init__(
        self,
        name: str,
        priority: int,
        rate: Optional[float] = None,
        error: Optional[Exception] = None,
        requires_credential: bool = False,
        configured: bool = True,
    ):
        self.name = name
        self.priority = priority
        self.rate = rate
        self.error = error
        self.requires_credential = requires_credential
        self.configured = configured
        self.calls = 0

    def is_configured(self) -> bool:
        return self.configured

    async def fetch(self, pair: CurrencyPair) -> float:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.rate


@pytest.fixture(scope="function")
def session_factory():
    """
    테스트용 세션 팩토리.
    각 테스트마다 새로운 메모리 DB 생성 (StaticPool 로 단일 커넥션 공유).
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    SyncBase.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        SyncBase.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def config(tmp_path) -> Settings:
    """재시도 대기 없이 빠르게 도는 테스트 설정"""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        redis_url="",
        platform_a_name="platform_a",
        platform_b_name="platform_b",
        platform_call_timeout=1.0,
        platform_retry_attempts=3,
        platform_retry_backoff=0,
        platform_retry_max_wait=0,
        exchange_rate_provider_timeout=1.0,
        sync_poll_interval=0.01,
        scheduler_state_path=str(tmp_path / "scheduler_state.json"),
    )


@pytest.fixture
def platform_a() -> InMemoryPlatform:
    return InMemoryPlatform()


@pytest.fixture
def platform_b() -> InMemoryPlatform:
    return InMemoryPlatform()


@pytest.fixture
def rate_provider():
    """FakeRateProvider 클래스 (테스트 모듈에서 직접 생성용)"""
    return FakeRateProvider


@pytest.fixture
def providers() -> list:
    return []


@pytest.fixture
def ctx(config, session_factory, platform_a, platform_b, providers) -> SyncContext:
    return build_context(
        config,
        session_factory,
        PlatformConnection.from_adapter("platform_a", platform_a),
        PlatformConnection.from_adapter("platform_b", platform_b),
        providers=providers,
        cache=MemoryCache(),
    )


@pytest.fixture
def make_mapping(ctx):
    """ProductMapping 생성 헬퍼"""
    def _make(sku: str = "X-1", **kwargs) -> ProductMapping:
        values = {
            "sku": sku,
            "platform_a_product_id": f"A-{sku}",
            "platform_b_product_id": f"B-{sku}",
        }
        values.update(kwargs)
        return ctx.mappings.add(ProductMapping(**values))
    return _make


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (메모리 DB)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (전체 구성 요소 조립)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")

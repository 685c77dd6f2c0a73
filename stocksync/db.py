from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from stocksync.models import SyncBase
from stocksync.settings import settings


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


engine = build_engine(settings.database_url)

SessionLocal = build_session_factory(engine)


def create_tables(bind: Engine | None = None) -> None:
    """테이블 자동 생성 (개발/테스트용). 운영 환경은 alembic 마이그레이션을 사용."""
    SyncBase.metadata.create_all(bind=bind or engine)

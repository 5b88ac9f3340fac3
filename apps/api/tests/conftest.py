from __future__ import annotations

import os
import time
from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")

from crm_admin.core.config import get_settings
from crm_admin.core.database import Base, get_db
from crm_admin.main import app


TokenFactory = Callable[..., str]
HeadersFactory = Callable[..., dict[str, str]]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_token() -> TokenFactory:
    def issue(
        role: str | None = "admin",
        *,
        user_id: int | None = 1,
        sub: str | None = None,
        expires_in: int = 3600,
        secret: str | None = None,
        algorithm: str = "HS256",
        **extra: Any,
    ) -> str:
        claims: dict[str, Any] = {"exp": int(time.time()) + expires_in, **extra}
        if role is not None:
            claims["role"] = role
        if user_id is not None:
            claims["user_id"] = user_id
        if sub is not None:
            claims["sub"] = sub
        return jwt.encode(claims, secret or get_settings().jwt_secret, algorithm=algorithm)

    return issue


@pytest.fixture()
def auth_headers(make_token: TokenFactory) -> HeadersFactory:
    def build(role: str = "admin", **kwargs: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(role, **kwargs)}"}

    return build

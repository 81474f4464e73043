"""测试夹具：为 pytest 提供数据库、本地对象存储与客户端的共享配置。"""

import os
import shutil
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"
TEST_STORAGE_ROOT = tempfile.mkdtemp(prefix="drive_objects_")
TEST_LOG_DIR = tempfile.mkdtemp(prefix="drive_logs_")
TEST_IDENTITY_SECRET = "test-identity-secret"

# 设置需在导入应用之前完成，Settings 会被缓存
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["STORAGE_BACKEND"] = "LOCAL"
os.environ["LOCAL_STORAGE_ROOT"] = TEST_STORAGE_ROOT
os.environ["LOG_DIR"] = TEST_LOG_DIR
os.environ["UPLOAD_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["IDENTITY_JWT_SECRET"] = TEST_IDENTITY_SECRET
os.environ["IDENTITY_JWT_ALGORITHM"] = "HS256"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.main import app  # noqa: E402
from app.packages.drive.core.dependencies import get_db  # noqa: E402
from app.packages.drive.db import session as db_session  # noqa: E402
from app.packages.drive.db.init_db import init_db  # noqa: E402
from app.packages.drive.models.base import Base  # noqa: E402
from app.packages.drive.models.user import User  # noqa: E402

GiB = 1024 ** 3


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 30})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    Base.metadata.create_all(bind=engine)
    init_db()
    yield

    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)
    shutil.rmtree(TEST_STORAGE_ROOT, ignore_errors=True)
    shutil.rmtree(TEST_LOG_DIR, ignore_errors=True)


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db_session_fixture: Session) -> Callable[..., User]:
    """创建独立的测试用户，避免用例之间共享配额与目录树。"""

    def _make(storage_limit: int = 15 * GiB, storage_used: int = 0) -> User:
        user = User(
            external_id=f"ext-{uuid.uuid4().hex}",
            email="tester@example.com",
            name="tester",
            storage_used=storage_used,
            storage_limit=storage_limit,
        )
        db_session_fixture.add(user)
        db_session_fixture.commit()
        db_session_fixture.refresh(user)
        return user

    return _make


def issue_identity_token(subject: str, **claims) -> str:
    payload = {"sub": subject, "exp": datetime.now(timezone.utc) + timedelta(minutes=10)}
    payload.update(claims)
    return jwt.encode(payload, TEST_IDENTITY_SECRET, algorithm="HS256")


@pytest.fixture()
def auth_headers() -> Callable[[str], dict]:
    def _headers(subject: str) -> dict:
        return {"Authorization": f"Bearer {issue_identity_token(subject)}"}

    return _headers


@pytest.fixture()
def client(db_session_fixture):
    """构建 FastAPI TestClient，并注入测试专用的数据库依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()

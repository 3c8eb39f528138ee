import os
import tempfile
from urllib.parse import urlencode
from uuid import UUID, uuid4

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")
_SQLITE_PATH = os.path.join(tempfile.gettempdir(), f"broker-tests-{os.getpid()}.db")

os.environ["DATABASE_URL"] = TEST_DATABASE_URL or f"sqlite:///{_SQLITE_PATH}"
os.environ["RATE_LIMIT_BACKEND"] = "database"
os.environ["SIGNUP_BONUS_CREDITS"] = "0"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-with-enough-length-for-hs256"
os.environ["TWITTER_CLIENT_ID"] = "test-twitter-client"
os.environ["TWITTER_CLIENT_SECRET"] = "test-twitter-secret"
os.environ["REDDIT_CLIENT_ID"] = "test-reddit-client"
os.environ["REDDIT_CLIENT_SECRET"] = "test-reddit-secret"
os.environ["PUBLIC_API_URL"] = "http://api.test"
os.environ["DASHBOARD_REDIRECT_URL"] = "http://app.test/dashboard/connections"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from broker.core.security import create_access_token  # noqa: E402
from broker.domain import models  # noqa: E402, F401
from broker.infrastructure.db.base import Base  # noqa: E402
from broker.infrastructure.db.session import SessionLocal, engine, get_db  # noqa: E402
from broker.integrations.platform_adapters import (  # noqa: E402
    AdapterPermanentError,
    BasePlatformAdapter,
    ConnectedIdentity,
)
from broker.interfaces.api.deps import get_adapter_resolver  # noqa: E402
from main import app  # noqa: E402


class FakePlatformAdapter(BasePlatformAdapter):
    def __init__(self, platform: str) -> None:
        super().__init__()
        self.platform = platform
        self.exchange_error: Exception | None = None
        self.publish_error: BaseException | None = None
        self.revoke_result = True
        self.exchanged_codes: list[str] = []
        self.published: list[str] = []
        self.revoked_tokens: list[str] = []

    def build_authorization_url(self, *, state: str, redirect_uri: str, code_challenge: str) -> str:
        params = {"state": state, "redirect_uri": redirect_uri, "code_challenge": code_challenge}
        return f"https://{self.platform}.example.test/authorize?{urlencode(params)}"

    async def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: str) -> ConnectedIdentity:
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return ConnectedIdentity(
            external_account_id=f"{self.platform}-account-1",
            username=f"{self.platform}_user",
            access_token=f"{self.platform}-access-{code}",
            refresh_token=f"{self.platform}-refresh-{code}",
            scopes=["read", "write"],
            verified=True,
            follower_count=42,
        )

    async def revoke(self, *, access_token: str) -> bool:
        self.revoked_tokens.append(access_token)
        return self.revoke_result

    async def publish_text(self, *, access_token: str, content: str, options: dict | None = None) -> dict:
        if self.publish_error is not None:
            raise self.publish_error
        if not access_token:
            raise AdapterPermanentError("missing token")
        self.published.append(content)
        return {"external_post_id": f"{self.platform}-post-{len(self.published)}", "platform": self.platform}


@pytest.fixture(scope="session", autouse=True)
def db_engine():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    if not TEST_DATABASE_URL and os.path.exists(_SQLITE_PATH):
        os.remove(_SQLITE_PATH)


@pytest.fixture(autouse=True)
def clean_tables(db_engine):
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_adapters():
    adapters = {
        "twitter": FakePlatformAdapter("twitter"),
        "reddit": FakePlatformAdapter("reddit"),
    }

    def _resolve(platform: str) -> BasePlatformAdapter:
        return adapters[platform]

    app.dependency_overrides[get_adapter_resolver] = lambda: _resolve
    yield adapters
    app.dependency_overrides.pop(get_adapter_resolver, None)


@pytest.fixture
def client(db_engine):
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    def override_get_db():
        session = testing_session_local()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


def auth_headers(user_id: UUID, *, is_admin: bool = False) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, is_admin=is_admin)}"}

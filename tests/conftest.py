import os
import shutil
import tempfile
from io import BytesIO
from pathlib import Path

_TMP = Path(tempfile.mkdtemp(prefix="splitscan-tests-"))

# must be set before splitscan.core.config is imported
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["UPLOAD_DIR"] = str(_TMP / "uploads")
os.environ["OCR_ARTIFACT_DIR"] = str(_TMP / "ocr")
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from PIL import Image  # noqa: E402

from splitscan.api.deps import get_notifier, get_storage  # noqa: E402
from splitscan.core.config import settings  # noqa: E402
from splitscan.core.db import Base, SessionLocal, engine  # noqa: E402
from splitscan.main import app  # noqa: E402
from splitscan.models import User  # noqa: E402
from splitscan.core.security import hash_password  # noqa: E402
from splitscan.services.file_storage import FileStorage  # noqa: E402
from splitscan.services.notifier import StatusNotifier  # noqa: E402
from splitscan.services.ocr_provider import OcrFailureReason, OcrResponse  # noqa: E402

Base.metadata.create_all(bind=engine)


class FakeRedis:
    """Records publish() calls instead of talking to a server."""

    def __init__(self, fail_with: Exception | None = None):
        self.published: list[tuple[str, str]] = []
        self.fail_with = fail_with

    def publish(self, channel, message):
        if self.fail_with is not None:
            raise self.fail_with
        self.published.append((channel, message))
        return 1


class FakeOcr:
    def __init__(self, *responses: OcrResponse):
        self.responses = list(responses)
        self.calls: list[tuple[bytes, str]] = []

    def extract_text(self, image, mime_type="image/jpeg"):
        self.calls.append((image.read(), mime_type))
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    @classmethod
    def returning(cls, text: str, confidence: float | None = 0.93) -> "FakeOcr":
        return cls(OcrResponse(success=True, raw_text=text, confidence=confidence, attempts=1))

    @classmethod
    def failing(cls, reason: OcrFailureReason, message: str = "ocr failed") -> "FakeOcr":
        return cls(OcrResponse.failure(reason, message, attempts=1))


def make_image_bytes(fmt: str = "PNG", size=(120, 80), color=(255, 255, 255)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture(autouse=True)
def _clean_state():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    shutil.rmtree(settings.UPLOAD_DIR, ignore_errors=True)
    shutil.rmtree(settings.OCR_ARTIFACT_DIR, ignore_errors=True)
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage() -> FileStorage:
    return FileStorage.from_settings(settings)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def notifier(fake_redis) -> StatusNotifier:
    return StatusNotifier(fake_redis)


@pytest.fixture
def client(notifier, storage):
    with TestClient(app) as c:
        app.dependency_overrides[get_notifier] = lambda: notifier
        app.dependency_overrides[get_storage] = lambda: storage
        yield c


@pytest.fixture
def user(db) -> User:
    u = User(username="alice", password_hash=hash_password("secret123"))
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture
def other_user(db) -> User:
    u = User(username="mallory", password_hash=hash_password("secret123"))
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


def _login(client: TestClient, username: str) -> dict:
    r = client.post("/auth/login", data={"username": username, "password": "secret123"})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def auth_headers(client, user) -> dict:
    return _login(client, user.username)


@pytest.fixture
def other_auth_headers(client, other_user) -> dict:
    return _login(client, other_user.username)

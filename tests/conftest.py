import mongomock
import pytest
from starlette.testclient import TestClient

from database import get_db
from mailer import EmailSystem
from main import create_app
from storage import StorageError


class FakeStorage:
    """In-memory stand-in for CloudinaryStorage."""

    configured = True

    def __init__(self):
        self.uploaded = []
        self.deleted = []
        self.fail_upload = False
        self.fail_delete = False

    def upload(self, data, filename):
        if self.fail_upload:
            raise StorageError("upload rejected")
        public_id = f"ai-music-player/song_{len(self.uploaded) + 1}"
        self.uploaded.append((public_id, filename, len(data)))
        return {
            "public_id": public_id,
            "secure_url": f"https://cdn.test/{public_id}.mp3",
            "duration": 183.4,
            "bytes": len(data),
            "format": "mp3",
        }

    def thumbnail_url(self, public_id):
        return f"https://cdn.test/{public_id}.jpg"

    def delete(self, public_id):
        if self.fail_delete:
            raise StorageError("destroy failed")
        self.deleted.append(public_id)
        return {"result": "ok"}


@pytest.fixture
def mongo():
    return mongomock.MongoClient()["ai_music_player_test"]


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def mailer(mongo):
    return EmailSystem(user="", password="", environment="development", db_provider=lambda: mongo)


def _build(require_auth, mongo, storage, mailer):
    app = create_app(require_auth=require_auth, storage=storage, mailer=mailer)
    app.dependency_overrides[get_db] = lambda: mongo
    return app


@pytest.fixture
def gated_app(mongo, storage, mailer):
    return _build(True, mongo, storage, mailer)


@pytest.fixture
def gated_client(gated_app):
    return TestClient(gated_app)


@pytest.fixture
def public_client(mongo, storage, mailer):
    return TestClient(_build(False, mongo, storage, mailer))


@pytest.fixture
def login():
    """Run the simulated OTP flow and leave the client logged in."""

    def _login(client, email="listener@example.com"):
        sent = client.post("/auth/send-otp", json={"email": email})
        assert sent.status_code == 200, sent.json()
        verified = client.post("/auth/verify-otp", json={"email": email, "otp": sent.json()["otp"]})
        assert verified.status_code == 200, verified.json()
        return verified.json()

    return _login


@pytest.fixture
def upload():
    def _upload(client, title="Night Drive", artist="The Examples", content_type="audio/mpeg", data=b"ID3" + b"\x00" * 64):
        return client.post(
            "/upload",
            files={"audio": ("night-drive.mp3", data, content_type)},
            data={"title": title, "artist": artist},
        )

    return _upload

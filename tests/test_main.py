import asyncio
import os

import pytest
from starlette.testclient import TestClient

import config
from database import get_db
from main import create_app, lifespan, serve_public


def test_health(gated_client):
    r = gated_client.get("/health")
    body = r.json()

    assert r.status_code == 200
    assert body["status"] == "ok"
    assert body["service"] == "AI Music Player"
    assert body["version"] == config.VERSION
    assert body["cloudinary"] is True
    assert body["auth_required"] is True
    assert body["email"]["hasCredentials"] is False
    assert body["uptime"] >= 0
    assert set(body) >= {"timestamp", "mongodb", "environment"}


def test_health_reports_public_mode(public_client):
    assert public_client.get("/health").json()["auth_required"] is False


def test_root_serves_frontend(public_client):
    r = public_client.get("/")
    assert r.status_code == 200
    assert "text/html" in r.headers["content-type"]
    assert r.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert "AI Music Player" in r.text


def test_static_assets_are_served(public_client):
    r = public_client.get("/app.js")
    assert r.status_code == 200
    assert "javascript" in r.headers["content-type"]
    assert r.headers["cache-control"] == "public, max-age=0"


def test_unknown_paths_fall_back_to_index(public_client):
    r = public_client.get("/library/some/deep/link")
    assert r.status_code == 200
    assert "text/html" in r.headers["content-type"]


def test_paths_outside_public_dir_are_not_served():
    response = serve_public("../config.py")
    assert os.path.basename(response.path) == "index.html"


def test_error_envelope_for_unknown_song(public_client):
    r = public_client.get("/songs/0123456789abcdef01234567")
    assert r.status_code == 404
    assert r.json() == {"success": False, "message": "Song not found"}


def test_malformed_json_is_a_400(gated_client):
    r = gated_client.post(
        "/auth/send-otp", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert r.status_code == 400
    assert r.json()["success"] is False
    assert r.json()["message"] == "Invalid request"


def test_cors_allows_credentialed_origin_in_development(public_client):
    r = public_client.get("/health", headers={"Origin": "http://localhost:3000"})
    assert r.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert r.headers["access-control-allow-credentials"] == "true"


def test_nul_byte_paths_fall_back_to_index(public_client):
    assert os.path.basename(serve_public("song\x00.mp3").path) == "index.html"

    r = public_client.get("/%00")
    assert r.status_code == 200
    assert "text/html" in r.headers["content-type"]


@pytest.fixture
def production_client(monkeypatch, mongo, storage, mailer):
    monkeypatch.setattr(config, "IS_PRODUCTION", True)
    monkeypatch.setenv("CORS_ORIGINS", "https://music.example.org, ")
    app = create_app(require_auth=False, storage=storage, mailer=mailer)
    app.dependency_overrides[get_db] = lambda: mongo
    return TestClient(app)


@pytest.mark.parametrize(
    "origin",
    [
        "https://ai-music-player.onrender.com",
        "http://localhost:3000",
        "https://preview-42.onrender.com",
        "https://dashboard.render.com",
        "https://music.example.org",
    ],
)
def test_production_cors_allows_known_origins(production_client, origin):
    r = production_client.get("/health", headers={"Origin": origin})
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == origin


def test_production_cors_rejects_unknown_origin(production_client):
    r = production_client.get("/health", headers={"Origin": "https://evil.example"})
    assert r.status_code == 403
    assert r.json() == {"success": False, "message": "CORS policy violation"}
    assert "access-control-allow-origin" not in r.headers


def test_production_accepts_requests_without_foreign_origin(production_client):
    assert production_client.get("/health").status_code == 200
    assert production_client.get("/health", headers={"Origin": "http://testserver"}).status_code == 200


def test_startup_stops_without_database_uri(monkeypatch, storage, mailer):
    monkeypatch.setattr(config, "MONGODB_URI", None)
    app = create_app(storage=storage, mailer=mailer)

    async def start():
        async with lifespan(app):
            pass

    with pytest.raises(SystemExit) as info:
        asyncio.run(start())
    assert info.value.code == 1

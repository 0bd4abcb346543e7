from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from starlette.testclient import TestClient

import config
from auth import OTP_MAX_ATTEMPTS
from database import get_db, utcnow
from mailer import SendResult
from main import create_app


def test_send_otp_requires_email(gated_client):
    r = gated_client.post("/auth/send-otp", json={})
    assert r.status_code == 400
    assert r.json() == {"success": False, "message": "Email is required"}


def test_send_otp_rejects_malformed_email(gated_client):
    r = gated_client.post("/auth/send-otp", json={"email": "not-an-email"})
    assert r.status_code == 400
    assert r.json()["message"] == "Please enter a valid email address"


def test_send_otp_in_simulation_returns_code_and_stores_user(gated_client, mongo):
    r = gated_client.post("/auth/send-otp", json={"email": "  Listener@Example.COM "})
    body = r.json()

    assert r.status_code == 200
    assert body["success"] is True
    assert body["simulated"] is True
    assert body["mode"] == "simulation"
    assert body["expiresIn"] == "10 minutes"
    assert len(body["otp"]) == 6 and body["otp"].isdigit()

    user = mongo["user"].find_one({"email": "listener@example.com"})
    assert user["otp"] == body["otp"]
    assert user["otp_attempts"] == 0
    assert mongo["testotp"].find_one({"email": "listener@example.com"})["otp"] == body["otp"]


def test_send_otp_withholds_code_in_production(gated_client, monkeypatch):
    monkeypatch.setattr(config, "IS_PRODUCTION", True)
    r = gated_client.post("/auth/send-otp", json={"email": "listener@example.com"})
    assert r.status_code == 200
    assert "otp" not in r.json()


def test_send_otp_is_rate_limited(gated_client, mongo):
    assert gated_client.post("/auth/send-otp", json={"email": "a@example.com"}).status_code == 200

    r = gated_client.post("/auth/send-otp", json={"email": "a@example.com"})
    assert r.status_code == 429
    body = r.json()
    assert 0 < body["retryAfter"] <= 60
    assert body["message"] == f"Please wait {body['retryAfter']} seconds before requesting another OTP"
    assert r.headers["Retry-After"] == str(body["retryAfter"])

    mongo["user"].update_one(
        {"email": "a@example.com"}, {"$set": {"last_otp_request": utcnow() - timedelta(seconds=61)}}
    )
    assert gated_client.post("/auth/send-otp", json={"email": "a@example.com"}).status_code == 200


class StubMailer:
    def __init__(self, result):
        self.result = result

    async def send_otp_email(self, email, otp):
        return self.result

    def get_status(self):
        return {"mode": self.result.mode}


@pytest.mark.parametrize(
    "error_code, response_code, status",
    [
        ("EAUTH", 535, 503),
        ("ETIMEDOUT", None, 504),
        ("ECONNREFUSED", None, 503),
        ("EENVELOPE", 550, 400),
        ("SMTPServerDisconnected", None, 500),
    ],
)
def test_send_otp_maps_delivery_failures(mongo, storage, error_code, response_code, status):
    result = SendResult(
        success=False, mode="production", error="smtp broke", error_code=error_code, response_code=response_code
    )
    app = create_app(require_auth=True, storage=storage, mailer=StubMailer(result))
    app.dependency_overrides[get_db] = lambda: mongo

    r = TestClient(app).post("/auth/send-otp", json={"email": "a@example.com"})

    assert r.status_code == status
    body = r.json()
    assert body["success"] is False
    assert body["emailError"] is True
    assert body["errorCode"] == error_code
    assert "otp" not in body


def test_real_delivery_never_returns_code(mongo, storage):
    app = create_app(
        require_auth=True, storage=storage, mailer=StubMailer(SendResult(success=True, mode="production"))
    )
    app.dependency_overrides[get_db] = lambda: mongo

    r = TestClient(app).post("/auth/send-otp", json={"email": "a@example.com"})

    assert r.status_code == 200
    assert r.json()["message"].startswith("OTP sent to your email")
    assert "otp" not in r.json()


def test_verify_rejects_malformed_code(gated_client):
    r = gated_client.post("/auth/verify-otp", json={"email": "a@example.com", "otp": "12ab56"})
    assert r.status_code == 400
    assert r.json()["message"] == "Please enter a valid 6-digit OTP"


def test_verify_without_pending_code(gated_client):
    r = gated_client.post("/auth/verify-otp", json={"email": "nobody@example.com", "otp": "123456"})
    assert r.status_code == 400
    assert "expired" in r.json()["message"]


def test_verify_expired_code(gated_client, mongo):
    otp = gated_client.post("/auth/send-otp", json={"email": "a@example.com"}).json()["otp"]
    mongo["user"].update_one({"email": "a@example.com"}, {"$set": {"otp_expires": utcnow() - timedelta(seconds=1)}})

    r = gated_client.post("/auth/verify-otp", json={"email": "a@example.com", "otp": otp})
    assert r.status_code == 400


def test_verify_counts_attempts_and_locks_out(gated_client, mongo):
    otp = gated_client.post("/auth/send-otp", json={"email": "a@example.com"}).json()["otp"]
    wrong = "000000" if otp != "000000" else "111111"

    left = []
    for _ in range(5):
        r = gated_client.post("/auth/verify-otp", json={"email": "a@example.com", "otp": wrong})
        assert r.status_code == 400
        left.append(r.json()["attemptsLeft"])
    assert left == [4, 3, 2, 1, 0]

    r = gated_client.post("/auth/verify-otp", json={"email": "a@example.com", "otp": otp})
    assert r.status_code == 429
    assert r.json()["message"] == "Too many incorrect attempts. Please request a new OTP."

    user = mongo["user"].find_one({"email": "a@example.com"})
    assert user["otp"] is None
    assert user["otp_attempts"] == 0


def test_parallel_wrong_guesses_share_the_attempt_budget(gated_app, mongo):
    otp = TestClient(gated_app).post("/auth/send-otp", json={"email": "a@example.com"}).json()["otp"]
    guesses = [str(n) for n in range(100000, 100040) if str(n) != otp][:32]

    def guess(code):
        r = TestClient(gated_app).post("/auth/verify-otp", json={"email": "a@example.com", "otp": code})
        return r.status_code, r.json()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(guess, guesses))

    evaluated = [body for status, body in results if "attemptsLeft" in body]
    assert 0 < len(evaluated) <= OTP_MAX_ATTEMPTS
    assert any(status == 429 for status, _ in results)
    assert mongo["user"].find_one({"email": "a@example.com"})["otp_attempts"] <= OTP_MAX_ATTEMPTS


def test_attempts_message_is_singular_for_one(gated_client, mongo):
    gated_client.post("/auth/send-otp", json={"email": "a@example.com"})
    mongo["user"].update_one({"email": "a@example.com"}, {"$set": {"otp": "654321", "otp_attempts": 3}})

    r = gated_client.post("/auth/verify-otp", json={"email": "a@example.com", "otp": "123456"})
    assert r.json()["message"] == "Invalid OTP. 1 attempt remaining."


def test_login_creates_server_side_session(gated_client, mongo, login):
    body = login(gated_client, "Listener@Example.com")

    assert body == {"success": True, "message": "Login successful!", "user": {"email": "listener@example.com"}}
    session = mongo["session"].find_one({"email": "listener@example.com"})
    assert session is not None
    assert session["user_id"] == str(mongo["user"].find_one({"email": "listener@example.com"})["_id"])

    user = mongo["user"].find_one({"email": "listener@example.com"})
    assert user["otp"] is None
    assert user["last_login"] is not None

    me = gated_client.get("/auth/user")
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "listener@example.com"


def test_auth_user_requires_session(gated_client):
    r = gated_client.get("/auth/user")
    assert r.status_code == 401
    assert r.json()["message"] == "Not authenticated"


def test_expired_session_is_rejected_and_removed(gated_client, mongo, login):
    login(gated_client)
    mongo["session"].update_many({}, {"$set": {"expires_at": utcnow() - timedelta(minutes=1)}})

    assert gated_client.get("/auth/user").status_code == 401
    assert mongo["session"].count_documents({}) == 0


def test_logout_deletes_session(gated_client, mongo, login):
    login(gated_client)

    r = gated_client.post("/auth/logout")
    assert r.status_code == 200
    assert r.json()["message"] == "Logged out successfully"
    assert mongo["session"].count_documents({}) == 0
    assert gated_client.get("/auth/user").status_code == 401


def test_email_status(gated_client):
    body = gated_client.get("/api/email-status").json()
    assert body["success"] is True
    assert body["mode"] in ("unknown", "simulation")
    assert body["hasCredentials"] is False


def test_recent_test_otps(gated_client):
    otp = gated_client.post("/auth/send-otp", json={"email": "a@example.com"}).json()["otp"]

    body = gated_client.get("/api/test-otps").json()
    assert body["success"] is True
    assert body["otps"][0]["email"] == "a@example.com"
    assert body["otps"][0]["otp"] == otp


def test_recent_test_otps_hidden_in_production(gated_client, monkeypatch):
    monkeypatch.setattr(config, "IS_PRODUCTION", True)
    r = gated_client.get("/api/test-otps")
    assert r.status_code == 403
    assert r.json()["message"] == "Not available in production"

"""
Email OTP login and server-side sessions.

The browser only ever holds a signed cookie with a random session id; who is
logged in, and until when, lives in the ``session`` collection.
"""

import logging
import math
import re
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

import config
from database import as_utc, get_db, utcnow
from errors import ApiError, error_body
from mailer import EmailSystem
from schemas import Session, User

logger = logging.getLogger(__name__)

OTP_TTL = timedelta(minutes=10)
OTP_RESEND_DELAY = timedelta(seconds=60)
OTP_MAX_ATTEMPTS = 5
SESSION_TTL = timedelta(seconds=config.SESSION_MAX_AGE)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
OTP_RE = re.compile(r"^\d{6}$")

router = APIRouter()


def get_mailer(request: Request) -> EmailSystem:
    return request.app.state.mailer


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


# Sessions

def create_session(db: Database, user: Dict[str, Any]) -> str:
    now = utcnow()
    session = Session(
        sid=secrets.token_urlsafe(32),
        user_id=str(user["_id"]),
        email=user["email"],
        expires_at=now + SESSION_TTL,
    )
    db["session"].insert_one({**session.model_dump(), "created_at": now})
    return session.sid


def load_session(db: Database, sid: Optional[str]) -> Optional[Dict[str, Any]]:
    if not sid:
        return None
    doc = db["session"].find_one({"sid": sid})
    if doc is None:
        return None
    if as_utc(doc["expires_at"]) <= utcnow():
        db["session"].delete_one({"sid": sid})
        return None
    return doc


def current_session(request: Request, db: Database = Depends(get_db)) -> Optional[Dict[str, Any]]:
    return load_session(db, request.session.get("sid"))


def require_user(request: Request, session: Optional[Dict[str, Any]] = Depends(current_session)) -> Optional[str]:
    """Email of the caller; mandatory when the app is gated, optional otherwise."""
    if session is not None:
        return session["email"]
    if request.app.state.require_auth:
        raise ApiError(401, "Please login to continue")
    return None


# OTP flow

@router.post("/auth/send-otp")
async def send_otp(
    payload: Optional[Dict[str, Any]] = Body(None),
    db: Database = Depends(get_db),
    mailer: EmailSystem = Depends(get_mailer),
):
    payload = payload or {}
    email = payload.get("email")
    if not email or not isinstance(email, str):
        raise ApiError(400, "Email is required")
    if not EMAIL_RE.match(email.strip()):
        raise ApiError(400, "Please enter a valid email address")

    email = email.strip().lower()
    now = utcnow()

    existing = await run_in_threadpool(db["user"].find_one, {"email": email})
    if existing and existing.get("last_otp_request"):
        elapsed = now - as_utc(existing["last_otp_request"])
        if elapsed < OTP_RESEND_DELAY:
            remaining = math.ceil((OTP_RESEND_DELAY - elapsed).total_seconds())
            raise ApiError(
                429,
                f"Please wait {remaining} seconds before requesting another OTP",
                headers={"Retry-After": str(remaining)},
                retryAfter=remaining,
            )

    otp = generate_otp()
    await run_in_threadpool(
        db["user"].update_one,
        {"email": email},
        {
            "$set": {
                **User(
                    email=email,
                    otp=otp,
                    otp_expires=now + OTP_TTL,
                    otp_attempts=0,
                    last_otp_request=now,
                ).model_dump(exclude_unset=True),
                "updated_at": now,
            },
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )

    logger.info("Attempting to send OTP to %s", email)
    result = await mailer.send_otp_email(email, otp)
    logger.info(
        "Email send result: success=%s simulated=%s mode=%s error=%s",
        result.success, result.simulated, result.mode, result.error or "none",
    )

    if result.success and not result.simulated:
        return {
            "success": True,
            "message": "OTP sent to your email. Please check your inbox (and spam folder).",
            "expiresIn": "10 minutes",
            "mode": result.mode,
        }

    if result.success:
        body = {
            "success": True,
            "message": "Email system in development mode. OTP shown in console.",
            "expiresIn": "10 minutes",
            "mode": result.mode,
            "simulated": True,
            "note": "Configure EMAIL_USER and EMAIL_PASS for real email delivery",
        }
        if not config.IS_PRODUCTION:
            body["otp"] = result.otp
        return body

    logger.error("Email delivery failed: %s", result.error)
    status_code, message = _delivery_failure(result.error_code, result.response_code)
    debug = {} if config.IS_PRODUCTION else {"debugError": result.error, "debugInfo": result.debug_info}
    return JSONResponse(
        status_code=status_code,
        content=error_body(
            message,
            emailError=True,
            errorCode=result.error_code,
            mode=result.mode,
            **debug,
        ),
    )


def _delivery_failure(error_code: Optional[str], response_code: Optional[int]):
    prefix = "Failed to send OTP email. "
    if error_code == "EAUTH":
        return 503, prefix + "Email service authentication error. Please contact support."
    if error_code == "ETIMEDOUT":
        return 504, prefix + "Connection timeout. Please try again in a moment."
    if error_code == "ECONNREFUSED":
        return 503, prefix + "Email service temporarily unavailable. Please try again later."
    if response_code == 550:
        return 400, "Invalid email address. Please check and try again."
    return 500, prefix + "Please verify your email address and try again."


@router.post("/auth/verify-otp")
def verify_otp(
    request: Request,
    payload: Optional[Dict[str, Any]] = Body(None),
    db: Database = Depends(get_db),
):
    payload = payload or {}
    email = payload.get("email")
    otp = payload.get("otp")
    if not isinstance(email, str) or not email.strip() or not isinstance(otp, str) or not OTP_RE.match(otp):
        raise ApiError(400, "Please enter a valid 6-digit OTP")

    email = email.strip().lower()
    user = db["user"].find_one({"email": email})
    if (
        user is None
        or not user.get("otp")
        or not user.get("otp_expires")
        or as_utc(user["otp_expires"]) <= utcnow()
    ):
        raise ApiError(400, "No OTP found or OTP has expired. Please request a new one.")

    # claim the attempt before comparing; concurrent guesses draw on one budget
    claimed = db["user"].find_one_and_update(
        {"_id": user["_id"], "otp": user["otp"], "otp_attempts": {"$lt": OTP_MAX_ATTEMPTS}},
        {"$inc": {"otp_attempts": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        db["user"].update_one(
            {"_id": user["_id"], "otp": user["otp"]},
            {"$set": {"otp": None, "otp_expires": None, "otp_attempts": 0}},
        )
        raise ApiError(429, "Too many incorrect attempts. Please request a new OTP.")

    if not secrets.compare_digest(claimed["otp"], otp):
        left = OTP_MAX_ATTEMPTS - claimed["otp_attempts"]
        raise ApiError(
            400,
            f"Invalid OTP. {left} attempt{'' if left == 1 else 's'} remaining.",
            attemptsLeft=left,
        )

    now = utcnow()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"otp": None, "otp_expires": None, "otp_attempts": 0, "last_login": now, "updated_at": now}},
    )

    previous = request.session.get("sid")
    if previous:
        db["session"].delete_one({"sid": previous})
    request.session["sid"] = create_session(db, user)

    logger.info("User logged in: %s", email)
    return {"success": True, "message": "Login successful!", "user": {"email": email}}


@router.get("/auth/user")
def auth_user(session: Optional[Dict[str, Any]] = Depends(current_session)):
    if session is None:
        raise ApiError(401, "Not authenticated")
    return {"success": True, "user": {"email": session["email"]}}


@router.post("/auth/logout")
def logout(request: Request, db: Database = Depends(get_db)):
    sid = request.session.get("sid")
    email = None
    if sid:
        doc = db["session"].find_one_and_delete({"sid": sid})
        email = doc["email"] if doc else None
    request.session.clear()
    if email:
        logger.info("User logged out: %s", email)
    return {"success": True, "message": "Logged out successfully"}


# Email diagnostics

@router.get("/api/email-status")
def email_status(mailer: EmailSystem = Depends(get_mailer)):
    return {"success": True, **mailer.get_status()}


@router.get("/api/test-otps")
def test_otps(db: Database = Depends(get_db)):
    if config.IS_PRODUCTION:
        raise ApiError(403, "Not available in production")
    docs = db["testotp"].find().sort("created_at", DESCENDING).limit(10)
    return {
        "success": True,
        "otps": [
            {"email": d.get("email"), "otp": d.get("otp"), "created_at": d.get("created_at")}
            for d in docs
        ],
    }

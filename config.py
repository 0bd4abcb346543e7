"""
Runtime configuration for the AI Music Player backend.

Values come from the process environment, optionally seeded from a local
.env file. Everything is read once at import time.
"""

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()

APP_NAME = "AI Music Player"
VERSION = "3.5.0"

ENVIRONMENT = (os.getenv("NODE_ENV") or os.getenv("APP_ENV") or "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"

PORT = int(os.getenv("PORT", 5000))

# Database
MONGODB_URI = os.getenv("MONGODB_URI")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ai_music_player")


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Access mode: gated (email OTP + sessions) or public
REQUIRE_AUTH = _flag("REQUIRE_AUTH", True)

# Sessions
SESSION_SECRET = os.getenv("SESSION_SECRET")
SESSION_COOKIE = "aimp.sid"
SESSION_MAX_AGE = 24 * 60 * 60

# CORS
DEFAULT_CORS_ORIGINS = [
    "https://ai-music-player.onrender.com",
    "http://localhost:3000",
    "http://localhost:5000",
]
CORS_ORIGIN_REGEX = r"https?://([a-z0-9-]+\.)*(on)?render\.com"


def cors_origins() -> List[str]:
    extra = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    return DEFAULT_CORS_ORIGINS + extra


# Cloud media storage
CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY")
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET")

# Email delivery
EMAIL_USER = (os.getenv("EMAIL_USER") or "").strip()
EMAIL_PASS = (os.getenv("EMAIL_PASS") or "").strip()
EMAIL_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", 465))

# Uploads
MAX_UPLOAD_BYTES = 100 * 1024 * 1024
ALLOWED_AUDIO_TYPES = (
    "audio/mpeg",
    "audio/wav",
    "audio/mp3",
    "audio/mp4",
    "audio/x-m4a",
    "audio/ogg",
    "audio/webm",
    "audio/x-wav",
    "audio/x-mpeg",
)

PUBLIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "public")

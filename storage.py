"""
Cloud media storage for audio files, backed by Cloudinary.

Audio is stored as Cloudinary's "video" resource type, which is what the
service uses for anything with a timeline.
"""

import io
import logging
import secrets
import time
from typing import Any, Dict, Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
import cloudinary.utils

import config

logger = logging.getLogger(__name__)

FOLDER = "ai-music-player"
RESOURCE_TYPE = "video"
CHUNK_SIZE = 6_000_000


class StorageError(Exception):
    pass


class CloudinaryStorage:
    def __init__(self, cloud_name: Optional[str], api_key: Optional[str], api_secret: Optional[str]):
        self.cloud_name = cloud_name
        self._has_credentials = bool(api_key and api_secret)
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )

    @classmethod
    def from_env(cls) -> "CloudinaryStorage":
        storage = cls(
            config.CLOUDINARY_CLOUD_NAME,
            config.CLOUDINARY_API_KEY,
            config.CLOUDINARY_API_SECRET,
        )
        logger.info("Cloudinary: %s", "Configured" if storage.configured else "Not configured")
        return storage

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name) and self._has_credentials

    def _require_configured(self) -> None:
        if not self.configured:
            raise StorageError("Cloudinary is not configured")

    @staticmethod
    def new_public_id() -> str:
        return f"song_{int(time.time() * 1000)}_{secrets.token_hex(4)}"

    def upload(self, data: bytes, filename: str) -> Dict[str, Any]:
        self._require_configured()
        try:
            result = cloudinary.uploader.upload(
                io.BytesIO(data),
                resource_type=RESOURCE_TYPE,
                folder=FOLDER,
                public_id=self.new_public_id(),
                overwrite=False,
                format="mp3",
                chunk_size=CHUNK_SIZE,
                filename=filename,
            )
        except (cloudinary.exceptions.Error, ValueError) as e:
            logger.error("Cloudinary error: %s", e)
            raise StorageError(str(e)) from e
        logger.info("Cloudinary upload: %s", result.get("public_id"))
        return result

    def thumbnail_url(self, public_id: str) -> str:
        url, _ = cloudinary.utils.cloudinary_url(
            public_id,
            resource_type=RESOURCE_TYPE,
            transformation=[
                {"width": 300, "height": 300, "crop": "fill"},
                {"background": "auto:predominant"},
                {"effect": "waveform:ff5500:1"},
            ],
        )
        return url

    def delete(self, public_id: str) -> Dict[str, Any]:
        self._require_configured()
        try:
            result = cloudinary.uploader.destroy(public_id, resource_type=RESOURCE_TYPE)
        except (cloudinary.exceptions.Error, ValueError) as e:
            raise StorageError(str(e)) from e
        logger.info("Deleted from Cloudinary: %s", public_id)
        return result

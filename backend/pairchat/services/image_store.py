import asyncio
import base64
import binascii
import logging
from functools import lru_cache
from typing import Optional, Protocol
from urllib.parse import urlparse

import cloudinary
import cloudinary.uploader

from pairchat.config import get_settings
from pairchat.exceptions import UploadFailed

logger = logging.getLogger(__name__)

MESSAGE_FOLDER = "chat_app/messages"
PROFILE_FOLDER = "chat_app/profiles"


class ImageStore(Protocol):

    async def upload(self, payload: str, folder: str) -> str:
        """Store an inline (data URI or base64) image and return its durable URL."""
        ...


def split_data_uri(payload: str) -> str:
    if "base64," in payload:
        return payload.split("base64,", 1)[1]
    return payload


class CloudinaryImageStore:

    def __init__(self, cloudinary_url: Optional[str] = None, timeout: float = 30.0, max_bytes: int = 5 * 1024 * 1024) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        if cloudinary_url:
            # cloudinary://<api_key>:<api_secret>@<cloud_name>
            parsed = urlparse(cloudinary_url)
            cloudinary.config(
                cloud_name=parsed.hostname,
                api_key=parsed.username,
                api_secret=parsed.password,
                secure=True,
            )

    def _validate(self, payload: str) -> str:
        data = split_data_uri(payload or "").strip()
        if not data:
            raise UploadFailed("Invalid image data")
        try:
            size = len(base64.b64decode(data, validate=True))
        except (binascii.Error, ValueError) as exc:
            raise UploadFailed("Invalid image format. Please try with a different image.") from exc
        if size > self.max_bytes:
            raise UploadFailed(f"File size too large. Maximum size is {self.max_bytes // (1024 * 1024)}MB.")
        return data

    async def upload(self, payload: str, folder: str) -> str:
        data = self._validate(payload)
        source = payload if payload.startswith("data:image/") else f"data:image/jpeg;base64,{data}"
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    cloudinary.uploader.upload,
                    source,
                    folder=folder,
                    resource_type="image",
                    quality="auto",
                    fetch_format="auto",
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Image upload to %s timed out after %ss", folder, self.timeout)
            raise UploadFailed("Image upload timed out. Please try again.") from exc
        except Exception as exc:
            logger.warning("Image upload to %s failed: %s", folder, exc)
            raise UploadFailed(f"Image upload failed: {exc}") from exc
        url = (response or {}).get("secure_url")
        if not url:
            raise UploadFailed("Image upload failed: no URL returned")
        return url


@lru_cache
def get_image_store() -> CloudinaryImageStore:
    settings = get_settings()
    return CloudinaryImageStore(
        cloudinary_url=settings.CLOUDINARY_URL,
        timeout=settings.UPLOAD_TIMEOUT_SECONDS,
        max_bytes=settings.MAX_IMAGE_BYTES,
    )

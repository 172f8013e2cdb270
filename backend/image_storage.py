import io
import logging
import os
import re
from typing import Optional
from urllib.parse import urlparse
from uuid import uuid4

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError
from werkzeug.utils import secure_filename

from errors import UpstreamServiceError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {"jpeg", "jpg", "png", "webp"}
ALLOWED_IMAGE_MIMETYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}

VERSION_SEGMENT = re.compile(r"v\d+")


def allowed_image(filename: str, mimetype: Optional[str]) -> bool:
    extension = os.path.splitext(filename or "")[1].lower().lstrip(".")
    return (
        extension in ALLOWED_IMAGE_EXTENSIONS
        and (mimetype or "").lower() in ALLOWED_IMAGE_MIMETYPES
    )


def cloudinary_public_id(url: str) -> Optional[str]:
    """Derive the Cloudinary public id from a delivery URL.

    ``https://res.cloudinary.com/demo/image/upload/v1712/epolux/products/abc.jpg``
    maps to ``epolux/products/abc``.
    """
    path = urlparse(str(url or "")).path
    parts = [part for part in path.split("/") if part]
    if not parts:
        return None

    if "upload" in parts:
        parts = parts[parts.index("upload") + 1 :]
        if len(parts) > 1 and VERSION_SEGMENT.fullmatch(parts[0]):
            parts = parts[1:]
    else:
        parts = parts[-1:]

    if not parts:
        return None
    parts[-1] = os.path.splitext(parts[-1])[0]
    return "/".join(parts) or None


class CloudinaryImageStorage:
    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        folder: str = "epolux/products",
    ):
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )
        self.folder = folder

    def upload(self, data: bytes, filename: str) -> str:
        try:
            result = cloudinary.uploader.upload(io.BytesIO(data), folder=self.folder)
        except CloudinaryError as exc:
            logger.error("Cloudinary upload of %s failed: %s", filename, exc)
            raise UpstreamServiceError(f"Failed to upload image: {exc}") from exc

        url = (result or {}).get("secure_url")
        if not url:
            raise UpstreamServiceError("Image storage returned no URL.")
        return url

    def delete(self, url: str) -> None:
        public_id = cloudinary_public_id(url)
        if not public_id:
            logger.warning("Could not derive a Cloudinary public id from %s", url)
            return
        try:
            cloudinary.uploader.destroy(public_id)
        except CloudinaryError as exc:
            raise UpstreamServiceError(
                f"Failed to delete image {public_id}: {exc}"
            ) from exc


class LocalImageStorage:
    """Stores uploads on disk; the app serves them under ``/uploads/``."""

    def __init__(self, upload_folder: str, url_prefix: str = "/uploads/"):
        self.upload_folder = upload_folder
        self.url_prefix = url_prefix
        os.makedirs(upload_folder, exist_ok=True)

    def upload(self, data: bytes, filename: str) -> str:
        extension = os.path.splitext(secure_filename(filename or ""))[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        destination = os.path.join(self.upload_folder, unique_filename)
        try:
            with open(destination, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise UpstreamServiceError(
                "We could not store the uploaded image. Please try again."
            ) from exc
        return f"{self.url_prefix}{unique_filename}"

    def delete(self, url: str) -> None:
        filename = os.path.basename(urlparse(str(url or "")).path)
        if not filename:
            return
        try:
            os.remove(os.path.join(self.upload_folder, filename))
        except FileNotFoundError:
            return
        except OSError as exc:
            raise UpstreamServiceError(f"Failed to delete image {filename}: {exc}") from exc

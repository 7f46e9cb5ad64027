from functools import lru_cache
from typing import Any, Dict, Iterable, Optional

import cloudinary
import cloudinary.uploader
import structlog

import config
from errors import Unavailable

logger = structlog.get_logger(__name__)


class MediaStorage:
    def upload(self, file: Any, folder: str, public_id: Optional[str] = None) -> Dict:
        raise NotImplementedError

    def delete(self, storage_id: str) -> bool:
        raise NotImplementedError


class CloudinaryStorage(MediaStorage):
    """Media on Cloudinary; configured from CLOUDINARY_URL."""

    def __init__(self, url: Optional[str] = config.CLOUDINARY_URL):
        if url:
            cloudinary.config(cloudinary_url=url, secure=True)

    def upload(self, file: Any, folder: str, public_id: Optional[str] = None) -> Dict:
        try:
            result = cloudinary.uploader.upload(file, folder=folder, public_id=public_id, resource_type="auto")
        except Exception as e:
            logger.error("media_upload_failed", folder=folder, error=str(e))
            raise Unavailable("Failed to upload file")
        return {"url": result["secure_url"], "storage_id": result["public_id"]}

    def delete(self, storage_id: str) -> bool:
        result = cloudinary.uploader.destroy(storage_id)
        return result.get("result") == "ok"


def delete_quietly(storage: MediaStorage, storage_ids: Iterable[Optional[str]]) -> int:
    """Delete media; failures are logged and orphaned files are left behind."""
    deleted = 0
    for storage_id in storage_ids:
        if not storage_id:
            continue
        try:
            if storage.delete(storage_id):
                deleted += 1
            else:
                logger.warning("media_delete_not_ok", storage_id=storage_id)
        except Exception as e:
            logger.warning("media_delete_failed", storage_id=storage_id, error=str(e))
    return deleted


@lru_cache
def get_media_storage() -> MediaStorage:
    return CloudinaryStorage()

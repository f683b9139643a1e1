"""
Product image storage on the local filesystem.

Images are written under config.UPLOAD_DIR and referenced from product
records as "/uploads/<filename>" paths.
"""
import logging
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import HTTPException, UploadFile

import config

logger = logging.getLogger(__name__)

IMAGE_PATTERN = re.compile("|".join(config.ALLOWED_IMAGE_TYPES))


def _is_image(upload: UploadFile) -> bool:
    extension = Path(upload.filename or "").suffix.lower()
    return bool(IMAGE_PATTERN.search(upload.content_type or "")) and bool(IMAGE_PATTERN.search(extension))


def _size_of(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    upload.file.seek(0, 2)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


def validate_uploads(uploads: Optional[List[UploadFile]]) -> List[UploadFile]:
    """Drop empty form parts and enforce the count, type and size limits."""
    files = [u for u in (uploads or []) if u is not None and u.filename]
    if len(files) > config.MAX_UPLOAD_FILES:
        raise HTTPException(status_code=400, detail=f"Too many files: at most {config.MAX_UPLOAD_FILES} images allowed")
    for upload in files:
        if not _is_image(upload):
            raise HTTPException(status_code=400, detail="Only image files are allowed!")
        if _size_of(upload) > config.MAX_UPLOAD_SIZE:
            raise HTTPException(status_code=400, detail=f"File too large: {upload.filename}")
    return files


def stage_uploads(files: List[UploadFile]) -> List[str]:
    """Write uploads to disk and return their public paths, in upload order."""
    upload_dir = Path(config.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    try:
        for upload in files:
            extension = Path(upload.filename).suffix.lower()
            filename = f"product-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{extension}"
            upload.file.seek(0)
            with open(upload_dir / filename, "wb") as out:
                shutil.copyfileobj(upload.file, out)
            paths.append(f"{config.UPLOAD_URL_PREFIX}/{filename}")
            logger.info("Stored upload %s as %s", upload.filename, filename)
    except Exception:
        delete_images(paths)
        raise
    return paths


def image_file(path: str) -> Path:
    return Path(config.UPLOAD_DIR) / Path(path).name


def delete_images(paths: List[str]) -> None:
    """Delete stored image files; files already missing are skipped."""
    for path in paths or []:
        target = image_file(path)
        if target.exists():
            target.unlink()
            logger.info("Deleted image %s", target)
        else:
            logger.debug("Image %s already missing, skipping", target)

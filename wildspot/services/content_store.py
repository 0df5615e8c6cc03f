import hashlib
import logging
import os
import re
from datetime import datetime, timezone
from typing import Iterator, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from wildspot.core.exceptions import BlobNotFoundError, ImageNotFoundError, StorageFailureError
from wildspot.models.image import StoredImage
from wildspot.monitoring.metrics import image_uploads, image_bytes_stored
from wildspot.services.blob_storage import BlobStorage

logger = logging.getLogger(__name__)

IMAGE_ID_PATTERN = re.compile(r"^[0-9a-f]{64}$")
SAFE_EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]{1,10}$")
MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
DEFAULT_MIME = "application/octet-stream"


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest used as the image id"""
    return hashlib.sha256(data).hexdigest()


def safe_extension(filename: Optional[str], mime: Optional[str]) -> str:
    """Extension of the declared filename, else the one implied by the MIME type"""
    ext = os.path.splitext(filename or "")[1].lower()
    if SAFE_EXTENSION_PATTERN.match(ext):
        return ext
    return MIME_EXTENSIONS.get((mime or "").lower(), "")


def is_image_id(value: str) -> bool:
    return bool(IMAGE_ID_PATTERN.match(value or ""))


class ContentStore:
    """Deduplicated persistence of image bytes keyed by content hash.

    Bytes go to a BlobStorage, the id -> (filename, mime, created_at) index
    lives in the ``images`` table. The blob is always written before the
    index row, so a crash in between leaves an orphan file that the next
    identical upload overwrites, never a row without a file.
    """

    def __init__(self, session: AsyncSession, blobs: BlobStorage):
        self.session = session
        self.blobs = blobs

    async def put(
            self,
            data: bytes,
            declared_filename: Optional[str] = None,
            declared_mime: Optional[str] = None,
            uploaded_by: Optional[str] = None,
    ) -> str:
        image_id = content_hash(data)

        if await self.get(image_id) is not None:
            image_uploads.labels(outcome="deduplicated").inc()
            logger.info(f"Image {image_id} already stored, skipping write")
            return image_id

        filename = f"{image_id}{safe_extension(declared_filename, declared_mime)}"
        mime = declared_mime or DEFAULT_MIME

        try:
            await run_in_threadpool(self.blobs.write, filename, data, mime)
        except Exception as e:
            image_uploads.labels(outcome="failed").inc()
            logger.exception(f"Blob write failed for {filename}: {e}")
            raise StorageFailureError() from e

        self.session.add(StoredImage(
            id=image_id,
            filename=filename,
            mime=mime,
            size_bytes=len(data),
            uploaded_by=uploaded_by,
            created_at=datetime.now(timezone.utc),
        ))
        try:
            await self.session.commit()
        except IntegrityError:
            # A concurrent upload of the same bytes indexed it first
            await self.session.rollback()
            image_uploads.labels(outcome="deduplicated").inc()
            logger.info(f"Image {image_id} indexed concurrently, keeping existing row")
            return image_id
        except SQLAlchemyError as e:
            await self.session.rollback()
            image_uploads.labels(outcome="failed").inc()
            logger.exception(f"Index write failed for {image_id}: {e}")
            raise StorageFailureError() from e

        image_uploads.labels(outcome="created").inc()
        image_bytes_stored.inc(len(data))
        logger.info(f"Image stored: {filename} ({len(data)} bytes, {mime})")
        return image_id

    async def get(self, image_id: str) -> Optional[StoredImage]:
        """Index lookup; malformed ids are simply unknown"""
        if not is_image_id(image_id):
            return None
        return await self.session.get(StoredImage, image_id)

    async def open(self, image_id: str) -> Tuple[StoredImage, Iterator[bytes]]:
        record = await self.get(image_id)
        if record is None:
            raise ImageNotFoundError()
        try:
            stream = await run_in_threadpool(self.blobs.open_stream, record.filename)
        except BlobNotFoundError:
            logger.warning(f"Index row {image_id} points at missing blob {record.filename}")
            raise ImageNotFoundError("Image file missing")
        return record, stream

    async def read(self, image_id: str) -> Tuple[StoredImage, bytes]:
        record, stream = await self.open(image_id)
        data = await run_in_threadpool(b"".join, stream)
        return record, data

    async def delete(self, image_id: str) -> bool:
        """Drop the index row, then the blob (best effort)"""
        record = await self.get(image_id)
        if record is None:
            return False

        filename = record.filename
        await self.session.delete(record)
        await self.session.commit()

        try:
            removed = await run_in_threadpool(self.blobs.delete, filename)
            if not removed:
                logger.warning(f"Blob {filename} was already gone when deleting {image_id}")
        except Exception as e:
            logger.error(f"Could not remove blob {filename}: {e}")

        logger.info(f"Image deleted: {image_id}")
        return True

from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from wildspot.config import settings
from wildspot.database import get_session
from wildspot.services.blob_storage import BlobStorage, build_blob_storage
from wildspot.services.content_store import ContentStore
from wildspot.services.identification_service import IdentificationService

_blob_storage: Optional[BlobStorage] = None
_identification_service: Optional[IdentificationService] = None


def get_blob_storage() -> BlobStorage:
    global _blob_storage
    if _blob_storage is None:
        _blob_storage = build_blob_storage(settings)
    return _blob_storage


def get_content_store(
        session: AsyncSession = Depends(get_session),
        blobs: BlobStorage = Depends(get_blob_storage),
) -> ContentStore:
    return ContentStore(session, blobs)


def get_identification_service() -> IdentificationService:
    global _identification_service
    if _identification_service is None:
        _identification_service = IdentificationService.from_settings(settings)
    return _identification_service


async def close_services():
    global _identification_service
    if _identification_service is not None:
        await _identification_service.aclose()
        _identification_service = None

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from wildspot.api.dependencies import get_blob_storage
from wildspot.database import get_session
from wildspot.services.blob_storage import BlobStorage
from wildspot.services.health_service import get_detailed_health

router = APIRouter()


@router.get("")
async def health_check():
	return {"status": "ok"}


@router.get("/detailed")
async def detailed_health_check(
		session: AsyncSession = Depends(get_session),
		blobs: BlobStorage = Depends(get_blob_storage),
):
	"""Database, blob storage and host report"""
	return await get_detailed_health(blobs, session)

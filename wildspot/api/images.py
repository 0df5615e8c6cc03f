import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.datastructures import UploadFile

from wildspot.api.dependencies import get_content_store, get_identification_service
from wildspot.auth.dependencies import get_current_identity, get_reader_identity, get_upload_identity
from wildspot.auth.identity import Identity
from wildspot.config import settings
from wildspot.core.exceptions import (
	IdentificationError,
	ImageNotFoundError,
	ImageStoreError,
	MissingImageError,
	PayloadTooLargeError,
	StorageFailureError,
)
from wildspot.monitoring.metrics import image_uploads
from wildspot.schemas.image import ErrorResponse, ImageUploadResponse
from wildspot.services.content_store import ContentStore
from wildspot.services.identification_service import IdentificationService

router = APIRouter()
logger = logging.getLogger(__name__)

IMMUTABLE_CACHE = "public, max-age=31536000, immutable"

UPLOAD_BODY = {
	"requestBody": {
		"required": True,
		"content": {
			"multipart/form-data": {
				"schema": {
					"type": "object",
					"properties": {"image": {"type": "string", "format": "binary", "description": "Image file to store"}},
					"required": ["image"],
				}
			}
		},
	}
}


@router.post(
	"",
	response_model=ImageUploadResponse,
	status_code=status.HTTP_201_CREATED,
	responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
	openapi_extra=UPLOAD_BODY,
)
async def upload_image(
		request: Request,
		identity: Optional[Identity] = Depends(get_upload_identity),
		store: ContentStore = Depends(get_content_store),
):
	"""
	Store an uploaded photo

	Identical bytes always map to the same id; re-uploading them is a no-op
	that returns the existing id.
	"""
	# Parsed by hand so a plain text field is rejected like a missing file
	form = await request.form()
	image = form.get("image")
	if not isinstance(image, UploadFile):
		image_uploads.labels(outcome="rejected").inc()
		raise MissingImageError()

	limit = settings.MAX_UPLOAD_SIZE
	if image.size is not None and image.size > limit:
		image_uploads.labels(outcome="rejected").inc()
		raise PayloadTooLargeError()

	data = await image.read(limit + 1)
	if len(data) > limit:
		image_uploads.labels(outcome="rejected").inc()
		raise PayloadTooLargeError()

	try:
		image_id = await store.put(
			data,
			declared_filename=image.filename,
			declared_mime=image.content_type,
			uploaded_by=identity.user_id if identity else None,
		)
	except ImageStoreError:
		raise
	except Exception as e:
		logger.exception(f"Unexpected upload failure: {e}")
		raise StorageFailureError() from e

	return ImageUploadResponse(id=image_id)


@router.get(
	"/{image_id}",
	response_class=StreamingResponse,
	responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def get_image(
		image_id: str,
		identity: Optional[Identity] = Depends(get_reader_identity),
		store: ContentStore = Depends(get_content_store),
):
	"""Stream a stored image with its original content type"""
	try:
		record, stream = await store.open(image_id)
	except ImageStoreError:
		raise
	except Exception as e:
		logger.exception(f"Unexpected retrieval failure for {image_id}: {e}")
		raise ImageStoreError("Failed to fetch image") from e

	return StreamingResponse(
		stream,
		media_type=record.mime,
		headers={"Cache-Control": IMMUTABLE_CACHE, "ETag": f'"{record.id}"'},
	)


@router.delete(
	"/{image_id}",
	status_code=status.HTTP_204_NO_CONTENT,
	responses={404: {"model": ErrorResponse}},
)
async def delete_image(
		image_id: str,
		identity: Identity = Depends(get_current_identity),
		store: ContentStore = Depends(get_content_store),
):
	"""Remove the index row and the stored file"""
	if not await store.delete(image_id):
		raise ImageNotFoundError()

	logger.info(f"Image {image_id} deleted by {identity.user_id}")
	return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
	"/{image_id}/identify",
	responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def identify_image(
		image_id: str,
		country: Optional[str] = Query(None, min_length=2, max_length=3, description="ISO country code hint"),
		identity: Identity = Depends(get_current_identity),
		store: ContentStore = Depends(get_content_store),
		identifier: IdentificationService = Depends(get_identification_service),
):
	"""
	Ask the species detector what is in a stored image

	The detector's JSON answer is returned unchanged.
	"""
	if not identifier.configured:
		logger.error("Identification requested but ANIMALDETECT_API_KEY is not set")
		return JSONResponse(
			status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
			content={"error": "identification_not_configured", "message": "Missing ANIMALDETECT_API_KEY"},
		)

	record, data = await store.read(image_id)

	try:
		return await identifier.identify(data, record.filename, record.mime, country)
	except IdentificationError as e:
		return JSONResponse(
			status_code=e.status_code,
			content={"error": "identification_failed", "message": str(e), "details": e.details},
		)

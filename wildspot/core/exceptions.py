from typing import Optional

from fastapi import status


class WildspotError(Exception):
    """Base class for every error raised by wildspot"""


# =====================================
# Image store (server side)
# =====================================
class ImageStoreError(WildspotError):
    """Error that maps onto an HTTP response of the image service"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"
    message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class MissingImageError(ImageStoreError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "missing_image"
    message = "Missing image file (field name: image)"


class PayloadTooLargeError(ImageStoreError):
    status_code = status.HTTP_413_CONTENT_TOO_LARGE
    code = "payload_too_large"
    message = "Image exceeds the maximum upload size"


class ImageNotFoundError(ImageStoreError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    message = "Image not found"


class StorageFailureError(ImageStoreError):
    code = "storage_failure"
    message = "Failed to store image"


class BlobNotFoundError(WildspotError):
    """The index points at a blob that is no longer in storage"""


class IdentificationError(WildspotError):
    """Species identification upstream failed"""

    def __init__(self, message: str, status_code: int = status.HTTP_502_BAD_GATEWAY, details: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


# =====================================
# Client side protocols
# =====================================
class DocumentStoreError(WildspotError):
    """A document store read or write failed"""


class QueryError(WildspotError):
    """A proximity or pagination scan failed (distinct from an empty result)"""


class ImageServiceError(WildspotError):
    """The image service answered with an unexpected status"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

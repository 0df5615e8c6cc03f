from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict


class ImageUploadResponse(BaseModel):
    """Response body of a successful upload"""
    id: str = Field(..., description="SHA-256 hex digest of the uploaded bytes")


class ImageRecord(BaseModel):
    """Index row of a stored image"""
    id: str
    filename: str
    mime: str
    size_bytes: Optional[int] = None
    uploaded_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ErrorResponse(BaseModel):
    """Error response body"""
    error: str = Field(..., description="Machine readable reason")
    message: Optional[str] = Field(None, description="Human readable message")
    details: Optional[str] = Field(None, description="Upstream details when relevant")

from sqlalchemy import Column, String, DateTime, BigInteger

from wildspot.database import Base


class StoredImage(Base):
	__tablename__ = "images"

	id = Column(String(64), primary_key=True)  # sha256 hex of the raw bytes
	filename = Column(String(80), nullable=False)
	mime = Column(String(100), nullable=False)
	size_bytes = Column(BigInteger)
	uploaded_by = Column(String(128), index=True)
	created_at = Column(DateTime(timezone=True), nullable=False)

from sqlalchemy import Column, String, Text, Float, DateTime, Integer, JSON

from wildspot.database import Base


class Sighting(Base):
	"""Document table behind the ``spots`` collection.

	Column names are the document field names, so queries built against the
	collection can address them directly.
	"""
	__tablename__ = "spots"

	id = Column(String(64), primary_key=True)
	user_id = Column(String(128), index=True)
	image_id = Column(String(64))
	latitude = Column(Float)
	longitude = Column(Float)
	geohash = Column(String(22), index=True)
	species = Column(JSON)
	description = Column(Text)
	location_name = Column(String(255))
	daily_steps = Column(Integer)
	sensor_data = Column(JSON)
	timestamp = Column(DateTime(timezone=True), index=True)

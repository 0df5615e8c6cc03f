from sqlalchemy import Column, String, Integer

from wildspot.database import Base


class Profile(Base):
	"""Document table behind the ``users`` collection (ranking projection)"""
	__tablename__ = "users"

	id = Column(String(128), primary_key=True)
	username = Column(String(255), index=True)
	country = Column(String(3))
	total_spots = Column("totalSpots", Integer, index=True)
	total_steps = Column("totalSteps", Integer)

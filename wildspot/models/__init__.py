from wildspot.models.image import StoredImage
from wildspot.models.profile import Profile
from wildspot.models.sighting import Sighting

__all__ = ["StoredImage", "Profile", "Sighting"]

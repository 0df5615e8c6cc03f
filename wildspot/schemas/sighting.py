from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

UNKNOWN_SPECIES = "Unknown species"


class Species(BaseModel):
    """Single representation of the ``species`` field of a sighting.

    Older records hold a bare string, newer ones a ``{"label", "taxonomy"}``
    mapping; ``from_raw`` folds both into this shape once, at read time.
    """
    label: str = UNKNOWN_SPECIES
    taxonomy: Dict[str, Optional[str]] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "Species":
        if isinstance(raw, str) and raw.strip():
            return cls(label=raw)
        if isinstance(raw, dict):
            label = raw.get("label")
            taxonomy = raw.get("taxonomy")
            return cls(
                label=label if isinstance(label, str) and label.strip() else UNKNOWN_SPECIES,
                taxonomy={str(k): (None if v is None else str(v)) for k, v in taxonomy.items()}
                if isinstance(taxonomy, dict) else {},
            )
        return cls()

    @property
    def display_label(self) -> str:
        return self.label[:1].upper() + self.label[1:]

    def to_document(self) -> Dict[str, Any]:
        return {"label": self.label, "taxonomy": dict(self.taxonomy)}


class SpotLocation(BaseModel):
    """Map marker produced by the proximity query"""
    id: str
    latitude: float
    longitude: float
    species: Species = Field(default_factory=Species)
    location_name: str = "Unknown"
    user_id: str = ""
    distance_m: Optional[float] = None


class UserSpot(BaseModel):
    """Sighting as listed on the owner's own page"""
    id: str
    species: Species = Field(default_factory=Species)
    description: str = ""
    location_name: str = "Unknown location"
    image_id: str = ""
    user_id: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: Optional[datetime] = None
    daily_steps: int = 0


class SightingDraft(BaseModel):
    """What the caller supplies when logging a new sighting"""
    image: bytes
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    description: str = ""
    location_name: str = "Unknown"
    species_hint: str = ""
    daily_steps: int = 0
    azimuth: Optional[float] = None
    filename: str = "upload.jpg"
    content_type: str = "image/jpeg"


class SubmissionResult(BaseModel):
    success: bool
    message: str
    sighting_id: Optional[str] = None
    image_id: Optional[str] = None


class RankingUser(BaseModel):
    id: str
    username: str = "Unknown"
    spots: int = 0
    steps: int = 0
    global_rank: Optional[int] = None

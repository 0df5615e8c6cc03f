import logging
from typing import Any, Dict, List, Optional, Tuple

from wildspot.client.events import NotificationChannel
from wildspot.client.images import ImageServiceClient
from wildspot.core.exceptions import DocumentStoreError, ImageServiceError
from wildspot.documents.base import SERVER_TIMESTAMP, Direction, DocumentStore, Increment, Snapshot
from wildspot.geo import geohash
from wildspot.schemas.sighting import SightingDraft, Species, SubmissionResult, UNKNOWN_SPECIES, UserSpot

logger = logging.getLogger(__name__)

SPOTS = "spots"
USERS = "users"
DEFAULT_COUNTRY = "ITA"
ANONYMOUS_USER = "anonymous"
PAGE_SIZE = 10

TAXONOMY_FIELDS = ("id", "class", "order", "family", "genus", "species")


def first_annotation(response: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Top annotation of a detector answer, if it has a usable label"""
    if not isinstance(response, dict):
        return None
    annotations = response.get("annotations")
    if not isinstance(annotations, list) or not annotations:
        return None
    annotation = annotations[0]
    if not isinstance(annotation, dict):
        return None
    label = annotation.get("label")
    if not isinstance(label, str) or not label.strip():
        return None
    return annotation


def species_from_annotation(annotation: Optional[Dict[str, Any]], hint: str = "") -> Species:
    if annotation is None:
        return Species(label=hint.strip() or UNKNOWN_SPECIES)

    raw_taxonomy = annotation.get("taxonomy")
    taxonomy = {}
    if isinstance(raw_taxonomy, dict):
        taxonomy = {
            name: None if raw_taxonomy.get(name) is None else str(raw_taxonomy[name])
            for name in TAXONOMY_FIELDS
        }
    return Species(label=annotation["label"], taxonomy=taxonomy)


def user_spot_from_snapshot(snapshot: Snapshot) -> UserSpot:
    species = Species.from_raw(snapshot.get("species"))
    return UserSpot(
        id=snapshot.id,
        species=species.model_copy(update={"label": species.display_label}),
        description=snapshot.get("description") or "",
        location_name=snapshot.get("location_name") or "Unknown location",
        image_id=snapshot.get("image_id") or "",
        user_id=snapshot.get("user_id") or "",
        latitude=snapshot.get("latitude"),
        longitude=snapshot.get("longitude"),
        timestamp=snapshot.get("timestamp"),
        daily_steps=snapshot.get("daily_steps") or 0,
    )


class SightingService:
    """Logging, listing and removing sightings for a signed-in user"""

    def __init__(
            self,
            store: DocumentStore,
            images: ImageServiceClient,
            notifications: Optional[NotificationChannel] = None,
    ):
        self.store = store
        self.images = images
        self.notifications = notifications

    async def submit(self, draft: SightingDraft, user_id: Optional[str] = None) -> SubmissionResult:
        """
        Upload the photo, try to identify it and record the sighting

        Identification is best effort: when it fails the caller's hint (or
        "Unknown species") is used. Upload and write failures turn into a
        failed result whose message carries the cause.
        """
        try:
            image_id = await self.images.upload(draft.image, draft.filename, draft.content_type)
            country = await self._country_for(user_id)
            annotation = first_annotation(await self._identify(image_id, country))
            species = species_from_annotation(annotation, draft.species_hint)

            sighting_id = await self.store.add(SPOTS, {
                "species": species.to_document(),
                "description": draft.description,
                "latitude": draft.latitude,
                "longitude": draft.longitude,
                "location_name": draft.location_name,
                "geohash": geohash.encode(draft.latitude, draft.longitude),
                "timestamp": SERVER_TIMESTAMP,
                "image_id": image_id,
                "user_id": user_id or ANONYMOUS_USER,
                "daily_steps": draft.daily_steps,
                "sensor_data": {"compass_azimuth": draft.azimuth},
            })
            if user_id:
                await self.store.set(USERS, user_id, {"totalSpots": Increment(1)}, merge=True)
        except (ImageServiceError, DocumentStoreError) as e:
            logger.warning(f"Sighting submission failed: {e}")
            result = SubmissionResult(success=False, message=f"Error: {e}")
        else:
            message = f"Identified: {species.display_label}" if annotation else "Spot added!"
            logger.info(f"Sighting {sighting_id} recorded with image {image_id}")
            result = SubmissionResult(success=True, message=message, sighting_id=sighting_id, image_id=image_id)

        if self.notifications is not None:
            self.notifications.emit(result.message, result.success)
        return result

    async def list_own_page(
            self,
            user_id: str,
            cursor: Optional[Snapshot] = None,
            page_size: int = PAGE_SIZE,
    ) -> Tuple[List[UserSpot], Optional[Snapshot]]:
        """One page of the user's sightings, newest first, plus the next cursor"""
        query = (
            self.store.collection(SPOTS)
            .where("user_id", "==", user_id)
            .order_by("timestamp", Direction.DESCENDING)
            .limit(page_size)
        )
        if cursor is not None:
            query = query.start_after(cursor)

        snapshots = await self.store.run(query)
        last = snapshots[-1] if snapshots else None
        return [user_spot_from_snapshot(s) for s in snapshots], last

    async def delete_sighting(self, spot: UserSpot) -> None:
        await self.store.delete(SPOTS, spot.id)
        if spot.user_id:
            await self.store.update(USERS, spot.user_id, {"totalSpots": Increment(-1)})

    async def restore_sighting(self, spot: UserSpot) -> None:
        """Put back a sighting removed by ``delete_sighting`` under its old id"""
        data = {
            "species": spot.species.to_document(),
            "description": spot.description,
            "location_name": spot.location_name,
            "image_id": spot.image_id,
            "user_id": spot.user_id,
            "timestamp": spot.timestamp,
            "daily_steps": spot.daily_steps,
        }
        if spot.latitude is not None and spot.longitude is not None:
            data.update(
                latitude=spot.latitude,
                longitude=spot.longitude,
                geohash=geohash.encode(spot.latitude, spot.longitude),
            )

        await self.store.set(SPOTS, spot.id, data)
        if spot.user_id:
            await self.store.update(USERS, spot.user_id, {"totalSpots": Increment(1)})

    async def update_description(self, spot_id: str, description: str) -> None:
        await self.store.update(SPOTS, spot_id, {"description": description})

    async def _country_for(self, user_id: Optional[str]) -> str:
        if not user_id:
            return DEFAULT_COUNTRY
        profile = await self.store.get(USERS, user_id)
        if profile is None:
            return DEFAULT_COUNTRY
        return profile.get("country") or DEFAULT_COUNTRY

    async def _identify(self, image_id: str, country: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.images.identify(image_id, country)
        except ImageServiceError as e:
            logger.info(f"Identification skipped for {image_id}: {e}")
            return None

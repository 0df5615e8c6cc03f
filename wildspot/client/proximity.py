"""
Radius queries over the ``spots`` collection using only its geohash index.

``find_nearby`` scans the geohash ranges covering the circle, merges the
candidates by document id and keeps only those whose great-circle distance
is within the radius. ``ProximityTracker`` drives it from a stream of
location updates: bursts are debounced, small GPS jitter is ignored and a
newer trigger always wins over an older one still in flight.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple

from wildspot.core.exceptions import DocumentStoreError, QueryError
from wildspot.documents.base import DocumentStore, Snapshot
from wildspot.geo import geohash
from wildspot.schemas.sighting import Species, SpotLocation

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "spots"
DEFAULT_DEBOUNCE_SECONDS = 0.3
DEFAULT_MOVEMENT_THRESHOLD_M = 50.0

Point = Tuple[float, float]


def merge_candidates(batches: Iterable[Iterable[Snapshot]]) -> Dict[str, Snapshot]:
    """Union of range results keyed by document id"""
    merged: Dict[str, Snapshot] = {}
    for batch in batches:
        for snapshot in batch:
            merged.setdefault(snapshot.id, snapshot)
    return merged


def spot_from_snapshot(snapshot: Snapshot, distance: Optional[float] = None) -> Optional[SpotLocation]:
    latitude = snapshot.get("latitude")
    longitude = snapshot.get("longitude")
    if latitude is None or longitude is None:
        return None
    species = Species.from_raw(snapshot.get("species"))
    return SpotLocation(
        id=snapshot.id,
        latitude=latitude,
        longitude=longitude,
        species=species.model_copy(update={"label": species.display_label}),
        location_name=snapshot.get("location_name") or "Unknown",
        user_id=snapshot.get("user_id") or "",
        distance_m=distance,
    )


def filter_within(candidates: Iterable[Snapshot], center: Point, radius_m: float) -> List[SpotLocation]:
    """Drop candidates farther than ``radius_m`` and those without coordinates"""
    spots = []
    for snapshot in candidates:
        latitude = snapshot.get("latitude")
        longitude = snapshot.get("longitude")
        if latitude is None or longitude is None:
            continue
        distance = geohash.distance_m((latitude, longitude), center)
        if distance > radius_m:
            continue
        spots.append(spot_from_snapshot(snapshot, distance))
    return spots


async def find_nearby(
        store: DocumentStore,
        center: Point,
        radius_m: float,
        collection: str = DEFAULT_COLLECTION,
) -> List[SpotLocation]:
    """Sightings within ``radius_m`` metres of ``center``, in no particular order"""
    bounds = geohash.query_bounds(center, radius_m)
    queries = [
        store.collection(collection).order_by("geohash").start_at(bound.start).end_at(bound.end)
        for bound in bounds
    ]

    try:
        batches = await asyncio.gather(*(store.run(query) for query in queries))
    except DocumentStoreError as e:
        raise QueryError(f"Nearby query failed: {e}") from e

    candidates = merge_candidates(batches)
    spots = filter_within(candidates.values(), center, radius_m)
    logger.debug(f"{len(candidates)} candidates in {len(bounds)} ranges, {len(spots)} within {radius_m} m")
    return spots


@dataclass(frozen=True)
class ProximityState:
    center: Optional[Point] = None
    radius_m: Optional[float] = None
    results: Tuple[SpotLocation, ...] = ()
    error: Optional[str] = None
    loading: bool = False
    movement_threshold_m: float = field(default=DEFAULT_MOVEMENT_THRESHOLD_M, compare=False)

    def needs_refresh(self, center: Point, radius_m: float) -> bool:
        """True when the radius changed or the center moved past the threshold"""
        if self.center is None or self.radius_m != radius_m:
            return True
        return geohash.distance_m(self.center, center) > self.movement_threshold_m

    def requested(self, center: Point, radius_m: float) -> "ProximityState":
        return replace(self, center=center, radius_m=radius_m)

    def started(self) -> "ProximityState":
        return replace(self, loading=True, error=None)

    def succeeded(self, results: Iterable[SpotLocation]) -> "ProximityState":
        return replace(self, results=tuple(results), error=None, loading=False)

    def failed(self, message: str) -> "ProximityState":
        # Forget the trigger so the same position is retried
        return replace(self, center=None, radius_m=None, error=message, loading=False)

    def settled(self) -> "ProximityState":
        return replace(self, loading=False)

    def abandoned(self) -> "ProximityState":
        """Query dropped before it produced results; the next trigger runs again"""
        return replace(self, center=None, radius_m=None, loading=False)


class ProximityTracker:
    """Keeps ``state`` in sync with the latest (center, radius) trigger"""

    def __init__(
            self,
            store: DocumentStore,
            debounce: float = DEFAULT_DEBOUNCE_SECONDS,
            movement_threshold_m: float = DEFAULT_MOVEMENT_THRESHOLD_M,
            collection: str = DEFAULT_COLLECTION,
    ):
        self._store = store
        self._debounce = debounce
        self._collection = collection
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self.state = ProximityState(movement_threshold_m=movement_threshold_m)

    def update(self, center: Point, radius_m: float, force: bool = False) -> Optional[asyncio.Task]:
        """Schedule a query unless the trigger is within the movement threshold"""
        geohash.validate_point(*center)
        if radius_m <= 0:
            raise ValueError(f"Radius must be positive, got {radius_m}")
        if not force and not self.state.needs_refresh(center, radius_m):
            return None

        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()

        self.state = self.state.requested(center, radius_m)
        self._task = asyncio.create_task(self._load(self._generation, center, radius_m))
        return self._task

    def cancel(self) -> None:
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
            self.state = self.state.abandoned()
        else:
            self.state = self.state.settled()

    async def wait(self) -> ProximityState:
        """Wait for the current query, if any, and return the resulting state"""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.state

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def _load(self, generation: int, center: Point, radius_m: float) -> None:
        try:
            await asyncio.sleep(self._debounce)
            self.state = self.state.started()
            results = await find_nearby(self._store, center, radius_m, self._collection)
            if self._is_current(generation):
                self.state = self.state.succeeded(results)
        except QueryError as e:
            logger.warning(f"Nearby spots query failed: {e}")
            if self._is_current(generation):
                self.state = self.state.failed(str(e))
        finally:
            if self._is_current(generation) and self.state.loading:
                self.state = self.state.settled()

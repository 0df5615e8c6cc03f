import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from wildspot.client.events import NotificationChannel
from wildspot.client.images import ImageServiceClient
from wildspot.client.sightings import (
	SightingService,
	first_annotation,
	species_from_annotation,
	user_spot_from_snapshot,
)
from wildspot.core.exceptions import ImageServiceError
from wildspot.documents import Query, Snapshot
from wildspot.geo import geohash
from wildspot.schemas.sighting import SightingDraft, Species

PHOTO = b"\xff\xd8\xff\xe0" + b"badger" * 50


@pytest.fixture
def notifications():
	return NotificationChannel()


@pytest.fixture
def image_client(client, auth_token):
	async def token_provider():
		return auth_token

	return ImageServiceClient("http://test", token_provider=token_provider, http_client=client)


@pytest.fixture
def sightings(document_store, image_client, notifications):
	return SightingService(document_store, image_client, notifications)


def draft(**overrides):
	values = {"image": PHOTO, "latitude": 45.07, "longitude": 7.68, "description": "by the river", "location_name": "Torino-Centro"}
	values.update(overrides)
	return SightingDraft(**values)


# =====================================
# Species normalization
# =====================================
def test_species_from_raw_shapes():
	assert Species.from_raw("fox") == Species(label="fox")
	assert Species.from_raw({"label": "owl", "taxonomy": {"class": "aves", "genus": None}}) == Species(
		label="owl", taxonomy={"class": "aves", "genus": None}
	)
	assert Species.from_raw({"taxonomy": "broken"}).label == "Unknown species"
	assert Species.from_raw(None) == Species()
	assert Species.from_raw(42) == Species()
	assert Species.from_raw("   ").label == "Unknown species"


def test_species_display_label():
	assert Species(label="red fox").display_label == "Red fox"
	assert Species(label="").display_label == ""


def test_first_annotation():
	assert first_annotation({"annotations": [{"label": "fox"}]}) == {"label": "fox"}
	assert first_annotation({"annotations": [{"label": "  "}]}) is None
	assert first_annotation({"annotations": []}) is None
	assert first_annotation({}) is None
	assert first_annotation(None) is None


def test_species_from_annotation():
	species = species_from_annotation({"label": "wolf", "taxonomy": {"class": "mammalia", "genus": "canis"}})
	assert species.label == "wolf"
	assert species.taxonomy["class"] == "mammalia"
	assert species.taxonomy["family"] is None

	assert species_from_annotation(None, "deer").label == "deer"
	assert species_from_annotation(None, "").label == "Unknown species"


def test_user_spot_from_snapshot_capitalizes_label():
	spot = user_spot_from_snapshot(Snapshot("s1", {"species": "hedgehog", "user_id": "u1"}))
	assert spot.species.label == "Hedgehog"
	assert spot.location_name == "Unknown location"
	assert spot.daily_steps == 0


# =====================================
# Submission flow
# =====================================
@pytest.mark.asyncio
async def test_submit_identified_sighting(sightings, document_store, detector, notifications):
	"""Upload, identify with the profile's country and record the sighting"""
	await document_store.set("users", "user-1", {"username": "ranger", "country": "KEN", "totalSpots": 2})

	result = await sightings.submit(draft(azimuth=87.5, daily_steps=4200), user_id="user-1")

	assert result.success is True
	assert result.message == "Identified: Red fox"
	assert b"KEN" in detector.requests[0].content

	spot = await document_store.get("spots", result.sighting_id)
	assert spot.get("image_id") == result.image_id
	assert spot.get("user_id") == "user-1"
	assert spot.get("geohash") == geohash.encode(45.07, 7.68)
	assert spot.get("species")["label"] == "red fox"
	assert spot.get("species")["taxonomy"]["class"] == "mammalia"
	assert spot.get("sensor_data") == {"compass_azimuth": 87.5}
	assert spot.get("daily_steps") == 4200
	assert spot.get("timestamp") is not None

	assert (await document_store.get("users", "user-1")).get("totalSpots") == 3
	assert [n.message for n in notifications.drain()] == ["Identified: Red fox"]


@pytest.mark.asyncio
async def test_submit_survives_identification_failure(sightings, document_store, detector):
	"""Identification is optional; the hint is used when it fails"""
	detector.status_code = 503

	result = await sightings.submit(draft(species_hint="badger"), user_id="user-1")

	assert result.success is True
	assert result.message == "Spot added!"
	spot = await document_store.get("spots", result.sighting_id)
	assert spot.get("species") == {"label": "badger", "taxonomy": {}}
	assert b"ITA" in detector.requests[0].content
	assert (await document_store.get("users", "user-1")).get("totalSpots") == 1


@pytest.mark.asyncio
async def test_submit_anonymous(sightings, document_store):
	result = await sightings.submit(draft())

	assert result.success is True
	spot = await document_store.get("spots", result.sighting_id)
	assert spot.get("user_id") == "anonymous"
	assert await document_store.count(Query("users")) == 0


@pytest.mark.asyncio
async def test_submit_upload_failure(document_store, client, notifications):
	"""A rejected upload resolves to a failed result and writes nothing"""
	async def no_token():
		return None

	images = ImageServiceClient("http://test", token_provider=no_token, http_client=client)
	service = SightingService(document_store, images, notifications)

	result = await service.submit(draft(), user_id="user-1")

	assert result.success is False
	assert result.message.startswith("Error: Upload failed (401)")
	assert await document_store.count(Query("spots")) == 0
	notification = await notifications.next()
	assert notification.success is False


# =====================================
# Own sightings
# =====================================
@pytest.mark.asyncio
async def test_list_own_page_newest_first(sightings, document_store):
	start = datetime(2024, 5, 1, tzinfo=timezone.utc)
	for day in range(3):
		await document_store.add("spots", {"user_id": "user-1", "species": f"bird {day}", "timestamp": start + timedelta(days=day)})
	await document_store.add("spots", {"user_id": "user-2", "species": "other", "timestamp": start})

	first, cursor = await sightings.list_own_page("user-1", page_size=2)
	second, cursor = await sightings.list_own_page("user-1", cursor=cursor, page_size=2)
	third, cursor = await sightings.list_own_page("user-1", cursor=cursor, page_size=2)

	assert [s.species.label for s in first] == ["Bird 2", "Bird 1"]
	assert [s.species.label for s in second] == ["Bird 0"]
	assert third == []
	assert cursor is None


@pytest.mark.asyncio
async def test_delete_and_restore_sighting(sightings, document_store):
	await document_store.set("users", "user-1", {"username": "ranger", "totalSpots": 1})
	spot_id = await document_store.add("spots", {
		"user_id": "user-1",
		"species": {"label": "lynx", "taxonomy": {}},
		"latitude": 46.5,
		"longitude": 11.3,
		"timestamp": datetime(2024, 6, 1, tzinfo=timezone.utc),
	})
	spot = user_spot_from_snapshot(await document_store.get("spots", spot_id))

	await sightings.delete_sighting(spot)
	assert await document_store.get("spots", spot_id) is None
	assert (await document_store.get("users", "user-1")).get("totalSpots") == 0

	await sightings.restore_sighting(spot)
	restored = await document_store.get("spots", spot_id)
	assert restored.get("species")["label"] == "Lynx"
	assert restored.get("geohash") == geohash.encode(46.5, 11.3)
	assert (await document_store.get("users", "user-1")).get("totalSpots") == 1


@pytest.mark.asyncio
async def test_update_description(sightings, document_store):
	spot_id = await document_store.add("spots", {"description": "old"})
	await sightings.update_description(spot_id, "seen at dusk")
	assert (await document_store.get("spots", spot_id)).get("description") == "seen at dusk"


# =====================================
# Image service client
# =====================================
@pytest.mark.asyncio
async def test_image_client_round_trip(image_client):
	image_id = await image_client.upload(PHOTO, "badger.jpg", "image/jpeg")

	assert await image_client.fetch(image_id) == PHOTO
	assert image_client.image_url(image_id) == f"http://test/images/{image_id}"

	await image_client.delete(image_id)
	with pytest.raises(ImageServiceError) as exc_info:
		await image_client.fetch(image_id)
	assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_image_client_unreachable():
	def handler(request: httpx.Request) -> httpx.Response:
		raise httpx.ConnectTimeout("timed out")

	http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://images.test")
	images = ImageServiceClient("http://images.test", http_client=http_client)

	with pytest.raises(ImageServiceError):
		await images.upload(PHOTO)
	await http_client.aclose()


# =====================================
# Notifications
# =====================================
@pytest.mark.asyncio
async def test_notifications_keep_emission_order():
	channel = NotificationChannel()
	for message in ("first", "second", "third"):
		channel.emit(message)

	received = []
	async for notification in channel.listen():
		received.append(notification.message)
		if len(received) == 3:
			break

	assert received == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_notifications_single_consumer():
	channel = NotificationChannel()
	channel.emit("hello")

	first = channel.listen()
	assert (await first.__anext__()).message == "hello"

	second = channel.listen()
	with pytest.raises(RuntimeError):
		await asyncio.wait_for(second.__anext__(), timeout=1)
	await first.aclose()

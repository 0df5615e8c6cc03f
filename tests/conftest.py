import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["IDENTITY_PROVIDER"] = "jwt"
os.environ["ANIMALDETECT_API_KEY"] = "test-detector-key"
os.environ["DEBUG"] = "false"

import time
from typing import AsyncGenerator, Optional

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from wildspot.api.dependencies import get_blob_storage, get_identification_service
from wildspot.auth.dependencies import get_identity_provider
from wildspot.auth.identity import JWTIdentityProvider
from wildspot.database import get_session, init_db
from wildspot.documents import SqlDocumentStore
from wildspot.main import app
from wildspot.services.blob_storage import LocalBlobStorage
from wildspot.services.identification_service import IdentificationService

TEST_JWT_SECRET = "test-secret"
DETECTOR_URL = "https://detector.test/api/v1/detect"


def make_token(sub: Optional[str] = "user-1", secret: str = TEST_JWT_SECRET, expires_in: int = 3600, **claims) -> str:
	payload = {"iat": int(time.time()), "exp": int(time.time()) + expires_in, **claims}
	if sub is not None:
		payload["sub"] = sub
	return jwt.encode(payload, secret, algorithm="HS256")


class FakeDetector:
	"""Stand-in for the species detection API, served through httpx.MockTransport"""

	def __init__(self):
		self.status_code = 200
		self.payload = {
			"annotations": [
				{
					"label": "red fox",
					"score": 0.93,
					"taxonomy": {
						"id": "t-1",
						"class": "mammalia",
						"order": "carnivora",
						"family": "canidae",
						"genus": "vulpes",
						"species": "vulpes vulpes",
					},
				}
			]
		}
		self.raw_body: Optional[bytes] = None
		self.fail_with: Optional[Exception] = None
		self.requests = []

	def handler(self, request: httpx.Request) -> httpx.Response:
		self.requests.append(request)
		if self.fail_with is not None:
			raise self.fail_with
		if self.raw_body is not None:
			return httpx.Response(self.status_code, content=self.raw_body)
		return httpx.Response(self.status_code, json=self.payload)


@pytest.fixture
async def engine(tmp_path):
	"""File-backed SQLite so concurrent sessions see each other's commits"""
	engine = create_async_engine(
		f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
		connect_args={"timeout": 30},
	)
	await init_db(bind=engine)

	yield engine

	await engine.dispose()


@pytest.fixture
def session_factory(engine):
	return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
	async with session_factory() as session:
		yield session


@pytest.fixture
def blob_storage(tmp_path) -> LocalBlobStorage:
	return LocalBlobStorage(str(tmp_path / "uploads"))


@pytest.fixture
def document_store(session_factory) -> SqlDocumentStore:
	return SqlDocumentStore(session_factory)


@pytest.fixture
def detector() -> FakeDetector:
	return FakeDetector()


@pytest.fixture
async def identification_service(detector: FakeDetector):
	service = IdentificationService(
		DETECTOR_URL,
		"test-detector-key",
		http_client=httpx.AsyncClient(transport=httpx.MockTransport(detector.handler)),
	)
	yield service
	await service.aclose()


@pytest.fixture
async def client(session_factory, blob_storage, identification_service) -> AsyncGenerator[AsyncClient, None]:
	"""Test client with every external dependency pointed at test doubles"""

	async def override_get_session():
		async with session_factory() as session:
			try:
				yield session
				await session.commit()
			except Exception:
				await session.rollback()
				raise

	app.dependency_overrides[get_session] = override_get_session
	app.dependency_overrides[get_blob_storage] = lambda: blob_storage
	app.dependency_overrides[get_identity_provider] = lambda: JWTIdentityProvider(TEST_JWT_SECRET)
	app.dependency_overrides[get_identification_service] = lambda: identification_service

	async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
		yield client

	app.dependency_overrides.clear()


@pytest.fixture
def auth_token() -> str:
	return make_token("user-1", email="ranger@example.com")


@pytest.fixture
def auth_headers(auth_token: str) -> dict:
	return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def token_factory():
	return make_token

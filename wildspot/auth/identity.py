import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

import httpx
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from wildspot.config import Settings

logger = logging.getLogger(__name__)


class Identity(BaseModel):
	"""Verified caller, as vouched for by the identity provider"""
	user_id: str
	email: Optional[str] = None
	claims: Dict[str, Any] = Field(default_factory=dict)


class IdentityProvider(ABC):
	"""External collaborator that turns a bearer token into an identity"""

	@abstractmethod
	async def verify(self, token: str) -> Optional[Identity]:
		"""Return the identity behind ``token``, or None when it is not valid"""

	async def aclose(self) -> None:
		return None


class JWTIdentityProvider(IdentityProvider):
	"""Verify tokens signed with a shared secret or a static public key"""

	def __init__(
			self,
			key: Union[str, Dict[str, Any], None],
			algorithms: Optional[List[str]] = None,
			audience: Optional[str] = None,
			issuer: Optional[str] = None,
	):
		self.key = key
		self.algorithms = algorithms or ["HS256"]
		self.audience = audience
		self.issuer = issuer

	async def verify(self, token: str) -> Optional[Identity]:
		return self._decode(token, self.key)

	def _decode(self, token: str, key) -> Optional[Identity]:
		if not key:
			logger.error("No verification key configured, rejecting token")
			return None
		try:
			payload = jwt.decode(
				token,
				key,
				algorithms=self.algorithms,
				audience=self.audience,
				issuer=self.issuer,
				options={"verify_aud": self.audience is not None},
			)
		except JWTError as e:
			logger.warning(f"JWT verification failed: {e}")
			return None

		user_id = payload.get("sub") or payload.get("user_id")
		if not user_id:
			logger.warning("Token verified but carries no subject")
			return None
		return Identity(user_id=str(user_id), email=payload.get("email"), claims=payload)


class JWKSIdentityProvider(JWTIdentityProvider):
	"""Verify RS256 tokens against a published JWK set (e.g. Firebase ID tokens).

	The key set is fetched lazily over HTTP and cached for ``cache_seconds``.
	"""

	def __init__(
			self,
			jwks_url: str,
			audience: Optional[str] = None,
			issuer: Optional[str] = None,
			algorithms: Optional[List[str]] = None,
			cache_seconds: int = 3600,
			http_client: Optional[httpx.AsyncClient] = None,
			timeout: Optional[httpx.Timeout] = None,
	):
		super().__init__(key=None, algorithms=algorithms or ["RS256"], audience=audience, issuer=issuer)
		self.jwks_url = jwks_url
		self.cache_seconds = cache_seconds
		self.http_client = http_client or httpx.AsyncClient(timeout=timeout or httpx.Timeout(10.0, connect=5.0))
		self._jwks: Optional[Dict[str, Any]] = None
		self._fetched_at = 0.0
		self._lock = asyncio.Lock()

	async def get_jwks(self) -> Dict[str, Any]:
		async with self._lock:
			if self._jwks is None or time.monotonic() - self._fetched_at > self.cache_seconds:
				response = await self.http_client.get(self.jwks_url)
				response.raise_for_status()
				self._jwks = response.json()
				self._fetched_at = time.monotonic()
				logger.info(f"JWK set refreshed from {self.jwks_url}")
			return self._jwks

	async def verify(self, token: str) -> Optional[Identity]:
		try:
			jwks = await self.get_jwks()
		except (httpx.HTTPError, ValueError) as e:
			logger.error(f"Could not load JWK set from {self.jwks_url}: {e}")
			return None
		return self._decode(token, jwks)

	async def aclose(self) -> None:
		await self.http_client.aclose()


def build_identity_provider(config: Settings) -> IdentityProvider:
	if config.IDENTITY_PROVIDER == "jwks":
		return JWKSIdentityProvider(
			config.JWKS_URL,
			audience=config.JWT_AUDIENCE,
			issuer=config.JWT_ISSUER,
			cache_seconds=config.JWKS_CACHE_SECONDS,
			timeout=httpx.Timeout(config.HTTP_READ_TIMEOUT, connect=config.HTTP_CONNECT_TIMEOUT),
		)
	if config.IDENTITY_PROVIDER != "jwt":
		raise ValueError(f"Unknown IDENTITY_PROVIDER: {config.IDENTITY_PROVIDER}")
	return JWTIdentityProvider(
		config.JWT_SECRET,
		algorithms=[config.JWT_ALGORITHM],
		audience=config.JWT_AUDIENCE,
		issuer=config.JWT_ISSUER,
	)

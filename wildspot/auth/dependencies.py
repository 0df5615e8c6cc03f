import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from wildspot.auth.identity import Identity, IdentityProvider, build_identity_provider
from wildspot.config import settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

_identity_provider: Optional[IdentityProvider] = None


def get_identity_provider() -> IdentityProvider:
	"""Process-wide identity provider, built on first use"""
	global _identity_provider
	if _identity_provider is None:
		_identity_provider = build_identity_provider(settings)
	return _identity_provider


async def close_identity_provider():
	global _identity_provider
	if _identity_provider is not None:
		await _identity_provider.aclose()
		_identity_provider = None


async def get_current_identity(
		request: Request,
		credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
		provider: IdentityProvider = Depends(get_identity_provider),
) -> Identity:
	"""Require a verified bearer token"""
	if credentials is None:
		raise HTTPException(
			status_code=status.HTTP_401_UNAUTHORIZED,
			detail="Unauthenticated",
			headers={"WWW-Authenticate": "Bearer"}
		)

	try:
		identity = await provider.verify(credentials.credentials)
	except Exception as e:
		logger.error(f"Identity provider failure: {e}")
		identity = None

	if identity is None:
		raise HTTPException(
			status_code=status.HTTP_403_FORBIDDEN,
			detail="Forbidden",
			headers={"WWW-Authenticate": 'Bearer error="invalid_token"'}
		)

	request.state.user_id = identity.user_id
	return identity


async def get_upload_identity(
		request: Request,
		credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
		provider: IdentityProvider = Depends(get_identity_provider),
) -> Optional[Identity]:
	"""Bearer token for uploads, unless anonymous ingestion is switched on"""
	if settings.ALLOW_ANONYMOUS_UPLOADS and credentials is None:
		return None
	return await get_current_identity(request, credentials, provider)


async def get_reader_identity(
		request: Request,
		credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
		provider: IdentityProvider = Depends(get_identity_provider),
) -> Optional[Identity]:
	"""Images are public unless PUBLIC_IMAGES is off"""
	if settings.PUBLIC_IMAGES:
		return None
	return await get_current_identity(request, credentials, provider)

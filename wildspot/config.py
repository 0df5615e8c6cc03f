from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv
load_dotenv()


class Settings(BaseSettings):
	# App
	APP_NAME: str = "Wildspot Image Store"
	APP_VERSION: str = "1.0.0"
	DEBUG: bool = False
	ENVIRONMENT: str = "development" # development, staging, production

	# Server
	HOST: str = "0.0.0.0"
	PORT: int = 8000
	WORKERS: int = 1
	SSL_CERT_PATH: Optional[str] = None
	SSL_KEY_PATH: Optional[str] = None

	# Database
	DATABASE_URL: str = "sqlite+aiosqlite:///./data/images.db"
	DB_POOL_SIZE: int = 20
	DB_MAX_OVERFLOW: int = 40
	DB_POOL_PRE_PING: bool = True
	DB_ECHO: bool = False
	AUTO_CREATE_TABLES: bool = True

	# Storage
	DATA_DIR: str = "./data"
	STORAGE_BACKEND: str = "local" # local, s3
	STORAGE_DIR: str = "./data/uploads"
	MAX_UPLOAD_SIZE: int = 20 * 1024 * 1024  # 20MiB

	# S3 Storage
	S3_ENDPOINT_URL: Optional[str] = None
	AWS_ACCESS_KEY_ID: Optional[str] = None
	AWS_SECRET_ACCESS_KEY: Optional[str] = None
	S3_BUCKET_NAME: str = "wildspot-images"
	S3_REGION: Optional[str] = None
	S3_PREFIX: str = "uploads/"

	# Auth
	IDENTITY_PROVIDER: str = "jwt" # jwt, jwks
	JWT_SECRET: Optional[str] = None
	JWT_ALGORITHM: str = "HS256"
	JWT_AUDIENCE: Optional[str] = None
	JWT_ISSUER: Optional[str] = None
	JWKS_URL: str = "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
	JWKS_CACHE_SECONDS: int = 3600
	ALLOW_ANONYMOUS_UPLOADS: bool = False
	PUBLIC_IMAGES: bool = True

	# Outbound HTTP
	HTTP_CONNECT_TIMEOUT: float = 5.0
	HTTP_READ_TIMEOUT: float = 30.0

	# Species identification
	ANIMALDETECT_API_URL: str = "https://www.animaldetect.com/api/v1/detect"
	ANIMALDETECT_API_KEY: Optional[str] = None

	# CORS
	CORS_ORIGINS: List[str] = ["*"]

	# Security
	ALLOWED_HOSTS: List[str] = ["*"]

	# Monitoring
	EXPOSE_METRICS: bool = True

	model_config = SettingsConfigDict(
		env_file=".env",
		env_file_encoding="utf-8",
		case_sensitive=True,
		extra="ignore",
	)


@lru_cache()
def get_settings() -> Settings:
	return Settings()


settings = get_settings()

import contextlib
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Iterator, Optional

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from wildspot.config import Settings, settings as default_settings
from wildspot.core.exceptions import BlobNotFoundError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class BlobStorage(ABC):
    """Flat namespace of immutable blobs addressed by file name"""

    @abstractmethod
    def ensure_ready(self) -> None:
        """Create the backing directory / bucket if absent (idempotent)"""

    @abstractmethod
    def write(self, filename: str, data: bytes, content_type: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def exists(self, filename: str) -> bool:
        ...

    @abstractmethod
    def open_stream(self, filename: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Open the blob eagerly and return an iterator over its bytes.

        Raises BlobNotFoundError when the blob is gone, so callers can tell a
        missing file apart before any response byte is sent.
        """

    @abstractmethod
    def delete(self, filename: str) -> bool:
        ...

    @abstractmethod
    def check_connection(self) -> bool:
        ...

    def read(self, filename: str) -> bytes:
        return b"".join(self.open_stream(filename))

    @staticmethod
    def validate_name(filename: str) -> str:
        if not filename or os.path.basename(filename) != filename or filename.startswith("."):
            raise ValueError(f"Unsafe blob name: {filename!r}")
        return filename


class LocalBlobStorage(BlobStorage):
    """One file per blob inside a dedicated directory"""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        self._ready = False

    def ensure_ready(self) -> None:
        if not self._ready:
            os.makedirs(self.root, exist_ok=True)
            self._ready = True

    def path_for(self, filename: str) -> str:
        return os.path.join(self.root, self.validate_name(filename))

    def write(self, filename: str, data: bytes, content_type: Optional[str] = None) -> None:
        self.ensure_ready()
        path = self.path_for(filename)
        # Write aside then rename: concurrent writers of the same id race on
        # os.replace, never on a half-written file.
        fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_path)
            raise

    def exists(self, filename: str) -> bool:
        return os.path.isfile(self.path_for(filename))

    def open_stream(self, filename: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        try:
            handle = open(self.path_for(filename), "rb")
        except FileNotFoundError:
            raise BlobNotFoundError(filename)
        return self._iter_file(handle, chunk_size)

    @staticmethod
    def _iter_file(handle, chunk_size: int) -> Iterator[bytes]:
        with handle:
            while True:
                chunk = handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def delete(self, filename: str) -> bool:
        try:
            os.remove(self.path_for(filename))
            return True
        except FileNotFoundError:
            return False

    def check_connection(self) -> bool:
        try:
            self.ensure_ready()
            return os.access(self.root, os.W_OK)
        except OSError as e:
            logger.error(f"Local storage check failed: {e}")
            return False


class S3BlobStorage(BlobStorage):
    """Blobs kept as objects under a key prefix of an S3-compatible bucket"""

    def __init__(self, bucket_name: str, prefix: str = "", client=None, region: Optional[str] = None):
        self.bucket_name = bucket_name
        self.prefix = prefix
        self.region = region
        self.s3_client = client
        self._ready = False

    @classmethod
    def from_settings(cls, config: Settings) -> "S3BlobStorage":
        client = boto3.client(
            "s3",
            endpoint_url=config.S3_ENDPOINT_URL,
            aws_access_key_id=config.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY,
            region_name=config.S3_REGION,
            config=BotoConfig(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
            ),
        )
        return cls(config.S3_BUCKET_NAME, prefix=config.S3_PREFIX, client=client, region=config.S3_REGION)

    def key_for(self, filename: str) -> str:
        return f"{self.prefix}{self.validate_name(filename)}"

    def ensure_ready(self) -> None:
        """Create the bucket if it does not exist"""
        if self._ready:
            return
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            if e.response["Error"]["Code"] not in _NOT_FOUND_CODES:
                logger.error(f"Bucket check failed for {self.bucket_name}: {e}")
                raise
            create_params = {"Bucket": self.bucket_name}
            if self.region and self.region != "us-east-1":
                create_params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
            self.s3_client.create_bucket(**create_params)
            logger.info(f"Bucket {self.bucket_name} created")
        self._ready = True

    def write(self, filename: str, data: bytes, content_type: Optional[str] = None) -> None:
        self.ensure_ready()
        params = {"Bucket": self.bucket_name, "Key": self.key_for(filename), "Body": data}
        if content_type:
            params["ContentType"] = content_type
        self.s3_client.put_object(**params)

    def exists(self, filename: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self.key_for(filename))
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in _NOT_FOUND_CODES:
                return False
            raise

    def open_stream(self, filename: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=self.key_for(filename))
        except ClientError as e:
            if e.response["Error"]["Code"] in _NOT_FOUND_CODES:
                raise BlobNotFoundError(filename)
            raise
        return response["Body"].iter_chunks(chunk_size)

    def delete(self, filename: str) -> bool:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self.key_for(filename))
            return True
        except ClientError as e:
            logger.error(f"S3 delete failed for {filename}: {e}")
            return False

    def check_connection(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 health check failed: {e}")
            return False


def build_blob_storage(config: Settings = default_settings) -> BlobStorage:
    if config.STORAGE_BACKEND == "s3":
        return S3BlobStorage.from_settings(config)
    if config.STORAGE_BACKEND != "local":
        raise ValueError(f"Unknown STORAGE_BACKEND: {config.STORAGE_BACKEND}")
    return LocalBlobStorage(config.STORAGE_DIR)

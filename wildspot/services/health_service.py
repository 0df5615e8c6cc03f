from typing import Dict, Any, Optional
from datetime import datetime, timezone
import platform

import psutil
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from wildspot.database import check_db_connection
from wildspot.models import StoredImage
from wildspot.services.blob_storage import BlobStorage, S3BlobStorage
import logging

logger = logging.getLogger(__name__)


async def _database_report(session: Optional[AsyncSession]) -> Dict[str, Any]:
    healthy = await check_db_connection(session)
    report = {"healthy": healthy, "status": "connected" if healthy else "disconnected"}
    if healthy and session is not None:
        try:
            report["images"] = await image_index_stats(session)
        except SQLAlchemyError as e:
            logger.warning(f"Image index stats unavailable: {e}")
    return report


async def _storage_report(blobs: BlobStorage) -> Dict[str, Any]:
    is_s3 = isinstance(blobs, S3BlobStorage)
    try:
        healthy = await run_in_threadpool(blobs.check_connection)
    except Exception as e:
        logger.error(f"Blob storage check raised: {e}")
        return {"healthy": False, "error": str(e)}

    report = {
        "healthy": healthy,
        "type": "S3-compatible" if is_s3 else "local",
        "status": "connected" if healthy else "disconnected",
    }
    if is_s3:
        report["bucket"] = blobs.bucket_name
    return report


def _host_report() -> Dict[str, Any]:
    try:
        return {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage("/").percent,
            "python_version": platform.python_version(),
            "uptime_seconds": datetime.now(timezone.utc).timestamp() - psutil.boot_time(),
        }
    except (psutil.Error, OSError) as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {}


async def image_index_stats(session: AsyncSession) -> Dict[str, int]:
    """Number of indexed images and their total size in bytes"""
    result = await session.execute(
        select(func.count(StoredImage.id), func.coalesce(func.sum(StoredImage.size_bytes), 0))
    )
    count, total = result.one()
    return {"count": int(count), "bytes": int(total)}


async def get_detailed_health(blobs: BlobStorage, session: Optional[AsyncSession] = None) -> Dict[str, Any]:
    """
    Report on the database, the blob storage and the host

    ``overall_health`` is ``degraded`` as soon as one service is unhealthy;
    host metrics never affect it.
    """
    services = {
        "database": await _database_report(session),
        "storage": await _storage_report(blobs),
    }
    healthy = all(service.get("healthy", False) for service in services.values())

    return {
        "services": services,
        "system": _host_report(),
        "overall_health": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

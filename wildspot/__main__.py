import logging
import os

import uvicorn

from wildspot.config import settings

logger = logging.getLogger(__name__)


def main():
    ssl_options = {}
    if settings.SSL_CERT_PATH and settings.SSL_KEY_PATH \
            and os.path.exists(settings.SSL_CERT_PATH) and os.path.exists(settings.SSL_KEY_PATH):
        ssl_options = {"ssl_certfile": settings.SSL_CERT_PATH, "ssl_keyfile": settings.SSL_KEY_PATH}
        logger.info(f"Serving HTTPS on port {settings.PORT}")
    else:
        logger.info(f"No TLS certificate configured, serving HTTP on port {settings.PORT}")

    uvicorn.run(
        "wildspot.main:app",
        host=settings.HOST,
        port=settings.PORT,
        workers=settings.WORKERS,
        reload=settings.DEBUG,
        **ssl_options,
    )


if __name__ == "__main__":
    main()

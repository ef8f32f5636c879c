"""Module executed when running ``python -m jellyvr``."""

from __future__ import annotations

import logging

import uvicorn

from app.config import settings

logger = logging.getLogger(__name__)


def main() -> None:
    """Serve the gateway with uvicorn on the configured host and port."""

    logger.info(
        "Starting %s on %s:%s, proxying %s",
        settings.app_name,
        settings.server_host,
        settings.server_port,
        settings.jellyfin_base_url,
    )
    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
        reload=settings.environment == "development",
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()

"""Create the ``kv_records`` table used by the PostgreSQL storage driver."""

from __future__ import annotations

import logging

from gmassist.backend.config import configure_logging, load_settings
from gmassist.backend.drivers import PostgresStorageDriver

logger = logging.getLogger(__name__)


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.database_url:
        raise RuntimeError("GMASSIST_DATABASE_URL is required for migration")

    PostgresStorageDriver(database_url=settings.database_url).ensure_schema()
    logger.info("kv_records schema is up to date")


if __name__ == "__main__":
    main()

"""Configuration helpers for backend runtime."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class BackendSettings:
    database_url: str | None
    data_dir: str | None
    debounce_ms: int
    namespace: str
    host: str
    port: int
    log_level: str


def load_settings() -> BackendSettings:
    port_raw = os.getenv("GMASSIST_PORT", "8000")
    debounce_raw = os.getenv("GMASSIST_DEBOUNCE_MS", "300")
    return BackendSettings(
        database_url=os.getenv("GMASSIST_DATABASE_URL"),
        data_dir=os.getenv("GMASSIST_DATA_DIR"),
        debounce_ms=int(debounce_raw),
        namespace=os.getenv("GMASSIST_NAMESPACE", "gma"),
        host=os.getenv("GMASSIST_HOST", "127.0.0.1"),
        port=int(port_raw),
        log_level=os.getenv("GMASSIST_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

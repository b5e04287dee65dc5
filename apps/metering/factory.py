from __future__ import annotations

import json
import logging
import os

from apps.config.settings import Settings, settings as default_settings

from .store import InMemoryMeteringStore, MeteringStore, SQLiteMeteringStore

log = logging.getLogger(__name__)


def build_store(cfg: Settings | None = None) -> MeteringStore:
    """
    Priority:
    1) ENV CAMPMETER_METERING_STORE=json {"type":"sqlite","path":"..."} or {"type":"memory"}
    2) settings.STORE_BACKEND / settings.SQLITE_PATH
    3) default: InMemory
    """
    cfg = cfg or default_settings
    spec = os.getenv("CAMPMETER_METERING_STORE")
    backend, path = cfg.STORE_BACKEND.lower(), cfg.SQLITE_PATH
    if spec:
        try:
            parsed = json.loads(spec)
            backend = (parsed.get("type") or "memory").lower()
            path = parsed.get("path") or path
        except (ValueError, AttributeError):
            log.warning("store_spec_invalid", extra={"spec": spec})
            backend = "memory"
    if backend == "sqlite":
        log.info("store_backend", extra={"backend": "sqlite", "path": path})
        return SQLiteMeteringStore(path)
    return InMemoryMeteringStore()


__all__ = ["build_store"]

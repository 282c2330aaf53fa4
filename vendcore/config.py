"""Runtime settings read from the environment."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional

from .engine import DEFAULT_RETRY_BUDGET
from .errors import InvalidArgumentError
from .models import DEFAULT_SLOTS

STORE_BACKENDS = ("memory", "mongo")
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass(frozen=True)
class Settings:
    """Service configuration.

    Environment variables:
        VENDCORE_STORE: "memory" (default) or "mongo"
        MONGODB_URL: MongoDB connection string
        MONGODB_DATABASE: Database name (default: vendingMachine)
        MONGODB_TIMEOUT_MS: Server selection timeout
        VENDCORE_RETRY_BUDGET: Attempts per conditional write (default: 3)
        VENDCORE_SLOTS: Comma-separated slot numbers (default: 1,2)
        TRANSPORT_TYPE: "tcp" (default) or "uds"
        PORT: TCP port (default: 50060)
        UDS_BASE_PATH: Base directory for sockets (default: /tmp/vendcore)
        LOG_LEVEL: Minimum log level (default: info)
    """

    store_backend: str = "memory"
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_database: str = "vendingMachine"
    mongodb_timeout_ms: int = 5000
    retry_budget: int = DEFAULT_RETRY_BUDGET
    slots: frozenset[int] = field(default_factory=lambda: DEFAULT_SLOTS)
    transport: str = "tcp"
    port: int = 50060
    uds_base_path: str = "/tmp/vendcore"
    log_level: str = "info"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        backend = env.get("VENDCORE_STORE", "memory").lower()
        if backend not in STORE_BACKENDS:
            raise InvalidArgumentError(f"VENDCORE_STORE must be one of: {', '.join(STORE_BACKENDS)}")

        transport = env.get("TRANSPORT_TYPE", "tcp").lower()
        if transport not in ("tcp", "uds"):
            raise InvalidArgumentError("TRANSPORT_TYPE must be tcp or uds")

        log_level = env.get("LOG_LEVEL", "info").lower()
        if log_level not in LOG_LEVELS:
            raise InvalidArgumentError(f"LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)}")

        retry_budget = _int_var(env, "VENDCORE_RETRY_BUDGET", DEFAULT_RETRY_BUDGET)
        if retry_budget < 1:
            raise InvalidArgumentError("VENDCORE_RETRY_BUDGET must be at least 1")

        return cls(
            store_backend=backend,
            mongodb_url=env.get("MONGODB_URL", cls.mongodb_url),
            mongodb_database=env.get("MONGODB_DATABASE", cls.mongodb_database),
            mongodb_timeout_ms=_int_var(env, "MONGODB_TIMEOUT_MS", cls.mongodb_timeout_ms),
            retry_budget=retry_budget,
            slots=_slots_var(env, "VENDCORE_SLOTS"),
            transport=transport,
            port=_int_var(env, "PORT", cls.port),
            uds_base_path=env.get("UDS_BASE_PATH", cls.uds_base_path),
            log_level=log_level,
        )


def _int_var(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidArgumentError(f"{name} must be an integer", value=raw) from None


def _slots_var(env: Mapping[str, str], name: str) -> frozenset[int]:
    raw = env.get(name)
    if not raw:
        return DEFAULT_SLOTS
    try:
        slots = frozenset(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise InvalidArgumentError(f"{name} must be a comma-separated list of integers", value=raw) from None
    if not slots:
        raise InvalidArgumentError(f"{name} must name at least one slot")
    return slots

from __future__ import annotations

import hashlib
import logging
from typing import Any, MutableMapping

import structlog

# Never written to logs: transport identifiers and sign-in material
SECRET_KEYS = frozenset(
    {
        "client",
        "client_ip",
        "client_addr",
        "headers",
        "request_headers",
        "cookie",
        "signature",
        "siwe",
        "raw_message",
    }
)


def hash_address(address: str | None) -> str | None:
    """Stable pseudonym for a wallet address (case-insensitive)."""
    if not address:
        return None
    return hashlib.sha256(address.lower().encode("utf-8")).hexdigest()


def _lower_level(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]):
    level = event_dict.pop("levelname", None) or event_dict.get("level")
    if level:
        event_dict["level"] = str(level).lower()
    return event_dict


def _scrub(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]):
    for key in SECRET_KEYS.intersection(event_dict.keys()):
        del event_dict[key]
    # addresses are logged as hashes only
    if "address" in event_dict:
        event_dict["address_hash"] = hash_address(event_dict.pop("address"))
    return event_dict


def init_logging(level: str | None = None) -> None:
    """JSON logs via structlog on top of stdlib logging.

    Keys: ts, level, trace_id, address_hash, action, duration_ms, result, event.
    """
    lvl = logging.getLevelName((level or "INFO").upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO
    logging.basicConfig(level=lvl, format="%(message)s")
    # uvicorn's access log carries client IPs
    logging.getLogger("uvicorn.access").disabled = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            _lower_level,
            _scrub,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        cache_logger_on_first_use=True,
    )


def get_logger(**initial: Any) -> structlog.stdlib.BoundLogger:  # type: ignore[name-defined]
    return structlog.get_logger(**initial)

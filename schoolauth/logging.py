"""structlog setup shared by every schoolauth module.

Lines render as JSON unless ``LOG_JSON`` is off or ``LOG_DEV_MODE`` is on.
Each line carries the id of the HTTP request that produced it. Credential
fields are blanked and contact details masked before anything is rendered.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "schoolauth"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Inbound X-Request-ID values are echoed into headers and logs
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

_SECRET_MARKERS = ("password", "secret", "token", "cookie", "csrf", "authorization", "hash")
_CONTACT_MARKERS = ("email", "phone")
REDACTED = "[redacted]"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def current_request_id() -> Optional[str]:
    return request_id_var.get()


def set_request_id(candidate: Optional[str] = None) -> str:
    """Adopt the caller's request id when well formed, else mint one."""
    request_id = candidate if candidate and _REQUEST_ID_RE.match(candidate) else uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def _mask_contact(value: str) -> str:
    local, sep, domain = value.partition("@")
    if sep:
        return f"{local[:2]}***@{domain}"
    return "***" + value[-2:] if len(value) > 4 else "***"


def _add_request_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    request_id = current_request_id()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def _scrub(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key == "event" or value is None:
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS):
            event_dict[key] = REDACTED
        elif isinstance(value, str) and any(marker in lowered for marker in _CONTACT_MARKERS):
            event_dict[key] = _mask_contact(value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_context,
        _scrub,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_security_logger = get_logger(f"{SERVICE_NAME}.security")


def log_security_alert(event_type: str, risk_score: int, **context: Any) -> None:
    """Raise a high-risk security event on the dedicated security channel."""
    _security_logger.warning("security_alert", event_type=event_type, risk_score=risk_score, **context)

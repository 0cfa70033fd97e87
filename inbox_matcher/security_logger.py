"""
Security event log.

Cross-tenant attempts and API key rejections are written as one JSON object
per line to the ``security`` logger (and ``<log_dir>/security.log``). All
caller-supplied identifiers pass through ``sanitize_for_logging`` first so a
crafted tenant or actor id cannot forge log lines.
"""

import logging
import json
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, asdict, field

from inbox_matcher.text_utils import sanitize_for_logging

_MAX_ID_LENGTH = 100
_MAX_VALUE_LENGTH = 200

# Set by RequestLoggingMiddleware for the duration of one HTTP request
_request_id: ContextVar[str] = ContextVar("security_request_id", default="")
_source_ip: ContextVar[str] = ContextVar("security_source_ip", default="")


def _clean(value: Any, limit: int = _MAX_ID_LENGTH) -> str:
    if value is None or value == "":
        return ""
    cleaned = sanitize_for_logging(str(value))
    return cleaned if len(cleaned) <= limit else cleaned[:limit] + "...(truncated)"


def _clean_context(context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    cleaned = {}
    for key, value in (context or {}).items():
        if value is None or isinstance(value, (bool, int, float)):
            cleaned[_clean(key)] = value
        elif isinstance(value, dict):
            cleaned[_clean(key)] = _clean_context(value)
        else:
            cleaned[_clean(key)] = _clean(value, _MAX_VALUE_LENGTH)
    return cleaned


@dataclass
class SecurityEvent:
    event_type: str  # TENANT_MISMATCH, API_KEY_REJECTED
    severity: str    # WARNING, ERROR, CRITICAL
    tenant_id: str = ""
    actor_id: str = ""
    resource_type: str = ""
    resource_id: str = ""
    source: str = ""
    request_id: str = ""
    source_ip: str = ""
    additional_context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        payload = asdict(self)
        payload["context"] = payload.pop("additional_context")
        return json.dumps(payload, ensure_ascii=False)


class SecurityLogger:
    """Writes ``SecurityEvent`` records to the ``security`` logger."""

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.WARNING,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        self.logger = logging.getLogger('security')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()

        formatter = logging.Formatter('%(asctime)s - SECURITY - %(levelname)s - %(message)s')
        handlers = []
        if enable_file:
            path = Path(log_dir)
            path.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(path / "security.log", encoding='utf-8'))
        if enable_console:
            handlers.append(logging.StreamHandler())
        for handler in handlers:
            handler.setLevel(log_level)
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def set_request_context(self, request_id: Optional[str] = None, source_ip: str = "") -> str:
        """Attach a request id and client address to events logged from this context."""
        rid = request_id or f"REQ-{uuid.uuid4().hex[:8]}"
        _request_id.set(_clean(rid))
        _source_ip.set(_clean(source_ip))
        return rid

    def clear_request_context(self) -> None:
        _request_id.set("")
        _source_ip.set("")

    def log_security_event(
        self,
        event_type: str,
        severity: str = "ERROR",
        tenant_id: str = "",
        actor_id: str = "",
        resource_type: str = "",
        resource_id: str = "",
        source: str = "",
        blocked: bool = True,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> SecurityEvent:
        context = _clean_context(additional_context)
        context['blocked'] = blocked

        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            tenant_id=_clean(tenant_id),
            actor_id=_clean(actor_id),
            resource_type=resource_type,
            resource_id=_clean(resource_id),
            source=source,
            request_id=_request_id.get(),
            source_ip=_source_ip.get(),
            additional_context=context
        )
        level = getattr(logging, severity, logging.WARNING)
        self.logger.log(level, event.to_json())
        return event

    def log_tenant_mismatch(
        self,
        caller_tenant_id: str,
        owner_tenant_id: str,
        actor_id: str,
        resource_type: str,
        resource_id: str,
        action: str
    ) -> SecurityEvent:
        """Caller tried to read or change a resource owned by another tenant."""
        return self.log_security_event(
            event_type="TENANT_MISMATCH",
            severity="ERROR",
            tenant_id=caller_tenant_id,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            source=f"reconciliation.{action}",
            additional_context={"owner_tenant_id": owner_tenant_id, "action": action}
        )

    def log_api_key_rejected(self, reason: str, path: str = "") -> SecurityEvent:
        return self.log_security_event(
            event_type="API_KEY_REJECTED",
            severity="WARNING",
            source="api.verify_api_key",
            additional_context={"reason": reason, "path": path}
        )


_security_logger: Optional[SecurityLogger] = None


def get_security_logger(
    log_dir: str = "logs",
    enable_console: bool = False,
    enable_file: bool = True
) -> SecurityLogger:
    global _security_logger
    if _security_logger is None:
        _security_logger = SecurityLogger(
            log_dir=log_dir,
            enable_console=enable_console,
            enable_file=enable_file
        )
    return _security_logger


def reset_security_logger() -> None:
    global _security_logger
    _security_logger = None

"""
Logging configuration for otagate.

Application logs are emitted as one JSON object per line. Security events
(grants issued, downloads allowed or refused, integrity faults) go through
the ``otagate.audit`` logger with their fields attached under
``extra_fields``.
"""

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .security import accept_request_id, sanitize_for_logging

# Request ID of the HTTP request being handled, empty outside a request
request_id_var: ContextVar[str] = ContextVar('otagate_request_id', default='')

AUDIT_LOGGER_NAME = "otagate.audit"


class StructuredFormatter(logging.Formatter):
    """Render records as single-line JSON for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.module}:{record.funcName}:{record.lineno}"

        current = request_id_var.get()
        if current:
            entry["request_id"] = current
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(entry, default=str)


class AuditLogger:
    """
    Security event log.

    Every grant issued and every download decision is recorded here. Deny
    reasons are only ever visible in this log, never to the client.
    """

    def __init__(self, name: str = AUDIT_LOGGER_NAME):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **fields) -> None:
        message = fields.pop("message", event_type)
        payload = {"event_type": event_type, **sanitize_for_logging(fields)}
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        self._logger.log(level, "%s: %s", event_type, message, extra={"extra_fields": payload})

    def update_check(
        self,
        subject: str,
        platform_id: str,
        installed_version: Optional[str],
        outcome: str
    ) -> None:
        """Log the outcome of an update check."""
        self._log(
            logging.INFO,
            "UPDATE_CHECK",
            subject=subject,
            platform_id=platform_id,
            installed_version=installed_version,
            outcome=outcome,
            message=f"Update check for {platform_id}: {outcome}"
        )

    def grant_issued(
        self,
        subject: str,
        resource_path: str,
        kid: str,
        expires_at: int
    ) -> None:
        self._log(
            logging.INFO,
            "GRANT_ISSUED",
            subject=subject,
            resource_path=resource_path,
            kid=kid,
            expires_at=expires_at,
            message=f"Grant issued for {resource_path}"
        )

    def auth_failed(self, reason: str, platform_id: Optional[str] = None) -> None:
        self._log(
            logging.WARNING,
            "AUTH_FAILED",
            reason=reason,
            platform_id=platform_id,
            message=f"Caller authentication failed: {reason}"
        )

    def download_allowed(self, resource_path: str, subject: str, kid: str) -> None:
        self._log(
            logging.INFO,
            "DOWNLOAD_ALLOWED",
            resource_path=resource_path,
            subject=subject,
            kid=kid,
            message=f"Serving {resource_path}"
        )

    def download_denied(
        self,
        resource_path: str,
        reason: str,
        subject: Optional[str] = None
    ) -> None:
        """Log a refused download together with the specific reason."""
        self._log(
            logging.WARNING,
            "DOWNLOAD_DENIED",
            resource_path=resource_path,
            reason=reason,
            subject=subject,
            message=f"Blocked access to {resource_path}: {reason}"
        )

    def object_missing(self, resource_path: str, subject: str) -> None:
        # A valid grant for a missing object means metadata and storage diverged
        self._log(
            logging.ERROR,
            "OBJECT_MISSING",
            resource_path=resource_path,
            subject=subject,
            message=f"Object missing despite valid grant: {resource_path}"
        )

    def integrity_fault(self, resource_path: str, detail: str) -> None:
        self._log(
            logging.CRITICAL,
            "INTEGRITY_FAULT",
            resource_path=resource_path,
            detail=detail,
            message=f"Integrity fault on {resource_path}"
        )


def configure_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None) -> None:
    """
    Install otagate's handlers on the root logger, replacing any present.

    Args:
        level: Root log level name
        json_format: Emit StructuredFormatter JSON lines instead of plain text
        log_file: Also append to this file
    """
    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s %(levelname)-8s [%(name)s] %(message)s')

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(level.upper())

    # The request ID middleware writes its own access line without query strings
    logging.getLogger("uvicorn.access").disabled = True


def bind_request_id(request_id: Optional[str] = None) -> Token:
    """
    Bind a request ID to the current context.

    A malformed or missing ``request_id`` is replaced with a fresh one.
    Returns the token for ``request_id_var.reset``.
    """
    return request_id_var.set(accept_request_id(request_id))


audit_log = AuditLogger()

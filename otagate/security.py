"""
Input validation, credential extraction and log sanitization.

Everything that arrives from a client or from a store document passes
through one of the validators here before it is used to build a path.
"""

import re
import uuid
from typing import Any, FrozenSet, Optional

SHA256_HEX_PATTERN = re.compile(r'[0-9a-f]{64}')
PLATFORM_ID_PATTERN = re.compile(r'[a-z0-9_-]{1,32}')
PATH_SEGMENT_PATTERN = re.compile(r'[A-Za-z0-9._-]{1,128}')
REQUEST_ID_PATTERN = re.compile(r'[A-Za-z0-9._-]{1,128}')
MAX_RESOURCE_PATH_LENGTH = 1024

SENSITIVE_LOG_FIELDS: FrozenSet[str] = frozenset({
    "authorization", "credential", "grant", "token", "downloadToken",
    "download_token", "downloadUrl", "download_url", "secret", "keys",
})


class ValidationError(ValueError):
    """A value failed one of the validators below."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


# ============================================================
# Validators
# ============================================================

def validate_sha256_hex(value: str, field: str = "contentHash") -> str:
    """
    Normalize a hex SHA-256 digest to lowercase.

    Raises:
        ValidationError: Not 64 hex characters
    """
    normalized = value.strip().lower() if isinstance(value, str) else ""
    if not SHA256_HEX_PATTERN.fullmatch(normalized):
        raise ValidationError(field, "must be a 64 character hex SHA-256 digest")
    return normalized


def validate_platform_id(value: str) -> str:
    """Validate a platform identifier such as ``android`` or ``ios``."""
    if not isinstance(value, str) or not PLATFORM_ID_PATTERN.fullmatch(value):
        raise ValidationError("platformId", "must match [a-z0-9_-]{1,32}")
    return value


def validate_resource_path(value: str) -> str:
    """
    Validate a logical resource path inside the object store.

    Paths are relative, ``/``-separated, and every segment is a plain name:
    no empty segments, no ``.`` or ``..``, no leading slash.

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str) or not value:
        raise ValidationError("resourcePath", "cannot be empty")
    if len(value) > MAX_RESOURCE_PATH_LENGTH:
        raise ValidationError("resourcePath", f"must not exceed {MAX_RESOURCE_PATH_LENGTH} characters")
    for segment in value.split("/"):
        if segment in ("", ".", "..") or not PATH_SEGMENT_PATTERN.fullmatch(segment):
            raise ValidationError("resourcePath", "invalid path segment")
    return value


def is_under_root(resource_path: str, root: str) -> bool:
    """True if ``resource_path`` lies inside the ``root`` prefix directory."""
    root = root.strip("/")
    if not root:
        return True
    return resource_path.startswith(root + "/")


# ============================================================
# Credentials and request IDs
# ============================================================

def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """
    Extract the credential from an ``Authorization: Bearer <credential>`` header.

    Returns None when the header is absent or uses another scheme.
    """
    if not authorization:
        return None
    scheme, _, credential = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None


def accept_request_id(value: Optional[str]) -> str:
    """Reuse a client supplied request ID if it is well formed, else generate one."""
    if value and REQUEST_ID_PATTERN.fullmatch(value):
        return value
    return str(uuid.uuid4())


# ============================================================
# Log sanitization
# ============================================================

def _mask(value: Any) -> str:
    # Keep a short prefix and suffix so log lines can still be correlated
    if isinstance(value, str) and len(value) > 12:
        return f"{value[:4]}...{value[-4:]}"
    return "[REDACTED]"


def sanitize_for_logging(data: Any, sensitive_fields: FrozenSet[str] = SENSITIVE_LOG_FIELDS) -> Any:
    """Return a copy of ``data`` with sensitive keys masked at any depth."""
    if isinstance(data, dict):
        return {
            key: _mask(value) if key in sensitive_fields else sanitize_for_logging(value, sensitive_fields)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize_for_logging(item, sensitive_fields) for item in data]
    return data

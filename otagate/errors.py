"""
Error taxonomy for otagate.

Grant failures are distinguished internally by DenyReason for the audit
log; at the HTTP boundary they all collapse to one uniform 403.
"""

from enum import Enum
from typing import Optional


class DenyReason(str, Enum):
    """Reason a presented grant was refused."""
    MISSING = "MISSING"
    MALFORMED = "MALFORMED"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    EXPIRED = "EXPIRED"
    PATH_MISMATCH = "PATH_MISMATCH"


class OtaGateError(Exception):
    """Base class for all otagate errors."""


class InvalidArgument(OtaGateError, ValueError):
    """Raised when a grant cannot be minted from the given input."""


class InvalidRequest(OtaGateError):
    """Raised when request headers cannot be interpreted."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class Unauthorized(OtaGateError):
    """Raised when the caller credential is missing or invalid."""


class NotFound(OtaGateError):
    """Base for store lookups that found nothing."""


class MetadataNotFound(NotFound):
    """No update metadata exists for the platform."""


class ObjectNotFound(NotFound):
    """No object exists at the resource path."""


class StoreError(OtaGateError):
    """A store adapter failed for a reason other than absence."""


class IntegrityFault(OtaGateError):
    """Declared metadata disagrees with the stored object."""
    def __init__(self, resource_path: str, message: str):
        self.resource_path = resource_path
        super().__init__(f"{resource_path}: {message}")


class GrantError(OtaGateError):
    """A presented grant is not acceptable."""
    reason: DenyReason = DenyReason.MALFORMED

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.reason.value)


class MissingGrant(GrantError):
    reason = DenyReason.MISSING


class Malformed(GrantError):
    reason = DenyReason.MALFORMED


class BadSignature(GrantError):
    reason = DenyReason.BAD_SIGNATURE


class Expired(GrantError):
    reason = DenyReason.EXPIRED


class PathMismatch(GrantError):
    reason = DenyReason.PATH_MISMATCH


GRANT_ERRORS = {cls.reason: cls for cls in (MissingGrant, Malformed, BadSignature, Expired, PathMismatch)}

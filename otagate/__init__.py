"""
otagate: signed download grants for self-hosted OTA updates.

Two services share one key ring:

- the gatekeeper answers ``GET /check`` for authenticated clients and, when
  an update applies, returns the bundle metadata with a download grant;
- the storage server releases bundle bytes on ``GET /files/{path}`` only for
  a grant that verifies, is unexpired and names exactly that path.

Usage:
    from otagate import GrantCodec, KeyRing, rotate

    ring = rotate(None, "k1")
    codec = GrantCodec(ring)
    token = codec.encode("android/bundle.js", "device-42", ttl=300)
    grant = codec.decode(token)
"""

__version__ = "0.1.0"

from .codec import Grant, GrantCodec
from .errors import (
    BadSignature,
    DenyReason,
    Expired,
    GrantError,
    IntegrityFault,
    InvalidArgument,
    Malformed,
    MetadataNotFound,
    ObjectNotFound,
    PathMismatch,
    Unauthorized,
)
from .keys import KeyRing, rotate

__all__ = [
    "Grant",
    "GrantCodec",
    "KeyRing",
    "rotate",
    "BadSignature",
    "DenyReason",
    "Expired",
    "GrantError",
    "IntegrityFault",
    "InvalidArgument",
    "Malformed",
    "MetadataNotFound",
    "ObjectNotFound",
    "PathMismatch",
    "Unauthorized",
]

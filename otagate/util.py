"""
Small shared helpers: canonical JSON, SHA-256 digests, base64 variants,
time and semantic version ordering.
"""

import base64
import binascii
import hashlib
import hmac
import json
import re
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Tuple, Union


def canonicalize(obj: Any) -> bytes:
    """
    Serialize ``obj`` as canonical JSON: sorted keys, no insignificant
    whitespace, UTF-8. Equal objects always produce identical bytes.
    """
    return json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Hex SHA-256 of bytes, or of a string's UTF-8 encoding."""
    raw = data.encode('utf-8') if isinstance(data, str) else data
    return hashlib.sha256(raw).hexdigest()


def sha256_stream_hex(chunks: Iterable[bytes]) -> str:
    """SHA-256 over an iterable of byte chunks."""
    h = hashlib.sha256()
    for chunk in chunks:
        h.update(chunk)
    return h.hexdigest()


def now_epoch() -> int:
    """Current wall clock time in whole seconds."""
    return int(time.time())


def b64e(b: bytes) -> str:
    """Standard padded base64, as used in key ring files."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Decode standard base64, rejecting characters outside the alphabet."""
    return base64.b64decode(s.encode('ascii'), validate=True)


def b64url_encode(b: bytes) -> str:
    """URL-safe base64 encode bytes to string (no padding)."""
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


_B64URL_PATTERN = re.compile(r'[A-Za-z0-9_-]*')


def b64url_decode_strict(s: str) -> bytes:
    """
    Decode unpadded URL-safe base64, accepting only the canonical encoding.

    Rejects padding, characters outside the URL-safe alphabet and encodings
    whose unused trailing bits are set, so every distinct input string maps
    to distinct bytes.

    Raises:
        ValueError: If the string is not canonical unpadded base64url
    """
    if not isinstance(s, str) or not _B64URL_PATTERN.fullmatch(s) or len(s) % 4 == 1:
        raise ValueError("not canonical base64url")
    try:
        raw = base64.urlsafe_b64decode(s + '=' * (-len(s) % 4))
    except (binascii.Error, ValueError) as e:
        raise ValueError("not canonical base64url") from e
    if b64url_encode(raw) != s:
        raise ValueError("not canonical base64url")
    return raw


def utc_rfc3339(ts_epoch: int) -> str:
    """Convert Unix timestamp to RFC3339 UTC string."""
    return datetime.fromtimestamp(ts_epoch, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


# ============================================================
# Semantic versions
# ============================================================

SEMVER_PATTERN = re.compile(
    r'v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)'
    r'(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?'
    r'(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?'
)


def parse_semver(version: str) -> Tuple[int, int, int, Tuple]:
    """
    Parse a semantic version into a sortable key.

    Build metadata is ignored. A release sorts after all of its
    pre-releases; numeric pre-release identifiers sort before
    alphanumeric ones.

    Raises:
        ValueError: If the version is not a semantic version
    """
    if not isinstance(version, str):
        raise ValueError("version must be a string")
    m = SEMVER_PATTERN.fullmatch(version.strip())
    if not m:
        raise ValueError(f"invalid semantic version: {version!r}")
    major, minor, patch, pre = m.groups()
    if pre is None:
        pre_key: Tuple = ((2,),)
    else:
        pre_key = tuple(
            (0, int(ident), '') if ident.isdigit() else (1, 0, ident)
            for ident in pre.split('.')
        )
        pre_key = ((1,),) + pre_key
    return int(major), int(minor), int(patch), pre_key


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as version ``a`` sorts before, equal to or after ``b``."""
    ka, kb = parse_semver(a), parse_semver(b)
    return (ka > kb) - (ka < kb)

"""
Download grant codec.

Token scheme: ``{kid}.{payload_b64}.{mac_b64}`` where payload is the
canonical JSON ``{"exp": <epoch>, "path": <resource path>, "sub": <subject>}``,
optionally with ``"sha": <hex SHA-256>`` pinning the object content,
and the MAC is keyed BLAKE2b-256 over ``{kid}.{payload_b64}``.

The resource path lives inside the MAC'd payload, so a grant issued for one
bundle cannot be replayed against another. ``decode`` does not enforce
expiry; verifiers apply their own clock-skew policy via ``Grant.is_expired``.
"""

import json
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import nacl.encoding
import nacl.hash

from .errors import BadSignature, InvalidArgument, Malformed
from .keys import KeyRing
from .security import SHA256_HEX_PATTERN, ValidationError, validate_sha256_hex
from .util import b64url_decode_strict, b64url_encode, canonicalize, constant_time_compare, now_epoch

MAC_SIZE = 32
# BLAKE2b personalisation, at most 16 bytes
MAC_PERSON = b"otagate-grant-v1"
MAX_TOKEN_LENGTH = 4096
REQUIRED_CLAIMS = frozenset({"exp", "path", "sub"})


@dataclass(frozen=True)
class Grant:
    """Authorization to fetch exactly one resource until ``expires_at``."""
    resource_path: str
    subject: str
    expires_at: int
    kid: str
    content_hash: Optional[str] = None

    def is_expired(self, now: int, leeway: int = 0) -> bool:
        """True once ``expires_at`` is at or before ``now - leeway``."""
        return self.expires_at <= now - leeway


class GrantCodec:
    """
    Encodes and decodes download grants with a key ring.

    Args:
        key_ring: Immutable secrets; the active generation signs
        clock: Returns the current epoch seconds
    """

    def __init__(self, key_ring: KeyRing, clock: Optional[Callable[[], int]] = None):
        self._key_ring = key_ring
        self._clock = clock or now_epoch

    @property
    def key_ring(self) -> KeyRing:
        return self._key_ring

    def now(self) -> int:
        return int(self._clock())

    def _mac(self, secret: bytes, signing_input: bytes) -> bytes:
        return nacl.hash.blake2b(
            signing_input,
            digest_size=MAC_SIZE,
            key=secret,
            person=MAC_PERSON,
            encoder=nacl.encoding.RawEncoder,
        )

    def encode(self, resource_path: str, subject: str, ttl: int, content_hash: Optional[str] = None) -> str:
        """Mint a token for ``resource_path`` valid for ``ttl`` seconds."""
        return self.mint(resource_path, subject, ttl, content_hash)[0]

    def mint(
        self,
        resource_path: str,
        subject: str,
        ttl: int,
        content_hash: Optional[str] = None
    ) -> Tuple[str, Grant]:
        """
        Mint a token and return it with the grant it encodes.

        Raises:
            InvalidArgument: Empty path, non-string subject, non-positive ttl
                or a content hash that is not a hex SHA-256 digest
        """
        if not isinstance(resource_path, str) or not resource_path:
            raise InvalidArgument("resource_path must be a non-empty string")
        if not isinstance(subject, str):
            raise InvalidArgument("subject must be a string")
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise InvalidArgument("ttl must be a positive integer")
        if content_hash is not None:
            try:
                content_hash = validate_sha256_hex(content_hash)
            except ValidationError as e:
                raise InvalidArgument(e.message) from e

        kid = self._key_ring.active_kid
        expires_at = self.now() + ttl
        claims = {"exp": expires_at, "path": resource_path, "sub": subject}
        if content_hash is not None:
            claims["sha"] = content_hash
        payload = canonicalize(claims)
        signing_input = f"{kid}.{b64url_encode(payload)}"
        mac = self._mac(self._key_ring.active_secret(), signing_input.encode("ascii"))
        token = f"{signing_input}.{b64url_encode(mac)}"
        return token, Grant(resource_path=resource_path, subject=subject, expires_at=expires_at,
                            kid=kid, content_hash=content_hash)

    def decode(self, token: str) -> Grant:
        """
        Verify a token's MAC and return its grant. Expiry is not checked.

        Raises:
            Malformed: The token cannot be parsed
            BadSignature: Unknown key generation or MAC mismatch
        """
        if not isinstance(token, str) or not token or len(token) > MAX_TOKEN_LENGTH:
            raise Malformed("token missing or oversized")
        parts = token.split(".")
        if len(parts) != 3:
            raise Malformed("expected three segments")
        kid, payload_b64, mac_b64 = parts
        try:
            payload_raw = b64url_decode_strict(payload_b64)
            mac = b64url_decode_strict(mac_b64)
        except ValueError as e:
            raise Malformed("segment is not canonical base64url") from e
        if len(mac) != MAC_SIZE:
            raise Malformed("unexpected MAC length")

        secret = self._key_ring.secret_for(kid)
        if secret is None:
            raise BadSignature("unknown key generation")
        expected = self._mac(secret, f"{kid}.{payload_b64}".encode("ascii"))
        if not constant_time_compare(expected, mac):
            raise BadSignature("MAC mismatch")

        try:
            claims = json.loads(payload_raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise Malformed("payload is not JSON") from e
        if not isinstance(claims, dict) or set(claims) - {"sha"} != REQUIRED_CLAIMS:
            raise Malformed("unexpected claim set")
        exp, path, sub = claims["exp"], claims["path"], claims["sub"]
        if isinstance(exp, bool) or not isinstance(exp, int):
            raise Malformed("exp must be an integer")
        if not isinstance(path, str) or not path or not isinstance(sub, str):
            raise Malformed("path and sub must be strings")
        sha = claims.get("sha")
        if "sha" in claims and (not isinstance(sha, str) or not SHA256_HEX_PATTERN.fullmatch(sha)):
            raise Malformed("sha must be a lowercase hex SHA-256 digest")
        return Grant(resource_path=path, subject=sub, expires_at=exp, kid=kid, content_hash=sha)

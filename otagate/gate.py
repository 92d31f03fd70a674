"""
Storage gate.

The only path from a client to stored bundle bytes. A download is released
only for a grant that:

1. decodes and carries a valid MAC under a known key generation,
2. has not expired (with optional leeway for clock skew),
3. names exactly the requested resource path.

Denials are recorded with their specific reason in the audit log; callers
only ever learn that access was refused.
"""

from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional

from .codec import Grant, GrantCodec
from .errors import (
    GRANT_ERRORS,
    DenyReason,
    Expired,
    GrantError,
    IntegrityFault,
    MetadataNotFound,
    MissingGrant,
    ObjectNotFound,
    PathMismatch,
)
from .logging_config import audit_log
from .security import is_under_root
from .stores import MetadataStore, ObjectStore
from .util import sha256_hex


@dataclass(frozen=True)
class GateDecision:
    """Outcome of checking a grant against a requested path."""
    allowed: bool
    reason: Optional[DenyReason] = None
    grant: Optional[Grant] = None


@dataclass
class Download:
    """An authorized object ready to be sent."""
    resource_path: str
    size: int
    chunks: Iterable[bytes]
    content_hash: Optional[str] = None


class StorageGate:
    """
    Grant verifier in front of an object store.

    Args:
        codec: Grant codec sharing the issuer's key ring
        object_store: Bundle storage
        metadata_store: When given, served bytes are checked against the
            contentHash of the metadata that declares them
        platform_roots: Platform to resource root mapping used to find the
            declaring metadata; without it the first path segment is taken
            as the platform id
        leeway: Seconds a grant is still honoured past its expiry
    """

    def __init__(
        self,
        codec: GrantCodec,
        object_store: ObjectStore,
        metadata_store: Optional[MetadataStore] = None,
        platform_roots: Optional[Mapping[str, str]] = None,
        leeway: int = 0
    ):
        self._codec = codec
        self._object_store = object_store
        self._metadata_store = metadata_store
        self._platform_roots = dict(platform_roots or {})
        self._leeway = max(0, int(leeway))

    @property
    def codec(self) -> GrantCodec:
        return self._codec

    def verify(self, requested_path: str, token: Optional[str]) -> Grant:
        """
        Return the grant if it authorizes ``requested_path``.

        Raises:
            GrantError: The specific reason the grant is refused
        """
        if not token:
            raise MissingGrant()
        grant = self._codec.decode(token)
        if grant.is_expired(self._codec.now(), self._leeway):
            raise Expired()
        if grant.resource_path != requested_path:
            raise PathMismatch()
        return grant

    def authorize_download(self, requested_path: str, token: Optional[str]) -> GateDecision:
        try:
            grant = self.verify(requested_path, token)
        except GrantError as e:
            audit_log.download_denied(requested_path, e.reason.value)
            return GateDecision(allowed=False, reason=e.reason)
        return GateDecision(allowed=True, grant=grant)

    def _candidate_platforms(self, resource_path: str) -> List[str]:
        if self._platform_roots:
            return [platform for platform, root in self._platform_roots.items()
                    if is_under_root(resource_path, root)]
        head, sep, _ = resource_path.partition("/")
        return [head] if sep else []

    def declared_hash(self, resource_path: str) -> Optional[str]:
        """contentHash of the metadata that publishes ``resource_path``, if any."""
        if self._metadata_store is None:
            return None
        for platform_id in self._candidate_platforms(resource_path):
            try:
                metadata = self._metadata_store.get_metadata(platform_id)
            except MetadataNotFound:
                continue
            if metadata.resource_path == resource_path:
                return metadata.content_hash
        return None

    def open_download(self, requested_path: str, token: Optional[str]) -> Download:
        """
        Authorize and open a download.

        Objects with a known digest are read whole and hashed before any
        byte is released, so mismatched content is never served. The digest
        pinned in the grant takes precedence over the one found through
        metadata lookup. Other objects are streamed.

        Raises:
            GrantError: Grant refused (already audit logged)
            ObjectNotFound: Valid grant but no object at the path
            IntegrityFault: Stored bytes differ from the declared contentHash
        """
        decision = self.authorize_download(requested_path, token)
        if not decision.allowed:
            raise GRANT_ERRORS[decision.reason]()
        grant = decision.grant

        try:
            expected = grant.content_hash or self.declared_hash(requested_path)
            if expected is None:
                size = self._object_store.get_object_size(requested_path)
                chunks = self._object_store.get_object_stream(requested_path)
                download = Download(requested_path, size, chunks)
            else:
                data = self._object_store.read_object(requested_path)
                actual = sha256_hex(data)
                if actual != expected:
                    audit_log.integrity_fault(requested_path, f"expected {expected}, stored {actual}")
                    raise IntegrityFault(requested_path, "stored digest differs from contentHash")
                download = Download(requested_path, len(data), [data], content_hash=actual)
        except ObjectNotFound:
            audit_log.object_missing(requested_path, grant.subject)
            raise

        audit_log.download_allowed(requested_path, grant.subject, grant.kid)
        return download

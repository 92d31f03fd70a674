"""
Grant issuer.

Answers a client's update check: authenticates the caller, loads the
platform's metadata, and when an update applies mints a short-lived
download grant for the bundle it names.
"""

import logging
from typing import Mapping, Optional, Union
from urllib.parse import quote

from .auth import Authenticator
from .codec import GrantCodec
from .errors import IntegrityFault, InvalidRequest, MetadataNotFound, ObjectNotFound, Unauthorized
from .logging_config import audit_log
from .models import NoUpdateResponse, UpdateMetadata, UpdateResponse
from .security import ValidationError, is_under_root, validate_platform_id
from .stores import MetadataStore, ObjectStore
from .util import compare_versions, parse_semver

logger = logging.getLogger(__name__)

DEFAULT_GRANT_TTL = 300


def build_download_url(storage_base_url: str, resource_path: str, token: str) -> str:
    """Storage server URL for ``resource_path`` carrying ``token`` as its grant."""
    return f"{storage_base_url.rstrip('/')}/files/{quote(resource_path, safe='/')}?grant={token}"


class GrantIssuer:
    """
    Stateless issuer of update responses.

    Args:
        metadata_store: Per-platform metadata source
        object_store: Bundle store, used to confirm metadata integrity
        codec: Grant codec holding the signing key ring
        authenticator: Resolves the caller credential
        storage_base_url: Public base URL of the storage server
        grant_ttl: Grant lifetime in seconds
        platform_roots: Resource path prefix each platform must stay under
        verify_on_issue: Check object existence and digest before issuing
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        object_store: ObjectStore,
        codec: GrantCodec,
        authenticator: Authenticator,
        storage_base_url: str,
        grant_ttl: int = DEFAULT_GRANT_TTL,
        platform_roots: Optional[Mapping[str, str]] = None,
        verify_on_issue: bool = True
    ):
        self._metadata_store = metadata_store
        self._object_store = object_store
        self._codec = codec
        self._authenticator = authenticator
        self._storage_base_url = storage_base_url.rstrip("/")
        self._grant_ttl = grant_ttl
        self._platform_roots = dict(platform_roots or {})
        self._verify_on_issue = verify_on_issue

    @property
    def codec(self) -> GrantCodec:
        return self._codec

    def download_url(self, resource_path: str, token: str) -> str:
        return build_download_url(self._storage_base_url, resource_path, token)

    def _check_integrity(self, metadata: UpdateMetadata) -> None:
        root = self._platform_roots.get(metadata.platform_id)
        if root is not None and not is_under_root(metadata.resource_path, root):
            raise IntegrityFault(metadata.resource_path,
                                 f"outside resource root {root!r} of platform {metadata.platform_id}")
        if not self._verify_on_issue:
            return
        try:
            digest = self._object_store.get_object_digest(metadata.resource_path)
        except ObjectNotFound as e:
            raise IntegrityFault(metadata.resource_path, "declared bundle does not exist") from e
        if digest != metadata.content_hash:
            raise IntegrityFault(metadata.resource_path, "stored digest differs from contentHash")

    def issue_update_check(
        self,
        credential: Optional[str],
        platform_id: str,
        installed_version: Optional[str] = None
    ) -> Union[UpdateResponse, NoUpdateResponse]:
        """
        Decide whether the caller should update and, if so, grant the download.

        Raises:
            Unauthorized: Missing or rejected credential
            InvalidRequest: Malformed platform id or installed version
            IntegrityFault: Metadata disagrees with the object store
            StoreError: Metadata could not be read
        """
        try:
            caller = self._authenticator.authenticate(credential)
        except Unauthorized as e:
            audit_log.auth_failed(str(e), platform_id=platform_id)
            raise

        try:
            validate_platform_id(platform_id)
        except ValidationError as e:
            raise InvalidRequest("platform", e.message) from e
        if installed_version:
            try:
                parse_semver(installed_version)
            except ValueError as e:
                raise InvalidRequest("version", "must be a semantic version") from e

        try:
            metadata = self._metadata_store.get_metadata(platform_id)
        except MetadataNotFound:
            logger.info("No metadata for platform %s", platform_id)
            audit_log.update_check(caller.subject, platform_id, installed_version, "NO_METADATA")
            return NoUpdateResponse()

        if installed_version and compare_versions(installed_version, metadata.version) >= 0:
            audit_log.update_check(caller.subject, platform_id, installed_version, "UP_TO_DATE")
            return NoUpdateResponse()

        try:
            self._check_integrity(metadata)
        except IntegrityFault as e:
            audit_log.integrity_fault(metadata.resource_path, str(e))
            raise

        token, grant = self._codec.mint(metadata.resource_path, caller.subject, self._grant_ttl,
                                        content_hash=metadata.content_hash)
        audit_log.grant_issued(caller.subject, grant.resource_path, grant.kid, grant.expires_at)
        audit_log.update_check(caller.subject, platform_id, installed_version, "UPDATE")

        return UpdateResponse(
            version=metadata.version,
            resource_path=metadata.resource_path,
            content_hash=metadata.content_hash,
            mandatory=metadata.mandatory,
            download_token=token,
            download_url=self.download_url(metadata.resource_path, token),
            expires_at=grant.expires_at,
        )

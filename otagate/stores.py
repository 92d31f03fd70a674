"""
Metadata and object store adapters.

Filesystem layout (shared by both file backends)::

    <root>/<platform>/metadata.json
    <root>/<resource path>

The S3 backends mirror the same layout under a bucket prefix.
"""

import json
import os
from abc import ABC, abstractmethod
from typing import Iterator, Optional

from pydantic import ValidationError as ModelValidationError

from .errors import MetadataNotFound, ObjectNotFound, StoreError
from .models import UpdateMetadata
from .security import ValidationError, validate_platform_id, validate_resource_path
from .util import sha256_stream_hex

METADATA_FILENAME = "metadata.json"
CHUNK_SIZE = 64 * 1024


def parse_metadata(platform_id: str, raw: bytes, source: str) -> UpdateMetadata:
    """Parse a metadata document; the platform id comes from its location."""
    try:
        doc = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise StoreError(f"metadata at {source} is not valid JSON") from e
    if not isinstance(doc, dict):
        raise StoreError(f"metadata at {source} must be an object")
    declared = doc.get("platformId", platform_id)
    if declared != platform_id:
        raise StoreError(f"metadata at {source} declares platform {declared!r}")
    try:
        return UpdateMetadata.model_validate({**doc, "platformId": platform_id})
    except ModelValidationError as e:
        raise StoreError(f"metadata at {source} is invalid: {e.error_count()} error(s)") from e


class MetadataStore(ABC):
    """Read interface for per-platform update metadata."""

    @abstractmethod
    def get_metadata(self, platform_id: str) -> UpdateMetadata:
        """
        Raises:
            MetadataNotFound: No metadata for the platform
            StoreError: Metadata exists but cannot be read or parsed
        """
        pass


class ObjectStore(ABC):
    """Read interface for bundle objects addressed by resource path."""

    @abstractmethod
    def get_object_stream(self, resource_path: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        pass

    @abstractmethod
    def get_object_size(self, resource_path: str) -> int:
        pass

    def read_object(self, resource_path: str) -> bytes:
        return b"".join(self.get_object_stream(resource_path))

    def get_object_digest(self, resource_path: str) -> str:
        """Hex SHA-256 of the object's bytes."""
        return sha256_stream_hex(self.get_object_stream(resource_path))


# ============================================================
# Filesystem backends
# ============================================================

class FileMetadataStore(MetadataStore):
    def __init__(self, root: str):
        self._root = os.path.abspath(root)

    def get_metadata(self, platform_id: str) -> UpdateMetadata:
        try:
            validate_platform_id(platform_id)
        except ValidationError as e:
            raise MetadataNotFound(platform_id) from e
        path = os.path.join(self._root, platform_id, METADATA_FILENAME)
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except FileNotFoundError as e:
            raise MetadataNotFound(platform_id) from e
        except OSError as e:
            raise StoreError(f"cannot read {path}: {e.strerror}") from e
        return parse_metadata(platform_id, raw, path)


class FileObjectStore(ObjectStore):
    """
    Objects stored as regular files under a root directory.

    Only regular files inside the root are reachable: traversal segments,
    symlinks escaping the root and directories all read as absent.
    """

    def __init__(self, root: str):
        self._root = os.path.realpath(root)

    def _resolve(self, resource_path: str) -> str:
        try:
            validate_resource_path(resource_path)
        except ValidationError as e:
            raise ObjectNotFound(str(resource_path)) from e
        full = os.path.realpath(os.path.join(self._root, *resource_path.split("/")))
        if os.path.commonpath([self._root, full]) != self._root or not os.path.isfile(full):
            raise ObjectNotFound(resource_path)
        return full

    def get_object_stream(self, resource_path: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        full = self._resolve(resource_path)

        def _iter():
            with open(full, "rb") as f:
                while True:
                    chunk = f.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk

        return _iter()

    def get_object_size(self, resource_path: str) -> int:
        return os.path.getsize(self._resolve(resource_path))

    def read_object(self, resource_path: str) -> bytes:
        full = self._resolve(resource_path)
        try:
            with open(full, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise ObjectNotFound(resource_path) from e
        except OSError as e:
            raise StoreError(f"cannot read {resource_path}: {e.strerror}") from e


# ============================================================
# S3 backends
# ============================================================

def _s3_client(client, region: Optional[str]):
    if client is not None:
        return client
    try:
        import boto3
    except ImportError as e:
        raise RuntimeError("boto3 required for S3 storage. Install with: pip install otagate[aws]") from e
    return boto3.client("s3", region_name=region)


def _is_missing(error) -> bool:
    code = (getattr(error, "response", None) or {}).get("Error", {}).get("Code", "")
    return code in ("NoSuchKey", "404", "NotFound")


class S3MetadataStore(MetadataStore):
    """Metadata documents at ``<prefix><platform>/metadata.json`` in a bucket."""

    def __init__(self, bucket: str, prefix: str = "", region: Optional[str] = None, client=None):
        self.bucket = bucket
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self._region = region
        self._client = client

    def _get_client(self):
        """Lazy-load boto3 client."""
        self._client = _s3_client(self._client, self._region)
        return self._client

    def get_metadata(self, platform_id: str) -> UpdateMetadata:
        try:
            validate_platform_id(platform_id)
        except ValidationError as e:
            raise MetadataNotFound(platform_id) from e
        key = f"{self.prefix}{platform_id}/{METADATA_FILENAME}"
        client = self._get_client()
        try:
            resp = client.get_object(Bucket=self.bucket, Key=key)
            raw = resp["Body"].read()
        except Exception as e:
            if _is_missing(e):
                raise MetadataNotFound(platform_id) from e
            raise StoreError(f"cannot read s3://{self.bucket}/{key}") from e
        return parse_metadata(platform_id, raw, f"s3://{self.bucket}/{key}")


class S3ObjectStore(ObjectStore):
    """Bundle objects at ``<prefix><resource path>`` in a bucket."""

    def __init__(self, bucket: str, prefix: str = "", region: Optional[str] = None, client=None):
        self.bucket = bucket
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self._region = region
        self._client = client

    def _get_client(self):
        """Lazy-load boto3 client."""
        self._client = _s3_client(self._client, self._region)
        return self._client

    def _key(self, resource_path: str) -> str:
        try:
            validate_resource_path(resource_path)
        except ValidationError as e:
            raise ObjectNotFound(str(resource_path)) from e
        return f"{self.prefix}{resource_path}"

    def _get(self, resource_path: str):
        key = self._key(resource_path)
        try:
            return self._get_client().get_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            if _is_missing(e):
                raise ObjectNotFound(resource_path) from e
            raise StoreError(f"cannot read s3://{self.bucket}/{key}") from e

    def get_object_stream(self, resource_path: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        body = self._get(resource_path)["Body"]

        def _iter():
            try:
                while True:
                    chunk = body.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
            finally:
                body.close()

        return _iter()

    def get_object_size(self, resource_path: str) -> int:
        key = self._key(resource_path)
        try:
            resp = self._get_client().head_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            if _is_missing(e):
                raise ObjectNotFound(resource_path) from e
            raise StoreError(f"cannot stat s3://{self.bucket}/{key}") from e
        return int(resp["ContentLength"])

    def read_object(self, resource_path: str) -> bytes:
        body = self._get(resource_path)["Body"]
        try:
            return body.read()
        finally:
            body.close()

"""
Key management module for otagate.

Grant MAC secrets are held in an immutable KeyRing built once at startup.
Each secret has a generation id (kid) that travels inside every token, so
grants signed before a rotation keep verifying until they expire.
Key rings can come from a JSON file, a single environment secret, AWS
Secrets Manager, or a development ring file created on first start.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import nacl.utils

from .util import b64d, b64e

logger = logging.getLogger(__name__)

KID_PATTERN = re.compile(r'[A-Za-z0-9_-]{1,32}')
MIN_SECRET_BYTES = 32
# BLAKE2b accepts keys of at most 64 bytes
MAX_SECRET_BYTES = 64


class KeyRing:
    """
    Immutable set of MAC secrets indexed by generation id.

    ``active_kid`` names the secret used for signing; every secret in the
    ring is accepted for verification.
    """

    def __init__(self, active_kid: str, secrets: Mapping[str, bytes]):
        if active_kid not in secrets:
            raise ValueError(f"active key {active_kid!r} not present in key ring")
        for kid, secret in secrets.items():
            if not KID_PATTERN.fullmatch(kid):
                raise ValueError(f"invalid key id {kid!r}")
            if not (MIN_SECRET_BYTES <= len(secret) <= MAX_SECRET_BYTES):
                raise ValueError(
                    f"key {kid!r} must be {MIN_SECRET_BYTES}-{MAX_SECRET_BYTES} bytes"
                )
        self._active_kid = active_kid
        self._secrets = MappingProxyType(dict(secrets))

    @property
    def active_kid(self) -> str:
        return self._active_kid

    @property
    def kids(self):
        return tuple(sorted(self._secrets))

    def active_secret(self) -> bytes:
        return self._secrets[self._active_kid]

    def secret_for(self, kid: str) -> Optional[bytes]:
        """Secret for a generation id, or None if the ring does not hold it."""
        return self._secrets.get(kid)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "KeyRing":
        """
        Build a key ring from its JSON form::

            {"active_kid": "k2", "keys": {"k1": "<base64>", "k2": "<base64>"}}
        """
        try:
            keys = {kid: b64d(value) for kid, value in raw["keys"].items()}
            return cls(raw["active_kid"], keys)
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError("key ring must have 'active_kid' and 'keys'") from e
        except ValueError as e:
            raise ValueError(f"invalid key ring: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_kid": self._active_kid,
            "keys": {kid: b64e(secret) for kid, secret in sorted(self._secrets.items())},
        }

    def __repr__(self) -> str:
        return f"KeyRing(active_kid={self._active_kid!r}, kids={list(self.kids)!r})"


def generate_secret(size: int = MIN_SECRET_BYTES) -> bytes:
    """Generate a new random MAC secret."""
    return nacl.utils.random(size)


def rotate(ring: Optional[KeyRing], new_kid: str, secret: Optional[bytes] = None) -> KeyRing:
    """
    Return a new key ring with ``new_kid`` added and made active.

    Earlier generations stay in the ring so outstanding grants remain
    verifiable until they expire.
    """
    secrets = {} if ring is None else {kid: ring.secret_for(kid) for kid in ring.kids}
    if new_kid in secrets:
        raise ValueError(f"key id {new_kid!r} already present")
    secrets[new_kid] = secret if secret is not None else generate_secret()
    return KeyRing(new_kid, secrets)


def retire(ring: KeyRing, kid: str) -> KeyRing:
    """Return a new key ring without ``kid``. The active key cannot be retired."""
    if kid == ring.active_kid:
        raise ValueError("cannot retire the active key")
    if ring.secret_for(kid) is None:
        raise ValueError(f"key id {kid!r} not present")
    return KeyRing(ring.active_kid, {k: ring.secret_for(k) for k in ring.kids if k != kid})


def write_key_ring(ring: KeyRing, path: str) -> None:
    """Write a key ring file readable only by its owner."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(ring.to_dict(), f, indent=2, sort_keys=True)


class KeyProvider(ABC):
    """Abstract source of the grant key ring."""

    @abstractmethod
    def load_key_ring(self) -> KeyRing:
        """
        Load the key ring.

        Returns:
            Immutable KeyRing used for the lifetime of the process
        """
        pass


class FileKeyProvider(KeyProvider):
    """Key ring stored as JSON on disk."""

    def __init__(self, key_ring_path: str):
        self._key_ring_path = key_ring_path

    def load_key_ring(self) -> KeyRing:
        with open(self._key_ring_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        ring = KeyRing.from_dict(raw)
        logger.info("Loaded key ring from %s (active=%s, generations=%d)",
                    self._key_ring_path, ring.active_kid, len(ring.kids))
        return ring


class EnvSecretProvider(KeyProvider):
    """Single-generation key ring from a base64 secret."""

    def __init__(self, secret_b64: str, kid: str = "env"):
        self._secret_b64 = secret_b64
        self._kid = kid

    def load_key_ring(self) -> KeyRing:
        try:
            secret = b64d(self._secret_b64.strip())
        except ValueError as e:
            raise ValueError("signing secret must be base64") from e
        return KeyRing(self._kid, {self._kid: secret})


class DevKeyRingProvider(KeyProvider):
    """
    Development key ring shared through a local file.

    The first process to start creates the file; every later process,
    including the other service and additional workers, loads the same
    ring, so grants minted by the gatekeeper verify at the storage server.
    """

    def __init__(self, key_ring_path: str, kid: str = "dev"):
        self._key_ring_path = key_ring_path
        self._kid = kid

    def load_key_ring(self) -> KeyRing:
        if not os.path.exists(self._key_ring_path):
            ring = rotate(None, self._kid)
            tmp_path = f"{self._key_ring_path}.{os.getpid()}.tmp"
            write_key_ring(ring, tmp_path)
            try:
                # Atomic create; a concurrent starter's ring wins
                os.link(tmp_path, self._key_ring_path)
                logger.info("Created development key ring %s", self._key_ring_path)
            except FileExistsError:
                pass
            finally:
                os.unlink(tmp_path)
        logger.warning("No signing key configured; using development key ring %s", self._key_ring_path)
        return FileKeyProvider(self._key_ring_path).load_key_ring()


class AwsSecretsManagerKeyProvider(KeyProvider):
    """
    Key ring stored as a JSON SecretString in AWS Secrets Manager.

    Docs: https://docs.aws.amazon.com/secretsmanager/latest/apireference/API_GetSecretValue.html
    """

    def __init__(self, secret_id: str, region: Optional[str] = None, client=None):
        self._secret_id = secret_id
        self._region = region
        self._client = client

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError(
                    "boto3 required for AWS Secrets Manager keys. Install with: pip install otagate[aws]"
                ) from e
            self._client = boto3.client("secretsmanager", region_name=self._region)
        return self._client

    def load_key_ring(self) -> KeyRing:
        resp = self._get_client().get_secret_value(SecretId=self._secret_id)
        return KeyRing.from_dict(json.loads(resp["SecretString"]))


def get_key_provider(
    key_ring_path: Optional[str] = None,
    secret_b64: Optional[str] = None,
    aws_secret_id: Optional[str] = None,
    aws_region: Optional[str] = None,
    dev_key_ring_path: Optional[str] = None
) -> KeyProvider:
    """
    Factory function to create the appropriate key provider.

    Precedence: AWS secret id, then key ring file, then single secret,
    then the development key ring.

    Args:
        key_ring_path: Path to key ring JSON
        secret_b64: Base64 single secret
        aws_secret_id: Secrets Manager secret holding the key ring JSON
        aws_region: AWS region for Secrets Manager
        dev_key_ring_path: Shared development key ring, used when nothing else
            is configured (never in production)

    Returns:
        Configured KeyProvider instance
    """
    if aws_secret_id:
        return AwsSecretsManagerKeyProvider(aws_secret_id, region=aws_region)
    if key_ring_path:
        return FileKeyProvider(key_ring_path)
    if secret_b64:
        return EnvSecretProvider(secret_b64)
    if dev_key_ring_path:
        return DevKeyRingProvider(dev_key_ring_path)
    raise ValueError("No signing key configured (set OTA_SIGNING_KEYS_PATH or OTA_SIGNING_SECRET)")

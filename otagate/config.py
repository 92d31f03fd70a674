"""
Configuration module for otagate.

All settings come from environment variables and are frozen into a
Settings object at startup; the app factories receive it explicitly.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from .auth import Authenticator, RemoteAuthenticator, StaticTokenAuthenticator
from .keys import KeyRing, get_key_provider
from .stores import FileMetadataStore, FileObjectStore, MetadataStore, ObjectStore, S3MetadataStore, S3ObjectStore

logger = logging.getLogger(__name__)

MAX_GRANT_TTL = 3600


def _bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_platform_roots(spec: str) -> Dict[str, str]:
    """Parse ``android=android,ios=bundles/ios`` into a mapping."""
    roots = {}
    for item in spec.split(","):
        item = item.strip()
        if not item:
            continue
        platform, sep, root = item.partition("=")
        if not sep or not platform.strip():
            raise ValueError(f"invalid platform root entry {item!r}")
        roots[platform.strip()] = root.strip().strip("/")
    return roots


# ============================================================
# Environment Configuration
# ============================================================

@dataclass(frozen=True)
class Settings:
    env: str = "dev"  # dev|stage|prod

    # Storage
    storage_root: str = "storage"
    metadata_backend: str = "file"  # file|s3
    object_backend: str = "file"  # file|s3
    s3_bucket: str = ""
    s3_prefix: str = ""
    aws_region: Optional[str] = None

    # Signing
    signing_keys_path: Optional[str] = None
    signing_secret: Optional[str] = None
    signing_keys_secret_id: Optional[str] = None
    dev_keys_path: str = ".otagate/dev_grant_keys.json"
    grant_ttl_seconds: int = 300
    grant_leeway_seconds: int = 0

    # Gatekeeper
    storage_base_url: str = "http://localhost:4000"
    default_platform: str = "android"
    platform_roots: Mapping[str, str] = field(default_factory=dict)
    client_tokens_path: Optional[str] = None
    client_tokens: Optional[str] = None
    auth_url: Optional[str] = None
    verify_on_issue: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self):
        if not (0 < self.grant_ttl_seconds <= MAX_GRANT_TTL):
            raise ValueError(f"grant TTL must be between 1 and {MAX_GRANT_TTL} seconds")
        if self.grant_leeway_seconds < 0:
            raise ValueError("grant leeway cannot be negative")
        for backend in (self.metadata_backend, self.object_backend):
            if backend not in ("file", "s3"):
                raise ValueError(f"unknown storage backend {backend!r}")
        if "s3" in (self.metadata_backend, self.object_backend) and not self.s3_bucket:
            raise ValueError("OTA_S3_BUCKET required for the s3 backend")

    def is_production(self) -> bool:
        return self.env == "prod"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read Settings from the environment (or the given mapping)."""
    env = os.environ if environ is None else environ
    return Settings(
        env=env.get("OTA_ENV", "dev"),
        storage_root=env.get("OTA_STORAGE_ROOT", "storage"),
        metadata_backend=env.get("OTA_METADATA_BACKEND", "file"),
        object_backend=env.get("OTA_OBJECT_BACKEND", "file"),
        s3_bucket=env.get("OTA_S3_BUCKET", ""),
        s3_prefix=env.get("OTA_S3_PREFIX", ""),
        aws_region=env.get("AWS_REGION") or None,
        signing_keys_path=env.get("OTA_SIGNING_KEYS_PATH") or None,
        signing_secret=env.get("OTA_SIGNING_SECRET") or None,
        signing_keys_secret_id=env.get("OTA_SIGNING_KEYS_SECRET_ID") or None,
        dev_keys_path=env.get("OTA_DEV_KEYS_PATH", ".otagate/dev_grant_keys.json"),
        grant_ttl_seconds=int(env.get("OTA_GRANT_TTL_SECONDS", "300")),
        grant_leeway_seconds=int(env.get("OTA_GRANT_LEEWAY_SECONDS", "0")),
        storage_base_url=env.get("OTA_STORAGE_BASE_URL", "http://localhost:4000"),
        default_platform=env.get("OTA_DEFAULT_PLATFORM", "android"),
        platform_roots=parse_platform_roots(env.get("OTA_PLATFORM_ROOTS", "")),
        client_tokens_path=env.get("OTA_CLIENT_TOKENS_PATH") or None,
        client_tokens=env.get("OTA_CLIENT_TOKENS") or None,
        auth_url=env.get("OTA_AUTH_URL") or None,
        verify_on_issue=_bool(env.get("OTA_VERIFY_ON_ISSUE"), True),
        log_level=env.get("OTA_LOG_LEVEL", "INFO"),
        log_json=_bool(env.get("OTA_LOG_JSON"), True),
    )


# ============================================================
# Validation
# ============================================================

def validate_settings(settings: Settings) -> Dict[str, bool]:
    """
    Validate that all configured files exist.
    Returns dict of name -> exists.
    """
    paths = {}
    if settings.metadata_backend == "file" or settings.object_backend == "file":
        paths["storage_root"] = settings.storage_root
    if settings.signing_keys_path:
        paths["signing_keys"] = settings.signing_keys_path
    if settings.client_tokens_path:
        paths["client_tokens"] = settings.client_tokens_path

    return {name: Path(path).exists() for name, path in paths.items()}


# ============================================================
# Builders
# ============================================================

def build_key_ring(settings: Settings) -> KeyRing:
    """
    Load the key ring once; production refuses to run without one.

    Outside production an unconfigured deployment shares the ring at
    ``dev_keys_path`` between the gatekeeper and storage processes.
    """
    provider = get_key_provider(
        key_ring_path=settings.signing_keys_path,
        secret_b64=settings.signing_secret,
        aws_secret_id=settings.signing_keys_secret_id,
        aws_region=settings.aws_region,
        dev_key_ring_path=None if settings.is_production() else settings.dev_keys_path,
    )
    return provider.load_key_ring()


def build_metadata_store(settings: Settings) -> MetadataStore:
    if settings.metadata_backend == "s3":
        return S3MetadataStore(settings.s3_bucket, settings.s3_prefix, region=settings.aws_region)
    return FileMetadataStore(settings.storage_root)


def build_object_store(settings: Settings) -> ObjectStore:
    if settings.object_backend == "s3":
        return S3ObjectStore(settings.s3_bucket, settings.s3_prefix, region=settings.aws_region)
    return FileObjectStore(settings.storage_root)


def build_authenticator(settings: Settings) -> Authenticator:
    if settings.auth_url:
        return RemoteAuthenticator(settings.auth_url)
    if settings.client_tokens_path:
        return StaticTokenAuthenticator.from_file(settings.client_tokens_path)
    if settings.client_tokens:
        return StaticTokenAuthenticator.from_spec(settings.client_tokens)
    if settings.is_production():
        raise ValueError("No client authentication configured (set OTA_CLIENT_TOKENS_PATH or OTA_AUTH_URL)")
    logger.warning("No client credentials configured; every update check will be rejected")
    return StaticTokenAuthenticator({})

import hashlib
import json

import pytest
from fastapi.testclient import TestClient

from otagate.auth import StaticTokenAuthenticator
from otagate.codec import GrantCodec
from otagate.config import Settings
from otagate.gate import StorageGate
from otagate.gatekeeper import create_gatekeeper_app
from otagate.issuer import GrantIssuer
from otagate.keys import rotate
from otagate.storage import create_storage_app
from otagate.stores import FileMetadataStore, FileObjectStore

BUNDLE = b"__d('hello', function () { return 'v2.0.0'; });\n"
BUNDLE_HASH = hashlib.sha256(BUNDLE).hexdigest()
CLIENT_TOKEN = "my-secret-user"
STORAGE_BASE_URL = "http://storage.test"


class FakeClock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def write_metadata(root, platform, **overrides):
    doc = {
        "version": "2.0.0",
        "resourcePath": f"{platform}/bundle.js",
        "contentHash": BUNDLE_HASH,
        "mandatory": False,
    }
    doc.update(overrides)
    d = root / platform
    d.mkdir(parents=True, exist_ok=True)
    (d / "metadata.json").write_text(json.dumps(doc), encoding="utf-8")
    return doc


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "storage"
    (root / "android").mkdir(parents=True)
    (root / "android" / "bundle.js").write_bytes(BUNDLE)
    write_metadata(root, "android")
    return root


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def key_ring():
    return rotate(None, "k1")


@pytest.fixture
def codec(key_ring, clock):
    return GrantCodec(key_ring, clock=clock)


@pytest.fixture
def settings(storage_root):
    return Settings(storage_root=str(storage_root), storage_base_url=STORAGE_BASE_URL)


@pytest.fixture
def issuer(storage_root, codec):
    return GrantIssuer(
        metadata_store=FileMetadataStore(str(storage_root)),
        object_store=FileObjectStore(str(storage_root)),
        codec=codec,
        authenticator=StaticTokenAuthenticator({CLIENT_TOKEN: "user-1", "second-user": "user-2"}),
        storage_base_url=STORAGE_BASE_URL,
        grant_ttl=300,
    )


@pytest.fixture
def gate(storage_root, codec):
    return StorageGate(
        codec=codec,
        object_store=FileObjectStore(str(storage_root)),
        metadata_store=FileMetadataStore(str(storage_root)),
    )


@pytest.fixture
def api(settings, issuer):
    return TestClient(create_gatekeeper_app(settings, issuer=issuer, configure_logs=False))


@pytest.fixture
def cdn(settings, gate):
    return TestClient(create_storage_app(settings, gate=gate, configure_logs=False))

import base64
import json
import os
import stat

import pytest

from otagate.auth import RemoteAuthenticator, StaticTokenAuthenticator
from otagate.config import (
    Settings,
    build_authenticator,
    build_key_ring,
    build_metadata_store,
    build_object_store,
    load_settings,
    parse_platform_roots,
    validate_settings,
)
from otagate.errors import Unauthorized
from otagate.keys import rotate, write_key_ring
from otagate.stores import FileObjectStore, S3MetadataStore, S3ObjectStore


def test_defaults():
    s = load_settings({})
    assert s.env == "dev"
    assert s.grant_ttl_seconds == 300
    assert s.grant_leeway_seconds == 0
    assert s.default_platform == "android"
    assert s.storage_base_url == "http://localhost:4000"
    assert s.platform_roots == {}
    assert s.verify_on_issue is True
    assert s.log_json is True
    assert not s.is_production()


def test_environment_overrides():
    s = load_settings({
        "OTA_ENV": "prod",
        "OTA_GRANT_TTL_SECONDS": "60",
        "OTA_GRANT_LEEWAY_SECONDS": "5",
        "OTA_PLATFORM_ROOTS": "android=android, ios=/bundles/ios/",
        "OTA_VERIFY_ON_ISSUE": "false",
        "OTA_LOG_JSON": "0",
        "AWS_REGION": "",
    })
    assert s.is_production()
    assert s.grant_ttl_seconds == 60
    assert s.grant_leeway_seconds == 5
    assert s.platform_roots == {"android": "android", "ios": "bundles/ios"}
    assert s.verify_on_issue is False
    assert s.log_json is False
    assert s.aws_region is None


@pytest.mark.parametrize("ttl", ["0", "-1", "3601"])
def test_ttl_bounds(ttl):
    with pytest.raises(ValueError):
        load_settings({"OTA_GRANT_TTL_SECONDS": ttl})


def test_ttl_upper_bound_inclusive():
    assert load_settings({"OTA_GRANT_TTL_SECONDS": "3600"}).grant_ttl_seconds == 3600


def test_backend_validation():
    with pytest.raises(ValueError):
        Settings(object_backend="ftp")
    with pytest.raises(ValueError):
        Settings(metadata_backend="s3")
    s = Settings(metadata_backend="s3", object_backend="s3", s3_bucket="b", s3_prefix="ota")
    assert isinstance(build_metadata_store(s), S3MetadataStore)
    assert isinstance(build_object_store(s), S3ObjectStore)
    assert isinstance(build_object_store(Settings()), FileObjectStore)


def test_parse_platform_roots_rejects_garbage():
    with pytest.raises(ValueError):
        parse_platform_roots("android")
    with pytest.raises(ValueError):
        parse_platform_roots("=android")


def test_validate_settings(tmp_path):
    s = Settings(storage_root=str(tmp_path), signing_keys_path=str(tmp_path / "missing.json"))
    assert validate_settings(s) == {"storage_root": True, "signing_keys": False}


def test_production_requires_signing_key():
    with pytest.raises(ValueError):
        build_key_ring(Settings(env="prod"))


def test_development_key_ring_is_shared_between_processes(tmp_path):
    path = tmp_path / "dev" / "keys.json"
    a = build_key_ring(Settings(dev_keys_path=str(path)))
    b = build_key_ring(Settings(dev_keys_path=str(path)))
    assert a.active_kid == "dev"
    assert a.active_secret() == b.active_secret()
    assert path.exists()
    assert list(path.parent.iterdir()) == [path]
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_production_ignores_development_key_ring(tmp_path):
    path = tmp_path / "keys.json"
    build_key_ring(Settings(dev_keys_path=str(path)))
    with pytest.raises(ValueError):
        build_key_ring(Settings(env="prod", dev_keys_path=str(path)))


def test_signing_secret_from_environment():
    secret = bytes(range(32))
    ring = build_key_ring(load_settings({"OTA_SIGNING_SECRET": base64.b64encode(secret).decode()}))
    assert ring.active_kid == "env"
    assert ring.active_secret() == secret


def test_short_signing_secret_rejected():
    with pytest.raises(ValueError):
        build_key_ring(Settings(signing_secret=base64.b64encode(b"short").decode()))


def test_key_ring_file_takes_precedence(tmp_path):
    path = tmp_path / "keys.json"
    ring = rotate(rotate(None, "k1"), "k2")
    write_key_ring(ring, str(path))
    loaded = build_key_ring(Settings(signing_keys_path=str(path), signing_secret="ignored"))
    assert loaded.active_kid == "k2"
    assert loaded.to_dict() == ring.to_dict()


def test_build_authenticator_precedence(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text(json.dumps({"file-token": "from-file"}), encoding="utf-8")

    assert isinstance(build_authenticator(Settings(auth_url="http://auth.test", client_tokens="a:b")),
                      RemoteAuthenticator)

    auth = build_authenticator(Settings(client_tokens_path=str(path), client_tokens="a:b"))
    assert auth.authenticate("file-token").subject == "from-file"

    auth = build_authenticator(Settings(client_tokens="a:b"))
    assert isinstance(auth, StaticTokenAuthenticator)
    assert auth.authenticate("a").subject == "b"


def test_unconfigured_authentication():
    with pytest.raises(ValueError):
        build_authenticator(Settings(env="prod"))
    auth = build_authenticator(Settings())
    with pytest.raises(Unauthorized):
        auth.authenticate("anything")

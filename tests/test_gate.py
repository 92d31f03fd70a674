import pytest

from otagate.errors import (
    BadSignature,
    DenyReason,
    Expired,
    IntegrityFault,
    Malformed,
    MissingGrant,
    ObjectNotFound,
    PathMismatch,
)
from otagate.gate import StorageGate
from otagate.stores import FileMetadataStore, FileObjectStore

from .conftest import BUNDLE, BUNDLE_HASH, write_metadata


def test_allows_matching_unexpired_grant(gate, codec):
    token = codec.encode("android/bundle.js", "user-1", 300)
    decision = gate.authorize_download("android/bundle.js", token)
    assert decision.allowed
    assert decision.reason is None
    assert decision.grant.subject == "user-1"


def test_grant_for_other_path_is_denied(gate, codec):
    token = codec.encode("android/bundle.js", "user-1", 300)
    for other in ("android/bundle.jsx", "ios/bundle.js", "android/../android/bundle.js", "android/Bundle.js"):
        decision = gate.authorize_download(other, token)
        assert not decision.allowed
        assert decision.reason == DenyReason.PATH_MISMATCH


def test_expired_grant_is_denied_even_with_valid_signature(gate, codec, clock):
    token = codec.encode("android/bundle.js", "user-1", 60)
    clock.advance(60)
    decision = gate.authorize_download("android/bundle.js", token)
    assert decision.reason == DenyReason.EXPIRED


def test_expiry_takes_precedence_over_path(gate, codec, clock):
    token = codec.encode("android/bundle.js", "user-1", 60)
    clock.advance(3600)
    with pytest.raises(Expired):
        gate.verify("ios/bundle.js", token)


def test_leeway_extends_acceptance(storage_root, codec, clock):
    gate = StorageGate(codec, FileObjectStore(str(storage_root)), leeway=30)
    token = codec.encode("android/bundle.js", "user-1", 60)
    clock.advance(75)
    assert gate.authorize_download("android/bundle.js", token).allowed
    clock.advance(15)
    assert gate.authorize_download("android/bundle.js", token).reason == DenyReason.EXPIRED


@pytest.mark.parametrize("token,exc", [
    (None, MissingGrant),
    ("", MissingGrant),
    ("not-a-token", Malformed),
    ("k9.e30." + "A" * 43, BadSignature),
])
def test_verify_reasons(gate, token, exc):
    with pytest.raises(exc):
        gate.verify("android/bundle.js", token)


def test_grant_can_be_redeemed_repeatedly(gate, codec):
    token = codec.encode("android/bundle.js", "user-1", 300)
    for _ in range(3):
        download = gate.open_download("android/bundle.js", token)
        assert b"".join(download.chunks) == BUNDLE


def test_declared_object_is_hash_checked(gate, codec):
    download = gate.open_download("android/bundle.js", codec.encode("android/bundle.js", "u", 300))
    assert download.content_hash == BUNDLE_HASH
    assert download.size == len(BUNDLE)


def test_tampered_object_is_not_served(gate, codec, storage_root):
    (storage_root / "android" / "bundle.js").write_bytes(b"evil()")
    with pytest.raises(IntegrityFault):
        gate.open_download("android/bundle.js", codec.encode("android/bundle.js", "u", 300))


def test_undeclared_object_is_streamed(gate, codec, storage_root):
    (storage_root / "android" / "assets.zip").write_bytes(b"x" * 200_000)
    download = gate.open_download("android/assets.zip", codec.encode("android/assets.zip", "u", 300))
    assert download.content_hash is None
    assert download.size == 200_000
    assert sum(len(c) for c in download.chunks) == 200_000


def test_missing_object_with_valid_grant(gate, codec):
    with pytest.raises(ObjectNotFound):
        gate.open_download("android/missing.js", codec.encode("android/missing.js", "u", 300))


def test_directory_is_never_listed(gate, codec):
    with pytest.raises(ObjectNotFound):
        gate.open_download("android", codec.encode("android", "u", 300))


def test_denied_download_raises_specific_reason(gate, codec):
    with pytest.raises(PathMismatch):
        gate.open_download("android/bundle.js", codec.encode("ios/bundle.js", "u", 300))


def test_platform_roots_locate_declaring_metadata(storage_root, codec):
    (storage_root / "bundles" / "ios").mkdir(parents=True)
    (storage_root / "bundles" / "ios" / "main.jsbundle").write_bytes(BUNDLE)
    write_metadata(storage_root, "ios", resourcePath="bundles/ios/main.jsbundle")
    gate = StorageGate(
        codec,
        FileObjectStore(str(storage_root)),
        metadata_store=FileMetadataStore(str(storage_root)),
        platform_roots={"android": "android", "ios": "bundles/ios"},
    )
    assert gate.declared_hash("bundles/ios/main.jsbundle") == BUNDLE_HASH
    assert gate.declared_hash("android/bundle.js") == BUNDLE_HASH
    assert gate.declared_hash("bundles/other.js") is None


def test_denial_reason_only_in_audit_log(gate, codec, caplog):
    with caplog.at_level("INFO", logger="otagate.audit"):
        gate.authorize_download("android/bundle.js", codec.encode("ios/bundle.js", "u", 300))
    denied = [r for r in caplog.records if getattr(r, "extra_fields", {}).get("event_type") == "DOWNLOAD_DENIED"]
    assert denied
    assert denied[0].extra_fields["reason"] == "PATH_MISMATCH"


def test_pinned_digest_checked_without_metadata(storage_root, codec):
    gate = StorageGate(codec, FileObjectStore(str(storage_root)))
    token = codec.encode("android/bundle.js", "u", 300, content_hash=BUNDLE_HASH)
    assert gate.open_download("android/bundle.js", token).content_hash == BUNDLE_HASH

    (storage_root / "android" / "bundle.js").write_bytes(b"evil()")
    with pytest.raises(IntegrityFault):
        gate.open_download("android/bundle.js", token)


def test_pinned_digest_covers_paths_metadata_lookup_misses(gate, codec, storage_root):
    (storage_root / "bundles").mkdir()
    (storage_root / "bundles" / "android-2.0.0.js").write_bytes(b"evil()")
    write_metadata(storage_root, "android", resourcePath="bundles/android-2.0.0.js")
    assert gate.declared_hash("bundles/android-2.0.0.js") is None

    token = codec.encode("bundles/android-2.0.0.js", "u", 300, content_hash=BUNDLE_HASH)
    with pytest.raises(IntegrityFault):
        gate.open_download("bundles/android-2.0.0.js", token)


def test_open_download_audits_denial_once(gate, codec, clock, caplog, monkeypatch):
    calls = []
    authorize = gate.authorize_download

    def recording(path, token):
        calls.append(path)
        return authorize(path, token)

    monkeypatch.setattr(gate, "authorize_download", recording)
    token = codec.encode("android/bundle.js", "u", 60)
    clock.advance(60)
    with caplog.at_level("INFO", logger="otagate.audit"):
        with pytest.raises(Expired):
            gate.open_download("android/bundle.js", token)
    assert calls == ["android/bundle.js"]
    events = [getattr(r, "extra_fields", {}).get("event_type") for r in caplog.records]
    assert events.count("DOWNLOAD_DENIED") == 1
    assert "DOWNLOAD_ALLOWED" not in events

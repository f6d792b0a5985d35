import base64

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from forumall.signature import (
    AuthedUser,
    OFSCPSignature,
    RequestInfo,
    SignatureError,
    SignatureRejection,
    SignedJson,
    fetch_public_key,
    header_value,
    idempotency_key,
    reconstruct_signature_base,
    verify_ofscp_signature,
)
from forumall.store import create_forum_store

TIMESTAMP = "2024-01-01T00:00:00Z"


def make_key():
    private = Ed25519PrivateKey.generate()
    raw = private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return private, base64.b64encode(raw).decode()


def add_key(store, handle, key_id, public_key, revoked="false"):
    store.insert_into(
        "device_keys",
        {
            "key_id": key_id,
            "user_handle": handle,
            "public_key": public_key,
            "device_name": "laptop",
            "created_at": TIMESTAMP,
            "last_used_at": TIMESTAMP,
            "revoked": revoked,
        },
    )


def signed_headers(private, method, path, body=b"", key_id="dk_test", actor="@alice@localhost"):
    headers = {"X-OFSCP-Actor": actor, "X-OFSCP-Timestamp": TIMESTAMP}
    base = reconstruct_signature_base(method, path, headers, body)
    sig = base64.b64encode(private.sign(base.encode())).decode()
    headers["X-OFSCP-Signature"] = f'keyId="{key_id}", signature="{sig}"'
    return headers


@pytest.fixture
def setup():
    store = create_forum_store()
    private, public = make_key()
    add_key(store, "alice", "dk_test", public)
    return store, private


def test_parse_signature_header():
    parsed = OFSCPSignature.parse('keyId="dk_1", signature="abc=="')
    assert parsed.key_id == "dk_1"
    assert parsed.signature == "abc=="


def test_parse_missing_key_id():
    with pytest.raises(SignatureError, match="Missing keyId"):
        OFSCPSignature.parse('signature="abc"')


def test_parse_missing_signature():
    with pytest.raises(SignatureError, match="Missing signature"):
        OFSCPSignature.parse('keyId="dk_1"')


def test_signature_base_layout():
    base = reconstruct_signature_base("GET", "/api/groups", {"X-OFSCP-Timestamp": "123"}, b"")
    assert base == (
        "GET\n/api/groups\n123\n"
        "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )


def test_signature_base_drops_query_and_missing_timestamp():
    with_query = reconstruct_signature_base("GET", "/api/x?a=1", {}, b"{}")
    without_query = reconstruct_signature_base("GET", "/api/x", {}, b"{}")
    assert with_query == without_query
    assert with_query.split("\n")[2] == ""


def test_header_value_case_insensitive():
    assert header_value({"x-ofscp-actor": "@bob@localhost"}, "X-OFSCP-Actor") == "@bob@localhost"
    assert header_value({}, "X-OFSCP-Actor") is None


def test_header_value_rejects_non_ascii():
    with pytest.raises(ValueError):
        header_value({"X-Thing": "caf\u00e9"}, "x-thing")


def test_fetch_public_key_local(setup):
    store, private = setup
    _, public = make_key()
    add_key(store, "bob", "dk_bob", public)
    assert fetch_public_key(store, "@bob@localhost", "dk_bob") == public
    assert fetch_public_key(store, "bob", "dk_bob") == public


def test_fetch_public_key_errors(setup):
    store, _ = setup
    with pytest.raises(SignatureError, match="Invalid actor format"):
        fetch_public_key(store, "@alice", "dk_test")
    with pytest.raises(SignatureError, match="Key not found locally"):
        fetch_public_key(store, "@alice@localhost", "dk_other")
    with pytest.raises(SignatureError, match="Remote key fetching"):
        fetch_public_key(store, "@alice@example.com", "dk_test")


def test_verify_success_normalizes_local_actor(setup):
    store, private = setup
    body = b'{"x":1}'
    headers = signed_headers(private, "POST", "/api/groups", body)
    assert verify_ofscp_signature(store, "POST", "/api/groups", headers, body) == (
        "alice",
        "dk_test",
    )


@pytest.mark.parametrize("actor", ["alice", "@alice@127.0.0.1"])
def test_verify_other_local_actor_forms(setup, actor):
    store, private = setup
    headers = signed_headers(private, "GET", "/api/groups", actor=actor)
    user_id, key_id = verify_ofscp_signature(store, "GET", "/api/groups", headers, b"")
    assert user_id == "alice"
    assert key_id == "dk_test"


def test_verify_tampered_body(setup):
    store, private = setup
    headers = signed_headers(private, "POST", "/api/groups", b"original")
    with pytest.raises(SignatureError, match="Signature verification failed"):
        verify_ofscp_signature(store, "POST", "/api/groups", headers, b"changed")


def test_verify_wrong_path(setup):
    store, private = setup
    headers = signed_headers(private, "GET", "/api/groups")
    with pytest.raises(SignatureError, match="Signature verification failed"):
        verify_ofscp_signature(store, "GET", "/api/other", headers, b"")


def test_verify_missing_headers(setup):
    store, private = setup
    with pytest.raises(SignatureError, match="Missing X-OFSCP-Signature header"):
        verify_ofscp_signature(store, "GET", "/", {}, b"")
    headers = signed_headers(private, "GET", "/")
    del headers["X-OFSCP-Actor"]
    with pytest.raises(SignatureError, match="Missing X-OFSCP-Actor header"):
        verify_ofscp_signature(store, "GET", "/", headers, b"")


def test_verify_revoked_key(setup):
    store, _ = setup
    private, public = make_key()
    add_key(store, "carol", "dk_carol", public, revoked="true")
    headers = signed_headers(private, "GET", "/", key_id="dk_carol", actor="@carol@localhost")
    with pytest.raises(SignatureError, match="Key not found locally"):
        verify_ofscp_signature(store, "GET", "/", headers, b"")


def test_verify_invalid_base64_signature(setup):
    store, _ = setup
    headers = {
        "X-OFSCP-Actor": "@alice@localhost",
        "X-OFSCP-Signature": 'keyId="dk_test", signature="!!!"',
    }
    with pytest.raises(SignatureError, match="Invalid base64 signature"):
        verify_ofscp_signature(store, "GET", "/", headers, b"")


def test_verify_bad_public_key_length(setup):
    store, private = setup
    add_key(store, "dave", "dk_dave", base64.b64encode(b"short").decode())
    headers = signed_headers(private, "GET", "/", key_id="dk_dave", actor="@dave@localhost")
    with pytest.raises(SignatureError, match="Invalid public key length"):
        verify_ofscp_signature(store, "GET", "/", headers, b"")


def test_signed_json_from_request(setup):
    store, private = setup
    body = b'{"name":"general"}'
    headers = signed_headers(private, "POST", "/api/groups", body)
    signed = SignedJson.from_request(store, RequestInfo("POST", "/api/groups", headers), body)
    assert signed.value == {"name": "general"}
    assert signed.user_id == "alice"
    assert signed.key_id == "dk_test"


def test_signed_json_rejects_bad_signature(setup):
    store, _ = setup
    with pytest.raises(SignatureRejection) as info:
        SignedJson.from_request(store, RequestInfo("POST", "/api/groups", {}), b"{}")
    assert info.value.status == 401
    assert info.value.message.startswith("Signature error:")


def test_signed_json_rejects_bad_json(setup):
    store, private = setup
    body = b"not json"
    headers = signed_headers(private, "POST", "/api/groups", body)
    with pytest.raises(SignatureRejection) as info:
        SignedJson.from_request(store, RequestInfo("POST", "/api/groups", headers), body)
    assert info.value.status == 400
    assert info.value.message.startswith("Invalid JSON")


def test_idempotency_key():
    assert idempotency_key({"idempotency-key": "  abc  "}) == "abc"
    assert idempotency_key({}) is None
    assert idempotency_key({"Idempotency-Key": "caf\u00e9"}) is None


def test_authed_user_equality():
    assert AuthedUser("alice") == AuthedUser("alice")
    assert AuthedUser("alice").user_id == "alice"
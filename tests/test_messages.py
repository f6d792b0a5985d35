import base64
import hashlib
import json

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from forumall.messages import (
    MessagesPage,
    SendMessageRequest,
    decode_cursor,
    encode_cursor,
    list_messages,
    send_message,
)
from forumall.problem import HttpError
from forumall.signature import RequestInfo
from forumall.store import create_forum_store

MSG_PATH = "/api/groups/g1/channels/c1/messages"


def _register(store, handle, private_key):
    public_b64 = base64.b64encode(
        private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    ).decode()
    store.insert_into(
        "device_keys",
        {
            "key_id": f"dk_{handle}",
            "user_handle": handle,
            "public_key": public_b64,
            "device_name": "laptop",
            "created_at": "2024-01-01T00:00:00+00:00",
            "last_used_at": "2024-01-01T00:00:00+00:00",
            "revoked": "false",
        },
    )


def _signed(private_key, handle, method, path, body=b""):
    timestamp = "2024-01-01T00:00:00Z"
    base = f"{method}\n{path}\n{timestamp}\n{hashlib.sha256(body).hexdigest()}"
    sig = base64.b64encode(private_key.sign(base.encode())).decode()
    return RequestInfo(
        method,
        path,
        {
            "X-OFSCP-Actor": handle,
            "X-OFSCP-Timestamp": timestamp,
            "X-OFSCP-Signature": f'keyId="dk_{handle}", signature="{sig}"',
        },
    )


def _body(text):
    return json.dumps({"body": text}, separators=(",", ":")).encode()


@pytest.fixture
def env():
    store = create_forum_store()
    alice = Ed25519PrivateKey.generate()
    bob = Ed25519PrivateKey.generate()
    _register(store, "alice", alice)
    _register(store, "bob", bob)
    store.insert_into("groups", {"id": "g1", "name": "g1", "owner": "alice"})
    store.insert_into("groups", {"id": "g2", "name": "g2", "owner": "alice"})
    store.insert_into("group_members", {"group_id": "g1", "user_id": "alice", "role": "owner"})
    store.insert_into("group_members", {"group_id": "g2", "user_id": "alice", "role": "owner"})
    store.insert_into("channels", {"id": "c1", "group_id": "g1", "name": "general"})
    store.insert_into("channels", {"id": "c2", "group_id": "g2", "name": "other"})
    return store, alice, bob


def _add_message(store, message_id, created_at, body="x", channel="c1"):
    store.insert_into(
        "messages",
        {
            "id": message_id,
            "channel_id": channel,
            "sender_user_id": "alice",
            "body": body,
            "created_at": created_at,
        },
    )


def _get(env, **kwargs):
    store, alice, _ = env
    request = _signed(alice, "alice", "GET", MSG_PATH)
    return list_messages(store, request, "g1", "c1", **kwargs)


def test_encode_cursor_pinned_value():
    assert encode_cursor("a", "b") == "YXxi"


def test_cursor_round_trip():
    cursor = encode_cursor("2024-05-01T10:00:00+00:00", "abc|def")
    assert "=" not in cursor
    assert decode_cursor(cursor) == ("2024-05-01T10:00:00+00:00", "abc|def")


@pytest.mark.parametrize("bad", ["!!!", base64.urlsafe_b64encode(b"nopipe").decode().rstrip("=")])
def test_decode_cursor_rejects_garbage(bad):
    assert decode_cursor(bad) is None


def test_send_message_stores_and_returns_item(env):
    store, alice, _ = env
    request = _signed(alice, "alice", "POST", MSG_PATH, _body("hello"))
    response = send_message(store, request, "g1", "c1", SendMessageRequest("hello"))
    item = response.item
    assert item.content.text == "hello"
    assert item.content.mime == "text/plain"
    assert item.author == "https://localhost/api/users/alice"
    stored = store.query("messages", id=item.id)
    assert len(stored) == 1
    assert stored[0].data["body"] == "hello"
    assert stored[0].data["created_at"] == item.created_at
    keys = store.query("idempotency_keys", user_id="alice")
    assert [doc.data["key"] for doc in keys] == ["dk_alice"]


def test_send_message_response_wire_form(env):
    store, alice, _ = env
    request = _signed(alice, "alice", "POST", MSG_PATH, _body("hi"))
    wire = send_message(store, request, "g1", "c1", SendMessageRequest("hi")).to_dict()
    item = wire["item"]
    assert item["type"] == "message"
    assert item["author"] == {"id": "https://localhost/api/users/alice"}
    assert item["content"] == {"text": "hi", "mime": "text/plain"}
    assert item["attachments"] == [] and item["metadata"] == []
    assert "createdAt" in item


def test_send_message_bad_signature_is_unauthorized(env):
    store, alice, _ = env
    request = _signed(alice, "alice", "POST", MSG_PATH, _body("other"))
    with pytest.raises(HttpError) as err:
        send_message(store, request, "g1", "c1", SendMessageRequest("hello"))
    assert err.value.status == 401
    assert err.value.message.startswith("Signature error:")


def test_send_message_non_member_forbidden(env):
    store, _, bob = env
    request = _signed(bob, "bob", "POST", MSG_PATH, _body("hey"))
    with pytest.raises(HttpError) as err:
        send_message(store, request, "g1", "c1", SendMessageRequest("hey"))
    assert err.value.status == 403
    assert err.value.message == "Not a member of that group"


def test_send_message_unknown_channel(env):
    store, alice, _ = env
    request = _signed(alice, "alice", "POST", "/api/groups/g1/channels/zz/messages", _body("a"))
    with pytest.raises(HttpError) as err:
        send_message(store, request, "g1", "zz", SendMessageRequest("a"))
    assert err.value.status == 404
    assert err.value.message == "Channel not found"


def test_send_message_channel_in_other_group(env):
    store, alice, _ = env
    request = _signed(alice, "alice", "POST", "/api/groups/g1/channels/c2/messages", _body("a"))
    with pytest.raises(HttpError) as err:
        send_message(store, request, "g1", "c2", SendMessageRequest("a"))
    assert err.value.status == 404
    assert err.value.message == "Channel not found in group"


@pytest.fixture
def three(env):
    store = env[0]
    _add_message(store, "m1", "2024-01-01T00:00:01+00:00")
    _add_message(store, "m2", "2024-01-01T00:00:02+00:00")
    _add_message(store, "m3", "2024-01-01T00:00:03+00:00")
    return env


def test_backward_default_returns_latest_oldest_first(three):
    page = _get(three, limit=2)
    assert [item.id for item in page.items] == ["m2", "m3"]
    assert page.page.next_cursor == encode_cursor("2024-01-01T00:00:02+00:00", "m2")
    assert page.page.prev_cursor == encode_cursor("2024-01-01T00:00:03+00:00", "m3")


def test_forward_without_cursor(three):
    page = _get(three, direction="forward", limit=2)
    assert [item.id for item in page.items] == ["m1", "m2"]


def test_forward_with_cursor(three):
    cursor = encode_cursor("2024-01-01T00:00:01+00:00", "m1")
    page = _get(three, direction="forward", cursor=cursor)
    assert [item.id for item in page.items] == ["m2", "m3"]


def test_backward_with_cursor(three):
    cursor = encode_cursor("2024-01-01T00:00:03+00:00", "m3")
    page = _get(three, cursor=cursor)
    assert [item.id for item in page.items] == ["m1", "m2"]


def test_invalid_cursor_is_ignored(three):
    page = _get(three, cursor="!!!", direction="forward")
    assert [item.id for item in page.items] == ["m1", "m2", "m3"]


def test_equal_timestamps_ordered_by_id(env):
    store = env[0]
    _add_message(store, "b", "2024-01-01T00:00:00+00:00")
    _add_message(store, "a", "2024-01-01T00:00:00+00:00")
    page = _get(env, direction="forward")
    assert [item.id for item in page.items] == ["a", "b"]


def test_empty_channel_has_no_cursors(env):
    page = _get(env)
    assert page.items == []
    assert page.page.next_cursor is None and page.page.prev_cursor is None


def test_limit_is_capped(env):
    store = env[0]
    for n in range(201):
        _add_message(store, f"m{n:04d}", f"2024-01-01T00:00:00.{n:06d}+00:00")
    page = _get(env, limit=1000)
    assert len(page.items) == 200


def test_limit_zero_gives_empty_page(three):
    assert _get(three, limit=0).items == []


def test_unsupported_direction(three):
    with pytest.raises(HttpError) as err:
        _get(three, direction="sideways")
    assert err.value.status == 400
    assert err.value.message == "Unsupported direction"


def test_list_non_member_checked_before_channel(env):
    store, _, bob = env
    request = _signed(bob, "bob", "GET", "/api/groups/g1/channels/nope/messages")
    with pytest.raises(HttpError) as err:
        list_messages(store, request, "g1", "nope")
    assert err.value.status == 403


def test_list_unknown_channel_for_member(env):
    store, alice, _ = env
    request = _signed(alice, "alice", "GET", "/api/groups/g1/channels/nope/messages")
    with pytest.raises(HttpError) as err:
        list_messages(store, request, "g1", "nope")
    assert err.value.status == 404


def test_page_wire_form(three):
    wire = _get(three, limit=1).to_dict()
    assert [item["id"] for item in wire["items"]] == ["m3"]
    assert set(wire["page"]) == {"nextCursor", "prevCursor"}
    assert decode_cursor(wire["page"]["nextCursor"]) == ("2024-01-01T00:00:03+00:00", "m3")
    assert isinstance(_get(three), MessagesPage)
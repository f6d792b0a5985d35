# forumall

`forumall` is a small chat provider. Users own groups, groups hold channels,
and channels hold messages. Every write and every private read is
authenticated by an Ed25519 signature made with a key registered for the
user's device, so no passwords or bearer tokens pass over the wire.

What it offers:

- A WSGI application serving the JSON API under `/api/...` and the provider
  discovery document under `/.well-known/ofscp-provider`.
- Device key registration, listing and revocation, plus public key discovery
  at `/.well-known/ofscp/users/<handle>/keys`.
- Groups with `open` or restricted join policies, owner-managed membership,
  channels, and messages with cursor-based paging in both directions.
- A small in-memory document store holding users, groups, memberships,
  channels, messages and device keys.
- A client side: a signing HTTP client and a session context that builds API
  and WebSocket URLs for a chosen provider domain.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Running the server

```
forumall
```

starts the provider on a local port with a fresh store.

The application can also be embedded in any WSGI server:

```python
from wsgiref.simple_server import make_server

from forumall.app import create_app
from forumall.store import create_forum_store

store = create_forum_store()
app = create_app(store, "http://localhost:8080")
make_server("localhost", 8080, app).serve_forever()
```

## Signed requests

A client sends three headers with each authenticated request:

- `X-OFSCP-Actor`: the user, for example `@alice@localhost`
- `X-OFSCP-Timestamp`: the time the request was signed
- `X-OFSCP-Signature`: `keyId="<key id>", signature="<base64 signature>"`

The signed text is the method, the path, the timestamp and the hex SHA-256
of the body, joined by newlines:

```python
from forumall.signature import OFSCPSignature, reconstruct_signature_base

base = reconstruct_signature_base(
    "POST",
    "/api/groups",
    {"X-OFSCP-Timestamp": "2024-01-01T00:00:00Z"},
    b'{"name": "rust-fans"}',
)

sig = OFSCPSignature.parse('keyId="dk_example", signature="c2lnbmF0dXJl"')
print(sig.key_id, sig.signature)
```

Actors on `localhost` or `127.0.0.1` are checked against the keys in the
local store; a request from a revoked or unknown key is refused.

## Names and paging

Group and channel names must be lowercase ASCII letters, digits, `.`, `_`
or `-`:

```python
from forumall.models import validate_resource_name

validate_resource_name("general")   # True
validate_resource_name("General!")  # False
```

Message pages carry opaque cursors; they encode a timestamp and a message id:

```python
from forumall.messages import decode_cursor, encode_cursor

cursor = encode_cursor("2024-01-01T00:00:00+00:00", "m1")
decode_cursor(cursor)  # ("2024-01-01T00:00:00+00:00", "m1")
```

A page holds at most 200 messages (50 by default), and the direction is
either `backward` (the default) or `forward`.

## Errors

Failures in the API are reported as RFC 7807 problem documents.
`forumall.problem.try_problem_detail` pulls a readable message out of such a
body, preferring `detail` and falling back to `title`.
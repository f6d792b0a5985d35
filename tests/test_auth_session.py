import pytest

from forumall.auth_session import AuthContext, AuthSession


def test_session_round_trip():
    session = AuthSession(user_id="alice", keys={"public": "abc"})
    assert AuthSession.from_dict(session.to_dict()) == session


def test_session_from_dict_without_keys():
    assert AuthSession.from_dict({"user_id": "bob"}) == AuthSession("bob", None)


def test_session_from_dict_rejects_bad_user_id():
    with pytest.raises(ValueError):
        AuthSession.from_dict({"user_id": 5})
    with pytest.raises(ValueError):
        AuthSession.from_dict(["user_id"])


def test_login_logout():
    ctx = AuthContext()
    assert ctx.is_authenticated() is False
    assert ctx.user_id() is None
    ctx.login("alice")
    assert ctx.is_authenticated() is True
    assert ctx.user_id() == "alice"
    assert ctx.session.keys is None
    ctx.logout()
    assert ctx.is_authenticated() is False


def test_token_is_absent():
    ctx = AuthContext()
    ctx.login("alice")
    assert ctx.token() is None


def test_client_carries_session_identity():
    ctx = AuthContext(session=AuthSession("alice", keys={"k": 1}))
    client = ctx.client()
    assert client.handle == "alice"
    assert client.keys == {"k": 1}


def test_client_without_session_is_unsigned():
    client = AuthContext().client()
    assert client.handle is None
    assert client.keys is None


def test_default_domain_is_localhost_http():
    assert AuthContext().api_url("/api/groups") == "http://localhost/api/groups"


def test_api_url_localhost_with_port():
    ctx = AuthContext()
    ctx.set_provider_domain("localhost:8080")
    assert ctx.api_url("api/groups") == "http://localhost:8080/api/groups"


def test_api_url_loopback_ip():
    ctx = AuthContext(provider_domain="127.0.0.1:3000/")
    assert ctx.api_url("/x") == "http://127.0.0.1:3000/x"


def test_api_url_remote_is_https():
    ctx = AuthContext(provider_domain="forum.example.com")
    assert ctx.api_url("/api/groups") == "https://forum.example.com/api/groups"


def test_api_url_with_scheme_in_domain():
    ctx = AuthContext(provider_domain="http://forum.example.com/")
    assert ctx.api_url("/api") == "http://forum.example.com/api"


def test_api_url_empty_domain_is_relative():
    ctx = AuthContext(provider_domain="  ")
    assert ctx.api_url("api/groups") == "/api/groups"
    assert ctx.api_url("/api/groups") == "/api/groups"


def test_api_url_absolute_passes_through():
    ctx = AuthContext(provider_domain="forum.example.com")
    assert ctx.api_url("https://other.example.com/a") == "https://other.example.com/a"


def test_ws_url_schemes():
    assert AuthContext(provider_domain="forum.example.com").ws_url("/api/ws") == (
        "wss://forum.example.com/api/ws"
    )
    assert AuthContext().ws_url("/api/ws") == "ws://localhost/api/ws"


def test_ws_url_relative_unchanged():
    assert AuthContext(provider_domain="").ws_url("api/ws") == "/api/ws"